"""Companion watcher for detached VMs.

``ProcessSupervisor.start`` runs ``python -m vpsctl.watch`` in its own
session whenever a detached VM got a display server companion. The watcher
outlives the CLI, waits for the hypervisor to exit by any means and then
takes the companion and the VM's runtime files down with it.
"""

from __future__ import annotations

import argparse
import time
from pathlib import Path
from typing import List, Optional

from vpsctl.supervisor import RuntimeFiles, pid_alive, read_pid, stop_companion
from vpsctl.utils import log

POLL_INTERVAL = 0.2


def watch(files: RuntimeFiles, name: str, vm_pid: int, companion_pid: int, grace: float) -> None:
    while pid_alive(vm_pid):
        time.sleep(POLL_INTERVAL)
    log("INFO", f"VM '{name}' (pid {vm_pid}) exited; stopping its display server companion")
    stop_companion(files, name, grace, expected_pid=companion_pid)
    pid_file = files.pid_file(name)
    if read_pid(pid_file) == vm_pid:
        pid_file.unlink(missing_ok=True)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="vpsctl.watch", description="Stop a VM's display companion when it exits")
    parser.add_argument("--runtime-dir", type=Path, required=True)
    parser.add_argument("--grace", type=float, default=2.0)
    parser.add_argument("name")
    parser.add_argument("vm_pid", type=int)
    parser.add_argument("companion_pid", type=int)
    args = parser.parse_args(argv)

    try:
        watch(RuntimeFiles(args.runtime_dir), args.name, args.vm_pid, args.companion_pid, args.grace)
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
