"""Hypervisor process supervision for vpsctl.

A VM is "running" when a live process's command line references both the
hypervisor binary and the VM's boot disk. The per-VM pid file under the
runtime directory is the fast path; a scan of /proc recovers VMs whose pid
file went missing.
"""

from __future__ import annotations

import os
import re
import select
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vpsctl.config import Settings
from vpsctl.constants import FIRST_DISPLAY_SLOT, LAUNCH_SETTLE_SECONDS, X_LOCK_TEMPLATE, XORG_DUMMY_CONFIG
from vpsctl.exceptions import ConflictError, NotFoundError, ProcessError
from vpsctl.models import VALID_TRANSITIONS, Capabilities, RunState, VMProfile
from vpsctl.provision import ImageProvisioner
from vpsctl.qemu import Invocation, build, qemu_path
from vpsctl.store import ProfileStore
from vpsctl.utils import ensure_directory, log

_MAX_DISPLAY_SLOTS = 64


@dataclass
class LaunchResult:
    pid: int
    invocation: Invocation
    display: Optional[int] = None
    exit_code: Optional[int] = None  # set only for attached launches
    notes: List[str] = field(default_factory=list)


# -- /proc helpers ----------------------------------------------------------


def read_pid(path: Path) -> Optional[int]:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def _read_cmdline(pid: int) -> Optional[List[str]]:
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return None
    if not raw:
        return None
    return raw.decode("utf-8", errors="replace").rstrip("\0").split("\0")


def _is_zombie(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    # The state field follows the parenthesised command name.
    return stat.rpartition(")")[2].split()[:1] == ["Z"]


def pid_alive(pid: int) -> bool:
    """Return True if ``pid`` is a live (non-zombie) process."""
    try:
        waited, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        pass
    else:
        if waited == pid:
            return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    return not _is_zombie(pid)


def wait_for_exit(pid: int, timeout: float, interval: float = 0.1) -> bool:
    deadline = time.monotonic() + timeout
    while pid_alive(pid):
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)
    return True


def _signal(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        pass


def vm_process_pattern(binary: str, disk: Path) -> re.Pattern[str]:
    return re.compile(re.escape(binary) + ".*" + re.escape(qemu_path(disk)))


def scan_processes(pattern: re.Pattern[str]) -> Optional[int]:
    """Return the lowest pid whose command line matches ``pattern``."""
    own = os.getpid()
    try:
        entries = sorted(int(entry) for entry in os.listdir("/proc") if entry.isdigit())
    except OSError:
        return None
    for pid in entries:
        if pid == own:
            continue
        args = _read_cmdline(pid)
        if args and pattern.search(" ".join(args)) and pid_alive(pid):
            return pid
    return None


def free_display_slot(start: int = FIRST_DISPLAY_SLOT) -> Optional[int]:
    for slot in range(start, start + _MAX_DISPLAY_SLOTS):
        if Path(X_LOCK_TEMPLATE.format(slot=slot)).exists():
            continue
        if Path(f"/tmp/.X11-unix/X{slot}").exists():
            continue
        return slot
    return None


class RuntimeFiles:
    """Transient per-VM files kept under the runtime directory."""

    def __init__(self, runtime_dir: Path) -> None:
        self.runtime_dir = runtime_dir

    def pid_file(self, name: str) -> Path:
        return self.runtime_dir / f"{name}.pid"

    def log_file(self, name: str) -> Path:
        return self.runtime_dir / f"{name}.log"

    def companion_pid_file(self, name: str) -> Path:
        return self.runtime_dir / f"{name}-xorg.pid"

    def companion_config(self, name: str) -> Path:
        return self.runtime_dir / f"{name}-xorg.conf"

    def all_for(self, name: str) -> List[Path]:
        return [self.pid_file(name), self.log_file(name), self.companion_pid_file(name), self.companion_config(name)]


def locate_vm(files: RuntimeFiles, binary: str, name: str, disk: Path) -> Optional[int]:
    """Return the pid of the hypervisor running ``disk`` for VM ``name``, if any.

    The pid file is trusted only while the process it names still has the
    binary and disk on its command line; otherwise /proc is scanned and a
    hit rewrites the pid file.
    """
    pattern = vm_process_pattern(binary, disk)
    pid_file = files.pid_file(name)
    pid = read_pid(pid_file)
    if pid is not None and pid_alive(pid):
        args = _read_cmdline(pid)
        if args and pattern.search(" ".join(args)):
            return pid
        log("DEBUG", f"Pid {pid} from {pid_file} no longer belongs to VM '{name}'")

    pid = scan_processes(pattern)
    if pid is not None:
        log("DEBUG", f"Recovered VM '{name}' as pid {pid} from the process table")
        ensure_directory(pid_file.parent)
        pid_file.write_text(f"{pid}\n")
    return pid


def stop_companion(files: RuntimeFiles, name: str, grace: float, expected_pid: Optional[int] = None) -> None:
    """Stop ``name``'s display companion and remove its files.

    With ``expected_pid`` set, a pid file naming any other process (a newer
    companion for a restarted VM) is left untouched.
    """
    pid_file = files.companion_pid_file(name)
    config = files.companion_config(name)
    pid = read_pid(pid_file)
    if expected_pid is not None and pid != expected_pid:
        return
    if pid is not None and pid_alive(pid):
        args = _read_cmdline(pid) or []
        if str(config) in args:
            _signal(pid, signal.SIGTERM)
            if not wait_for_exit(pid, grace):
                _signal(pid, signal.SIGKILL)
                wait_for_exit(pid, grace)
            log("INFO", f"Display server companion for '{name}' stopped")
        else:
            log("DEBUG", f"Pid {pid} is not the display companion for '{name}'; leaving it alone")
    pid_file.unlink(missing_ok=True)
    config.unlink(missing_ok=True)


class ProcessSupervisor:
    """Start, find and stop hypervisor processes and their display companions."""

    def __init__(
        self,
        settings: Settings,
        store: ProfileStore,
        capabilities: Capabilities,
        provisioner: Optional[ImageProvisioner] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.capabilities = capabilities
        self.provisioner = provisioner or ImageProvisioner()
        self.files = RuntimeFiles(settings.runtime_dir)
        self._states: Dict[str, RunState] = {}

    # -- runtime files -----------------------------------------------------

    def pid_file(self, name: str) -> Path:
        return self.files.pid_file(name)

    def log_file(self, name: str) -> Path:
        return self.files.log_file(name)

    def companion_pid_file(self, name: str) -> Path:
        return self.files.companion_pid_file(name)

    def companion_config(self, name: str) -> Path:
        return self.files.companion_config(name)

    # -- state -------------------------------------------------------------

    def state(self, name: str) -> RunState:
        return self._states.get(name, RunState.STOPPED)

    def _transition(self, name: str, target: RunState) -> None:
        current = self.state(name)
        if (current, target) not in VALID_TRANSITIONS:
            raise ProcessError(f"VM '{name}' cannot go from {current.value} to {target.value}")
        log("DEBUG", f"{name}: {current.value} -> {target.value}")
        self._states[name] = target

    # -- lookup ------------------------------------------------------------

    def find_pid(self, profile: VMProfile) -> Optional[int]:
        """Return the pid of ``profile``'s hypervisor process, if one is alive."""
        return locate_vm(self.files, self.settings.qemu_binary, profile.name, profile.image_file)

    def is_running(self, name: str) -> bool:
        profile = self.store.load(name)
        pid = self.find_pid(profile)
        if pid is None:
            self._reap(profile)
            self._states[name] = RunState.STOPPED
            return False
        self._states[name] = RunState.RUNNING
        return True

    def _reap(self, profile: VMProfile) -> None:
        """Clean up after a VM that exited without going through ``stop``."""
        pid_file = self.pid_file(profile.name)
        if pid_file.exists():
            log("DEBUG", f"Removing stale pid file {pid_file}")
            pid_file.unlink(missing_ok=True)
        if self.companion_pid_file(profile.name).exists() or self.companion_config(profile.name).exists():
            self.stop_companion(profile.name)

    # -- display companion -------------------------------------------------

    def start_companion(self, name: str) -> Optional[int]:
        """Start a dummy-driver Xorg for ``name`` and return its display number.

        Returns None when the server could not be brought up within the
        companion timeout; the caller falls back to a non-GPU launch.
        """
        slot = free_display_slot()
        if slot is None:
            log("WARN", "No free X display slot for the display server companion")
            return None

        ensure_directory(self.settings.runtime_dir)
        config = self.companion_config(name)
        config.write_text(XORG_DUMMY_CONFIG)
        cmd = [
            self.settings.xorg_binary,
            f":{slot}",
            "-config",
            str(config),
            "-noreset",
            "-nolisten",
            "tcp",
        ]

        read_fd, write_fd = os.pipe()
        try:
            cmd.extend(["-displayfd", str(write_fd)])
            log("INFO", f"Starting display server companion on :{slot}")
            log("DEBUG", f"Running: {' '.join(cmd)}")
            proc = subprocess.Popen(
                cmd,
                pass_fds=(write_fd,),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            os.close(read_fd)
            config.unlink(missing_ok=True)
            log("WARN", f"Failed to start {self.settings.xorg_binary}: {exc}")
            return None
        finally:
            os.close(write_fd)

        self.companion_pid_file(name).write_text(f"{proc.pid}\n")
        display = self._read_display(read_fd)
        if display is None:
            log("WARN", f"Display server did not report ready within {self.settings.companion_timeout:.0f}s")
            self.stop_companion(name)
            return None
        log("SUCCESS", f"Display server companion ready on :{display}")
        return display

    def _read_display(self, read_fd: int) -> Optional[int]:
        data = b""
        deadline = time.monotonic() + self.settings.companion_timeout
        try:
            while not data.endswith(b"\n"):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                ready, _, _ = select.select([read_fd], [], [], remaining)
                if not ready:
                    return None
                chunk = os.read(read_fd, 32)
                if not chunk:
                    break
                data += chunk
        finally:
            os.close(read_fd)
        try:
            return int(data.strip())
        except ValueError:
            return None

    def stop_companion(self, name: str) -> None:
        stop_companion(self.files, name, self.settings.stop_grace)

    def _prepare_display(self, profile: VMProfile) -> Tuple[bool, Optional[int]]:
        """Return ``(gpu_allowed, companion_display)`` for a launch."""
        perf = profile.performance
        if not (perf.gpu and self.capabilities.virgl) or perf.display_server == "guest":
            return True, None
        if os.environ.get("DISPLAY"):
            log("DEBUG", f"Using existing display {os.environ['DISPLAY']}")
            return True, None
        if not self.capabilities.display_server:
            return False, None
        display = self.start_companion(profile.name)
        return display is not None, display

    # -- lifecycle ---------------------------------------------------------

    def start(self, name: str, attach: bool = False) -> LaunchResult:
        profile = self.store.load(name)
        if not profile.image_file.exists():
            raise NotFoundError(f"Boot disk {profile.image_file} for VM '{name}' does not exist")
        if self.is_running(name):
            raise ConflictError(f"VM '{name}' is already running")

        self._transition(name, RunState.STARTING)
        display: Optional[int] = None
        try:
            self.provisioner.ensure_seed(profile)
            gpu_allowed, display = self._prepare_display(profile)
            invocation = build(profile, self.capabilities, gpu_allowed=gpu_allowed, binary=self.settings.qemu_binary)
            for note in invocation.notes:
                log("WARN", note)
            proc = self._launch(profile, invocation, display, attach)
        except BaseException:
            if display is not None:
                self.stop_companion(name)
            self.pid_file(name).unlink(missing_ok=True)
            self._transition(name, RunState.STOPPED)
            raise

        self.pid_file(name).write_text(f"{proc.pid}\n")
        if display is not None and not attach:
            self._spawn_watcher(name, proc.pid)
        self._transition(name, RunState.RUNNING)
        log("SUCCESS", f"VM '{name}' started (pid {proc.pid})")
        log("INFO", f"SSH: ssh -p {profile.ssh_port} {profile.username}@localhost")
        result = LaunchResult(pid=proc.pid, invocation=invocation, display=display, notes=list(invocation.notes))
        if attach:
            result.exit_code = self._wait_attached(profile, proc)
        else:
            log("INFO", f"Console output: {self.log_file(name)}")
        return result

    def _launch(
        self,
        profile: VMProfile,
        invocation: Invocation,
        display: Optional[int],
        attach: bool,
    ) -> subprocess.Popen:
        env = os.environ.copy()
        if display is not None:
            env["DISPLAY"] = f":{display}"
        argv = invocation.argv()
        ensure_directory(self.settings.runtime_dir)
        log("INFO", f"Starting VM '{profile.name}'")
        log("DEBUG", f"Running: {invocation.command_line()}")
        try:
            if attach:
                proc = subprocess.Popen(argv, env=env)
            else:
                with open(self.log_file(profile.name), "ab") as console:
                    proc = subprocess.Popen(
                        argv,
                        env=env,
                        stdin=subprocess.DEVNULL,
                        stdout=console,
                        stderr=subprocess.STDOUT,
                        start_new_session=True,
                    )
        except OSError as exc:
            raise ProcessError(f"Failed to launch {invocation.binary}: {exc}") from exc

        time.sleep(LAUNCH_SETTLE_SECONDS)
        code = proc.poll()
        if code is not None:
            hint = "" if attach else f"; see {self.log_file(profile.name)}"
            raise ProcessError(f"{invocation.binary} exited immediately with code {code}{hint}")
        return proc

    def _spawn_watcher(self, name: str, vm_pid: int) -> None:
        """Run ``vpsctl.watch`` in its own session to stop the companion once the VM exits."""
        companion_pid = read_pid(self.companion_pid_file(name))
        if companion_pid is None:
            return
        cmd = [
            sys.executable,
            "-m",
            "vpsctl.watch",
            "--runtime-dir",
            str(self.settings.runtime_dir),
            "--grace",
            f"{self.settings.stop_grace:g}",
            name,
            str(vm_pid),
            str(companion_pid),
        ]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            with open(self.log_file(name), "ab") as console:
                subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=console,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            log("WARN", f"Could not start the companion watcher for '{name}': {exc}")

    def _wait_attached(self, profile: VMProfile, proc: subprocess.Popen) -> int:
        def _forward(signum, _frame):
            if proc.poll() is None:
                proc.send_signal(signum)

        previous = {sig: signal.signal(sig, _forward) for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)}
        try:
            code = proc.wait()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            self._cleanup(profile.name)
            if self.state(profile.name) is RunState.RUNNING:
                self._transition(profile.name, RunState.STOPPED)
        log("INFO", f"VM '{profile.name}' exited with code {code}")
        return code

    def _cleanup(self, name: str) -> None:
        self.stop_companion(name)
        self.pid_file(name).unlink(missing_ok=True)

    def stop(self, name: str) -> bool:
        """Stop ``name``'s hypervisor; return False if it was not running."""
        profile = self.store.load(name)
        pid = self.find_pid(profile)
        if pid is None:
            self._reap(profile)
            self._states[name] = RunState.STOPPED
            log("INFO", f"VM '{name}' is not running")
            return False

        self._states[name] = RunState.RUNNING
        self._transition(name, RunState.STOPPING)
        log("INFO", f"Stopping VM '{name}' (pid {pid})")
        _signal(pid, signal.SIGTERM)
        if not wait_for_exit(pid, self.settings.stop_grace):
            log("WARN", f"VM '{name}' did not exit within {self.settings.stop_grace:g}s; killing it")
            _signal(pid, signal.SIGKILL)
            if not wait_for_exit(pid, 5.0):
                raise ProcessError(f"VM '{name}' (pid {pid}) survived SIGKILL")
        self._cleanup(name)
        self._transition(name, RunState.STOPPED)
        log("SUCCESS", f"VM '{name}' stopped")
        return True
