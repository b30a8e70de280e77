"""Host capability detection for vpsctl."""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import FrozenSet

from vpsctl.constants import DEFAULT_QEMU_BINARY, DEFAULT_XORG_BINARY
from vpsctl.models import Capabilities
from vpsctl.utils import kvm_available, log


def _cpu_flags() -> FrozenSet[str]:
    """Return the CPU extension flags of the first processor in /proc/cpuinfo."""
    try:
        with open("/proc/cpuinfo") as f:
            for line in f:
                if line.startswith("flags"):
                    return frozenset(line.split(":", 1)[1].split())
    except OSError:
        pass
    return frozenset()


def _total_memory_mb() -> int:
    try:
        with open("/proc/meminfo") as f:
            for line in f:
                if line.startswith("MemTotal:"):
                    return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError):
        pass
    return 0


def _virgl_available(qemu_binary: str) -> bool:
    """Check whether the hypervisor offers the virgl-backed ``virtio-vga-gl`` device."""
    if shutil.which(qemu_binary) is None:
        return False
    try:
        result = subprocess.run(
            [qemu_binary, "-device", "help"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return "virtio-vga-gl" in result.stdout + result.stderr


def _display_server_available(xorg_binary: str) -> bool:
    return shutil.which(xorg_binary) is not None


def probe(qemu_binary: str = DEFAULT_QEMU_BINARY, xorg_binary: str = DEFAULT_XORG_BINARY) -> Capabilities:
    """Detect host features once; the result is never cached across runs."""
    caps = Capabilities(
        kvm=kvm_available(),
        cpu_cores=os.cpu_count() or 1,
        cpu_flags=_cpu_flags(),
        memory_mb=_total_memory_mb(),
        virgl=_virgl_available(qemu_binary),
        display_server=_display_server_available(xorg_binary),
    )

    if caps.kvm:
        log("SUCCESS", "KVM acceleration available")
    else:
        log("WARN", "KVM not available; guests will run under TCG emulation")
    if "avx2" in caps.cpu_flags:
        log("DEBUG", "CPU supports AVX2")
    log("INFO", f"CPU: {caps.cpu_cores} cores, RAM: {caps.memory_mb}MB")
    if caps.virgl:
        log("DEBUG", "virtio-gpu with virgl available")
    else:
        log("DEBUG", "virtio-vga-gl not offered by the hypervisor; GPU VMs use standard VGA")
    if not caps.display_server:
        log("DEBUG", f"{xorg_binary} not found; host display server companion unavailable")
    return caps
