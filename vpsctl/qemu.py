"""QEMU invocation building for vpsctl.

``build`` turns a profile and the probed host capabilities into an
``Invocation``: an ordered tuple of typed option records that serialize to
argv. Rules that couple several flags (drive cache and AIO mode, the shared
SCSI bus, the single user-mode netdev) are applied when the records are
constructed, so the serialized order cannot break them.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from vpsctl.constants import DEFAULT_QEMU_BINARY, DISK_FORMAT
from vpsctl.models import Capabilities, VMProfile

Props = Tuple[Tuple[str, str], ...]


def aio_mode(cache: str) -> str:
    """Native AIO needs O_DIRECT, which only ``cache=none`` provides."""
    return "native" if cache == "none" else "threads"


def qemu_path(path: Path) -> str:
    return str(path).replace(",", ",,")


def _join(head: Optional[str], props: Props) -> str:
    parts = [head] if head else []
    parts.extend(f"{key}={value}" for key, value in props)
    return ",".join(parts)


@dataclass(frozen=True)
class Flag:
    name: str
    value: Optional[str] = None

    def to_args(self) -> Tuple[str, ...]:
        return (self.name,) if self.value is None else (self.name, self.value)


@dataclass(frozen=True)
class QemuObject:
    kind: str
    id: str
    props: Props = ()

    def to_args(self) -> Tuple[str, ...]:
        return ("-object", _join(self.kind, (("id", self.id),) + self.props))


@dataclass(frozen=True)
class Device:
    driver: str
    props: Props = ()

    def to_args(self) -> Tuple[str, ...]:
        return ("-device", _join(self.driver, self.props))


@dataclass(frozen=True)
class Drive:
    file: Path
    id: str
    format: str
    cache: str
    interface: str  # "none" when attached through a separate -device

    @property
    def aio(self) -> str:
        return aio_mode(self.cache)

    def to_args(self) -> Tuple[str, ...]:
        props: Props = (
            ("file", qemu_path(self.file)),
            ("if", self.interface),
            ("id", self.id),
            ("format", self.format),
            ("cache", self.cache),
            ("aio", self.aio),
        )
        return ("-drive", _join(None, props))


@dataclass(frozen=True)
class UserNetdev:
    id: str
    forwards: Tuple[Tuple[int, int], ...]

    def to_args(self) -> Tuple[str, ...]:
        props: Props = tuple(("hostfwd", f"tcp::{host}-:{guest}") for host, guest in self.forwards)
        return ("-netdev", _join("user", (("id", self.id),) + props))


QemuOption = Union[Flag, QemuObject, Device, Drive, UserNetdev]


@dataclass(frozen=True)
class Invocation:
    binary: str
    options: Tuple[QemuOption, ...]
    gpu: bool = False
    notes: Tuple[str, ...] = field(default=(), compare=False)

    def argv(self) -> List[str]:
        args = [self.binary]
        for option in self.options:
            args.extend(option.to_args())
        return args

    def drives(self) -> List[Drive]:
        return [option for option in self.options if isinstance(option, Drive)]

    def command_line(self) -> str:
        return shlex.join(self.argv())


def _cpu_model(capabilities: Capabilities) -> str:
    if not capabilities.kvm:
        return "qemu64"
    if "avx2" in capabilities.cpu_flags:
        return "host,+avx2"
    return "host"


def _disk_options(profile: VMProfile) -> List[QemuOption]:
    cache = profile.performance.cache
    if profile.performance.io_threads:
        return [
            QemuObject("iothread", "io1"),
            Device("virtio-scsi-pci", (("id", "scsi0"), ("iothread", "io1"))),
            Drive(profile.image_file, "drive0", DISK_FORMAT, cache, "none"),
            Device("scsi-hd", (("drive", "drive0"), ("bus", "scsi0.0"))),
            Drive(profile.seed_file, "drive1", "raw", cache, "none"),
            Device("scsi-cd", (("drive", "drive1"), ("bus", "scsi0.0"))),
        ]
    return [
        Drive(profile.image_file, "drive0", DISK_FORMAT, cache, "virtio"),
        Drive(profile.seed_file, "drive1", "raw", cache, "virtio"),
    ]


def build(
    profile: VMProfile,
    capabilities: Capabilities,
    gpu_allowed: bool = True,
    binary: str = DEFAULT_QEMU_BINARY,
) -> Invocation:
    """Map ``profile`` and ``capabilities`` to a complete hypervisor invocation.

    Args:
        profile: validated VM profile.
        capabilities: probed host features.
        gpu_allowed: False when the caller already knows GPU output can not
            be served (e.g. the display server companion failed to start).
        binary: hypervisor executable placed at argv[0].

    Returns:
        The invocation; ``notes`` lists any requested feature that was
        dropped so callers can report it.
    """
    perf = profile.performance
    notes: List[str] = []
    options: List[QemuOption] = []

    if capabilities.kvm:
        options.append(Flag("-enable-kvm"))
    options.extend(
        [
            Flag("-m", str(profile.memory_mb)),
            Flag("-smp", f"cpus={profile.cpus},cores={profile.cpus},threads=1,sockets=1"),
            Flag("-cpu", _cpu_model(capabilities)),
            Flag("-machine", "q35,hpet=off,accel=kvm:tcg"),
        ]
    )

    options.extend(_disk_options(profile))
    options.append(Flag("-boot", "order=c"))

    options.append(Device(perf.network_model, (("netdev", "n0"),)))
    forwards = ((profile.ssh_port, 22),) + tuple((pf.host_port, pf.guest_port) for pf in profile.port_forwards)
    options.append(UserNetdev("n0", forwards))

    use_gpu = False
    if perf.gpu:
        if not capabilities.virgl:
            notes.append("GPU passthrough requested but no virtio-vga-gl device is available; using standard VGA")
        elif not gpu_allowed:
            notes.append("GPU passthrough requested but no display server is available; using standard VGA")
        else:
            use_gpu = True
    if use_gpu:
        options.extend([Device("virtio-vga-gl"), Flag("-display", "egl-headless")])
    else:
        options.extend([Flag("-vga", "std"), Flag("-display", "none")])

    # Headless: serial console and monitor share the controlling terminal.
    options.append(Flag("-serial", "mon:stdio"))

    options.extend(
        [
            QemuObject("rng-random", "rng0", (("filename", "/dev/urandom"),)),
            Device("virtio-rng-pci", (("rng", "rng0"),)),
            Device("virtio-balloon-pci"),
            Flag("-global", "ICH9-LPC.disable_s3=1"),
            Flag("-global", "ICH9-LPC.disable_s4=1"),
            Flag("-rtc", "base=utc,clock=host,driftfix=slew"),
        ]
    )
    return Invocation(binary=binary, options=tuple(options), gpu=use_gpu, notes=tuple(notes))
