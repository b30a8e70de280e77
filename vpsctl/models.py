"""Data models for vpsctl."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, NamedTuple, Tuple


class PortForward(NamedTuple):
    host_port: int
    guest_port: int


@dataclass
class PerformanceConfig:
    cache: str = "writeback"
    io_threads: bool = True
    network_model: str = "virtio-net-pci"
    gpu: bool = False
    display_server: str = "host"  # "host" or "guest"


@dataclass
class VMProfile:
    name: str
    os_type: str
    codename: str
    image_url: str
    hostname: str
    username: str
    password: str
    disk_size: str
    memory_mb: int
    cpus: int
    ssh_port: int
    port_forwards: List[PortForward]
    image_file: Path
    seed_file: Path
    created: str
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    def reserved_ports(self) -> List[int]:
        return [self.ssh_port] + [pf.host_port for pf in self.port_forwards]


@dataclass(frozen=True)
class Capabilities:
    kvm: bool
    cpu_cores: int
    cpu_flags: FrozenSet[str]
    memory_mb: int
    virgl: bool
    display_server: bool


@dataclass(frozen=True)
class OSImage:
    label: str
    family: str
    variant: str
    url: str
    hostname: str
    username: str
    password: str


class RunState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


VALID_TRANSITIONS: Tuple[Tuple[RunState, RunState], ...] = (
    (RunState.STOPPED, RunState.STARTING),
    (RunState.STARTING, RunState.RUNNING),
    (RunState.STARTING, RunState.STOPPED),
    (RunState.RUNNING, RunState.STOPPING),
    (RunState.STOPPING, RunState.STOPPED),
    # guest powered itself off
    (RunState.RUNNING, RunState.STOPPED),
)
