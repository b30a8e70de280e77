"""Settings loading, field validation and profile construction for vpsctl."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

from vpsctl.constants import (
    CACHE_MODES,
    DEFAULT_COMPANION_TIMEOUT,
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_QEMU_BINARY,
    DEFAULT_SSH_PORT,
    DEFAULT_STOP_GRACE,
    DEFAULT_VM_DIR,
    DEFAULT_XORG_BINARY,
    DISK_SIZE_RE,
    DISPLAY_SERVER_LOCATIONS,
    NAME_RE,
    PORT_MAX,
    PORT_MIN,
    SUPPORTED_NETWORK_MODELS,
    TRUTHY,
    USERNAME_RE,
)
from vpsctl.exceptions import ConflictError, ValidationError
from vpsctl.models import Capabilities, OSImage, PerformanceConfig, PortForward, VMProfile
from vpsctl.store import ProfileStore, has_line_break_or_control, parse_port_forwards
from vpsctl.utils import get_env, log, parse_float_env, parse_size_to_bytes, port_in_use


@dataclass
class Settings:
    vm_dir: Path
    qemu_binary: str = DEFAULT_QEMU_BINARY
    xorg_binary: str = DEFAULT_XORG_BINARY
    stop_grace: float = DEFAULT_STOP_GRACE
    companion_timeout: float = DEFAULT_COMPANION_TIMEOUT
    catalog_path: Optional[Path] = None

    @property
    def runtime_dir(self) -> Path:
        return self.vm_dir / "run"


def load_settings() -> Settings:
    vm_dir_raw = (get_env("VM_DIR") or "").strip()
    catalog_raw = (get_env("VPS_CATALOG") or "").strip()
    return Settings(
        vm_dir=Path(vm_dir_raw).expanduser() if vm_dir_raw else DEFAULT_VM_DIR,
        qemu_binary=(get_env("QEMU_BINARY") or "").strip() or DEFAULT_QEMU_BINARY,
        xorg_binary=(get_env("XORG_BINARY") or "").strip() or DEFAULT_XORG_BINARY,
        stop_grace=parse_float_env("STOP_GRACE", DEFAULT_STOP_GRACE),
        companion_timeout=parse_float_env("COMPANION_TIMEOUT", DEFAULT_COMPANION_TIMEOUT),
        catalog_path=Path(catalog_raw).expanduser() if catalog_raw else None,
    )


# -- field validators -------------------------------------------------------


def validate_name(value: str, field: str = "name") -> str:
    value = value.strip()
    if not NAME_RE.match(value):
        raise ValidationError(f"Invalid {field} '{value}': use letters, digits, '_' and '-' only")
    return value


def validate_username(value: str) -> str:
    value = value.strip()
    if not USERNAME_RE.match(value):
        raise ValidationError(
            f"Invalid username '{value}': must start with a lowercase letter or '_' "
            "followed by lowercase letters, digits, '_' or '-'"
        )
    return value


def validate_password(value: str) -> str:
    if not value:
        raise ValidationError("Password must not be empty")
    if has_line_break_or_control(value):
        raise ValidationError("Password must not contain line breaks or control characters")
    return value


def validate_disk_size(value: str) -> str:
    value = value.strip()
    if not DISK_SIZE_RE.match(value):
        raise ValidationError(f"Invalid disk size '{value}'. Use a number followed by G or M (e.g. '30G')")
    if parse_size_to_bytes(value) == 0:
        raise ValidationError("Disk size must be greater than zero")
    return value


def validate_positive_int(value: Union[str, int], field: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number (got '{value}')")
    if number < 1:
        raise ValidationError(f"{field} must be >= 1 (got {number})")
    return number


def validate_cpus(value: Union[str, int], capabilities: Optional[Capabilities] = None) -> int:
    """Validate a vCPU count, capping it at the host's core count when known."""
    count = validate_positive_int(value, "CPUs")
    if capabilities is not None and count > capabilities.cpu_cores:
        log("WARN", f"Requested {count} CPUs but host has {capabilities.cpu_cores}; capping")
        count = capabilities.cpu_cores
    return count


def validate_port(value: Union[str, int], field: str = "SSH port") -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field} '{value}' ({PORT_MIN}-{PORT_MAX})")
    if port < PORT_MIN or port > PORT_MAX:
        raise ValidationError(f"Invalid {field} {port} ({PORT_MIN}-{PORT_MAX})")
    return port


def validate_port_forwards(raw: Union[str, Iterable[PortForward]]) -> List[PortForward]:
    if isinstance(raw, str):
        try:
            forwards = parse_port_forwards(raw)
        except ValueError as exc:
            raise ValidationError(f"Port forwards: {exc}")
    else:
        forwards = [PortForward(int(pf[0]), int(pf[1])) for pf in raw]
    for pf in forwards:
        validate_port(pf.host_port, "forwarded host port")
        if pf.guest_port < 1 or pf.guest_port > 65535:
            raise ValidationError(f"Invalid forwarded guest port {pf.guest_port} (1-65535)")
    return forwards


def validate_cache(value: str) -> str:
    value = value.strip().lower()
    if value not in CACHE_MODES:
        raise ValidationError(f"Unsupported cache mode '{value}'. Supported: {', '.join(CACHE_MODES)}")
    return value


def validate_network_model(value: str) -> str:
    value = value.strip()
    if value not in SUPPORTED_NETWORK_MODELS:
        supported = ", ".join(sorted(SUPPORTED_NETWORK_MODELS))
        raise ValidationError(f"Unsupported network model '{value}'. Supported: {supported}")
    return value


def validate_display_server(value: str) -> str:
    value = value.strip().lower()
    if value not in DISPLAY_SERVER_LOCATIONS:
        raise ValidationError(
            f"Unsupported display server location '{value}'. Supported: {', '.join(DISPLAY_SERVER_LOCATIONS)}"
        )
    return value


def validate_bool(value: Union[str, bool], field: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = value.strip().lower()
    if lowered in TRUTHY:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValidationError(f"{field} must be true or false (got '{value}')")


# -- conflict checks --------------------------------------------------------


def check_port_conflicts(
    store: ProfileStore,
    ports: List[int],
    owner: Optional[str] = None,
    already_held: Iterable[int] = (),
) -> None:
    """Reject ports used twice, reserved by another profile, or bound on the host.

    Ports in ``already_held`` belong to ``owner`` from before an edit; they are
    not probed on the host since the VM itself may be listening on them.
    """
    seen = set()
    for port in ports:
        if port in seen:
            raise ConflictError(f"Port {port} is used more than once in this VM")
        seen.add(port)

    reserved = store.reserved_ports(exclude=owner)
    held = set(already_held)
    for port in ports:
        if port in reserved:
            raise ConflictError(f"Port {port} is already reserved by VM '{reserved[port]}'")
        if port not in held and port_in_use(port):
            raise ConflictError(f"Port {port} is already in use on this host")


# -- construction and mutation ---------------------------------------------


def build_profile(
    store: ProfileStore,
    image: OSImage,
    *,
    name: Optional[str] = None,
    hostname: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    disk_size: str = DEFAULT_DISK_SIZE,
    memory_mb: Union[str, int] = DEFAULT_MEMORY_MB,
    cpus: Union[str, int] = DEFAULT_CPUS,
    ssh_port: Union[str, int] = DEFAULT_SSH_PORT,
    port_forwards: Union[str, Iterable[PortForward]] = "",
    cache: str = "writeback",
    io_threads: Union[str, bool] = True,
    network_model: str = "virtio-net-pci",
    gpu: Optional[Union[str, bool]] = None,
    display_server: str = "host",
    capabilities: Optional[Capabilities] = None,
) -> VMProfile:
    """Validate creation inputs and return a new, unsaved profile."""
    vm_name = validate_name(name or image.hostname)
    if store.exists(vm_name):
        raise ConflictError(f"VM '{vm_name}' already exists")

    cpu_count = validate_cpus(cpus, capabilities)

    if gpu is None:
        gpu_enabled = bool(capabilities and capabilities.virgl)
    else:
        gpu_enabled = validate_bool(gpu, "GPU")

    profile = VMProfile(
        name=vm_name,
        os_type=image.family,
        codename=image.variant,
        image_url=image.url,
        hostname=validate_name(hostname or vm_name, "hostname"),
        username=validate_username(username or image.username),
        password=validate_password(password if password is not None else image.password),
        disk_size=validate_disk_size(disk_size),
        memory_mb=validate_positive_int(memory_mb, "Memory"),
        cpus=cpu_count,
        ssh_port=validate_port(ssh_port),
        port_forwards=validate_port_forwards(port_forwards),
        image_file=store.vm_dir / f"{vm_name}.img",
        seed_file=store.vm_dir / f"{vm_name}-seed.iso",
        created=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        performance=PerformanceConfig(
            cache=validate_cache(cache),
            io_threads=validate_bool(io_threads, "I/O threads"),
            network_model=validate_network_model(network_model),
            gpu=gpu_enabled,
            display_server=validate_display_server(display_server),
        ),
    )
    check_port_conflicts(store, profile.reserved_ports(), owner=vm_name)
    return profile


# Edits to these fields change what goes into the cloud-init seed.
SEED_FIELDS = {"hostname", "username", "password", "gpu", "display_server"}

EDITABLE_FIELDS = (
    "hostname",
    "username",
    "password",
    "disk_size",
    "memory",
    "cpus",
    "ssh_port",
    "port_forwards",
    "cache",
    "io_threads",
    "network_model",
    "gpu",
    "display_server",
)


def apply_edit(
    store: ProfileStore,
    profile: VMProfile,
    field: str,
    value: str,
    confirm_shrink: bool = False,
    capabilities: Optional[Capabilities] = None,
) -> Tuple[VMProfile, bool]:
    """Return ``(edited_copy, seed_changed)`` after validating one field change.

    The input profile is left untouched so a rejected edit never leaks into
    the caller's copy.
    """
    if field == "name":
        raise ValidationError("The VM name is its identity and cannot be edited; delete and recreate instead")
    if field not in EDITABLE_FIELDS:
        raise ValidationError(f"Unknown field '{field}'. Editable: {', '.join(EDITABLE_FIELDS)}")

    edited = copy.deepcopy(profile)
    perf = edited.performance
    if field == "hostname":
        edited.hostname = validate_name(value, "hostname")
    elif field == "username":
        edited.username = validate_username(value)
    elif field == "password":
        edited.password = validate_password(value)
    elif field == "disk_size":
        new_size = validate_disk_size(value)
        if parse_size_to_bytes(new_size) < parse_size_to_bytes(profile.disk_size) and not confirm_shrink:
            raise ValidationError(
                f"Shrinking the disk from {profile.disk_size} to {new_size} can destroy guest data; "
                "confirm the shrink explicitly to proceed"
            )
        edited.disk_size = new_size
    elif field == "memory":
        edited.memory_mb = validate_positive_int(value, "Memory")
    elif field == "cpus":
        edited.cpus = validate_cpus(value, capabilities)
    elif field == "ssh_port":
        edited.ssh_port = validate_port(value)
    elif field == "port_forwards":
        edited.port_forwards = validate_port_forwards(value)
    elif field == "cache":
        perf.cache = validate_cache(value)
    elif field == "io_threads":
        perf.io_threads = validate_bool(value, "I/O threads")
    elif field == "network_model":
        perf.network_model = validate_network_model(value)
    elif field == "gpu":
        perf.gpu = validate_bool(value, "GPU")
    elif field == "display_server":
        perf.display_server = validate_display_server(value)

    if field in {"ssh_port", "port_forwards"}:
        check_port_conflicts(
            store,
            edited.reserved_ports(),
            owner=profile.name,
            already_held=profile.reserved_ports(),
        )
    return edited, field in SEED_FIELDS


def describe_profile(profile: VMProfile) -> Dict[str, str]:
    perf = profile.performance
    return {
        "name": profile.name,
        "os": f"{profile.os_type} {profile.codename}",
        "hostname": profile.hostname,
        "username": profile.username,
        "ssh": f"ssh -p {profile.ssh_port} {profile.username}@localhost",
        "memory": f"{profile.memory_mb} MB",
        "cpus": str(profile.cpus),
        "disk": profile.disk_size,
        "port_forwards": ", ".join(f"{pf.host_port}->{pf.guest_port}" for pf in profile.port_forwards) or "none",
        "cache": perf.cache,
        "io_threads": "enabled" if perf.io_threads else "disabled",
        "network": perf.network_model,
        "gpu": f"enabled (display server: {perf.display_server})" if perf.gpu else "disabled",
        "image": str(profile.image_file),
        "seed": str(profile.seed_file),
        "created": profile.created,
    }
