"""On-disk profile records for vpsctl.

Each VM is stored as ``<vm_dir>/<name>.conf`` holding one ``KEY="value"``
assignment per line. The format stays readable by the shell tool that
predates vpsctl, so values are escaped the way a double-quoted shell string
expects. Keys this version does not know are ignored, and performance keys
missing from older records are filled from ``PERFORMANCE_DEFAULTS``.
"""

from __future__ import annotations

import os
import re
import tempfile
import unicodedata
from pathlib import Path
from typing import Dict, List, Optional

from vpsctl.constants import CACHE_MODES, DISPLAY_SERVER_LOCATIONS, PERFORMANCE_DEFAULTS, TRUTHY
from vpsctl.exceptions import NotFoundError, ParseError, ValidationError
from vpsctl.models import PerformanceConfig, PortForward, VMProfile
from vpsctl.utils import ensure_directory, log

RECORD_SUFFIX = ".conf"

_LINE_RE = re.compile(r'^([A-Z_][A-Z0-9_]*)="((?:[^"\\]|\\.)*)"\s*$')
_UNESCAPE_RE = re.compile(r"\\(.)")
_FALSY = {"0", "false", "no", "off"}

_REQUIRED_KEYS = (
    "VM_NAME",
    "OS_TYPE",
    "CODENAME",
    "IMG_URL",
    "HOSTNAME",
    "USERNAME",
    "PASSWORD",
    "DISK_SIZE",
    "MEMORY",
    "CPUS",
    "SSH_PORT",
    "IMG_FILE",
    "SEED_FILE",
)


def has_line_break_or_control(value: str) -> bool:
    """Return True if ``value`` holds a character that cannot sit inside one record line."""
    return any(unicodedata.category(ch) in ("Cc", "Zl", "Zp") for ch in value)


def _escape(value: str) -> str:
    return re.sub(r'(["\\$`])', r"\\\1", value)


def format_port_forwards(forwards: List[PortForward]) -> str:
    return ",".join(f"{pf.host_port}:{pf.guest_port}" for pf in forwards)


def parse_port_forwards(raw: str) -> List[PortForward]:
    """Parse ``"8080:80,8443:443"`` into port-forward pairs (no range checks)."""
    forwards: List[PortForward] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        host, sep, guest = item.partition(":")
        if not sep or not host.strip().isdigit() or not guest.strip().isdigit():
            raise ValueError(f"invalid port forward '{item}' (expected HOST:GUEST)")
        forwards.append(PortForward(int(host), int(guest)))
    return forwards


def serialize_profile(profile: VMProfile) -> str:
    perf = profile.performance
    fields = [
        ("VM_NAME", profile.name),
        ("OS_TYPE", profile.os_type),
        ("CODENAME", profile.codename),
        ("IMG_URL", profile.image_url),
        ("HOSTNAME", profile.hostname),
        ("USERNAME", profile.username),
        ("PASSWORD", profile.password),
        ("DISK_SIZE", profile.disk_size),
        ("MEMORY", str(profile.memory_mb)),
        ("CPUS", str(profile.cpus)),
        ("SSH_PORT", str(profile.ssh_port)),
        ("PORT_FORWARDS", format_port_forwards(profile.port_forwards)),
        ("IMG_FILE", str(profile.image_file)),
        ("SEED_FILE", str(profile.seed_file)),
        ("CREATED", profile.created),
        ("ENABLE_VIRTIO_GPU", "true" if perf.gpu else "false"),
        ("DISK_CACHE", perf.cache),
        ("NETWORK_MODEL", perf.network_model),
        ("IO_THREADS", "true" if perf.io_threads else "false"),
        ("DISPLAY_SERVER", perf.display_server),
    ]
    for key, value in fields:
        if has_line_break_or_control(value):
            raise ValidationError(f"{key} for VM '{profile.name}' contains a line break or control character")
    return "".join(f'{key}="{_escape(value)}"\n' for key, value in fields)


def parse_record(text: str, source: str = "<record>") -> Dict[str, str]:
    values: Dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        match = _LINE_RE.match(stripped)
        if not match:
            raise ParseError(f"{source}:{lineno}: expected KEY=\"value\", got {stripped[:60]!r}")
        values[match.group(1)] = _UNESCAPE_RE.sub(r"\1", match.group(2))
    return values


def _parse_bool(raw: str, key: str, source: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ParseError(f"{source}: {key} must be true or false (got '{raw}')")


def _parse_int(raw: str, key: str, source: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ParseError(f"{source}: {key} must be an integer (got '{raw}')")


def profile_from_record(values: Dict[str, str], source: str = "<record>") -> VMProfile:
    missing = [key for key in _REQUIRED_KEYS if key not in values]
    if missing:
        raise ParseError(f"{source}: missing keys {', '.join(missing)}")

    try:
        port_forwards = parse_port_forwards(values.get("PORT_FORWARDS", ""))
    except ValueError as exc:
        raise ParseError(f"{source}: {exc}")

    perf = PerformanceConfig(**PERFORMANCE_DEFAULTS)
    if "DISK_CACHE" in values:
        perf.cache = values["DISK_CACHE"]
        if perf.cache not in CACHE_MODES:
            raise ParseError(f"{source}: unsupported DISK_CACHE '{perf.cache}'")
    if "IO_THREADS" in values:
        perf.io_threads = _parse_bool(values["IO_THREADS"], "IO_THREADS", source)
    if values.get("NETWORK_MODEL"):
        perf.network_model = values["NETWORK_MODEL"]
    if "ENABLE_VIRTIO_GPU" in values:
        perf.gpu = _parse_bool(values["ENABLE_VIRTIO_GPU"], "ENABLE_VIRTIO_GPU", source)
    if "DISPLAY_SERVER" in values:
        perf.display_server = values["DISPLAY_SERVER"]
        if perf.display_server not in DISPLAY_SERVER_LOCATIONS:
            raise ParseError(f"{source}: unsupported DISPLAY_SERVER '{perf.display_server}'")

    return VMProfile(
        name=values["VM_NAME"],
        os_type=values["OS_TYPE"],
        codename=values["CODENAME"],
        image_url=values["IMG_URL"],
        hostname=values["HOSTNAME"],
        username=values["USERNAME"],
        password=values["PASSWORD"],
        disk_size=values["DISK_SIZE"],
        memory_mb=_parse_int(values["MEMORY"], "MEMORY", source),
        cpus=_parse_int(values["CPUS"], "CPUS", source),
        ssh_port=_parse_int(values["SSH_PORT"], "SSH_PORT", source),
        port_forwards=port_forwards,
        image_file=Path(values["IMG_FILE"]),
        seed_file=Path(values["SEED_FILE"]),
        created=values.get("CREATED", ""),
        performance=perf,
    )


class ProfileStore:
    """Directory of VM profile records keyed by VM name."""

    def __init__(self, vm_dir: Path) -> None:
        self.vm_dir = vm_dir

    def path_for(self, name: str) -> Path:
        return self.vm_dir / f"{name}{RECORD_SUFFIX}"

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def load(self, name: str) -> VMProfile:
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError(f"VM '{name}' not found ({path})")
        profile = profile_from_record(parse_record(text, str(path)), str(path))
        if profile.name != name:
            raise ParseError(f"{path}: VM_NAME '{profile.name}' does not match record name '{name}'")
        return profile

    def save(self, profile: VMProfile) -> None:
        text = serialize_profile(profile)
        ensure_directory(self.vm_dir)
        destination = self.path_for(profile.name)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=self.vm_dir, prefix=f".{profile.name}.", suffix=".tmp", delete=False
        ) as tmp:
            tmp_path = Path(tmp.name)
            try:
                tmp.write(text)
                tmp.flush()
                os.fsync(tmp.fileno())
            except Exception:
                tmp_path.unlink(missing_ok=True)
                raise
        tmp_path.replace(destination)
        log("DEBUG", f"Saved profile {destination}")

    def delete(self, name: str) -> None:
        path = self.path_for(name)
        if not path.exists():
            raise NotFoundError(f"VM '{name}' not found ({path})")
        path.unlink()

    def list(self) -> List[str]:
        if not self.vm_dir.is_dir():
            return []
        return sorted(
            path.name[: -len(RECORD_SUFFIX)]
            for path in self.vm_dir.iterdir()
            if path.is_file() and path.name.endswith(RECORD_SUFFIX) and not path.name.startswith(".")
        )

    def reserved_ports(self, exclude: Optional[str] = None) -> Dict[int, str]:
        """Map every host port claimed by a stored profile to the owning VM name."""
        ports: Dict[int, str] = {}
        for name in self.list():
            if name == exclude:
                continue
            try:
                profile = self.load(name)
            except ParseError as exc:
                log("WARN", f"Skipping unreadable profile while checking ports: {exc}")
                continue
            for port in profile.reserved_ports():
                ports.setdefault(port, name)
        return ports
