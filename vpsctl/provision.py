"""Boot disk and cloud-init seed provisioning for vpsctl."""

from __future__ import annotations

import hashlib
import json
import subprocess
import tempfile
import textwrap
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vpsctl.constants import (
    DISK_FORMAT,
    DISK_FORMAT_ERROR_MARKERS,
    QCOW2_MAGIC,
    SEED_VOLUME_ID,
    XORG_DUMMY_CONFIG,
)
from vpsctl.exceptions import ProvisioningError
from vpsctl.models import VMProfile
from vpsctl.utils import download_file, ensure_directory, hash_password, log, parse_size_to_bytes, run

# Bump when the rendered seed layout changes so existing seeds are rebuilt.
_SEED_LAYOUT_VERSION = 1

GUEST_XORG_PACKAGES = [
    "xserver-xorg-core",
    "xserver-xorg-video-dummy",
    "x11-xserver-utils",
    "mesa-utils",
    "glmark2",
]

GUEST_XORG_UNIT = textwrap.dedent(
    """\
    [Unit]
    Description=Xorg Dummy Display for GPU Acceleration
    After=network.target

    [Service]
    Type=simple
    ExecStart=/usr/bin/Xorg :0 -config /etc/X11/xorg.conf.d/20-dummy.conf
    Restart=always
    Environment="DISPLAY=:0"

    [Install]
    WantedBy=multi-user.target
    """
)


def is_disk_format_error(stderr: str) -> bool:
    lowered = stderr.lower()
    if "permission denied" in lowered:
        return False
    return any(marker in lowered for marker in DISK_FORMAT_ERROR_MARKERS)


def seed_fingerprint(profile: VMProfile) -> str:
    """Digest of every input that ends up in the seed volume."""
    payload = {
        "layout": _SEED_LAYOUT_VERSION,
        "name": profile.name,
        "hostname": profile.hostname,
        "username": profile.username,
        "password": profile.password,
        "guest_display": profile.performance.gpu and profile.performance.display_server == "guest",
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def render_user_data(profile: VMProfile, password_hash: str) -> str:
    cloud_cfg: Dict[str, object] = {
        "hostname": profile.hostname,
        "ssh_pwauth": True,
        "users": [
            {
                "name": profile.username,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "lock_passwd": False,
                "passwd": password_hash,
            }
        ],
        "chpasswd": {"expire": False},
    }
    perf = profile.performance
    if perf.gpu and perf.display_server == "guest":
        cloud_cfg["packages"] = list(GUEST_XORG_PACKAGES)
        cloud_cfg["write_files"] = [
            {"path": "/etc/X11/xorg.conf.d/20-dummy.conf", "content": XORG_DUMMY_CONFIG},
            {"path": "/etc/systemd/system/xorg-dummy.service", "content": GUEST_XORG_UNIT},
        ]
        cloud_cfg["runcmd"] = [
            "systemctl daemon-reload",
            "systemctl enable xorg-dummy",
            "systemctl start xorg-dummy",
            'echo "export DISPLAY=:0" >> /etc/environment',
        ]
    return "#cloud-config\n" + yaml.safe_dump(cloud_cfg, sort_keys=False, default_flow_style=False)


def render_meta_data(profile: VMProfile) -> str:
    return f"instance-id: iid-{profile.name}\nlocal-hostname: {profile.hostname}\n"


class ImageProvisioner:
    """Make a profile's boot disk and seed volume match its declaration.

    Every step checks the current state first, so ``ensure`` can be repeated
    after an interruption and does no work when nothing changed.
    """

    def ensure(self, profile: VMProfile, allow_shrink: bool = False) -> None:
        ensure_directory(profile.image_file.parent)
        ensure_directory(profile.seed_file.parent)
        self.ensure_boot_disk(profile)
        self.resize_boot_disk(profile, allow_shrink=allow_shrink)
        self.ensure_seed(profile)
        log("SUCCESS", f"VM image ready: {profile.image_file}")

    @staticmethod
    def artifacts(profile: VMProfile) -> List[Path]:
        return [profile.image_file, profile.seed_file, _fingerprint_path(profile.seed_file)]

    # -- boot disk ---------------------------------------------------------

    def ensure_boot_disk(self, profile: VMProfile) -> None:
        if profile.image_file.exists():
            log("DEBUG", f"Using existing boot disk {profile.image_file}")
            return
        download_file(profile.image_url, profile.image_file, label="Downloading base image")

    def resize_boot_disk(self, profile: VMProfile, allow_shrink: bool = False) -> None:
        path = profile.image_file
        requested = parse_size_to_bytes(profile.disk_size)

        if not self._has_disk_magic(path):
            log("WARN", f"{path} is not a valid {DISK_FORMAT} image; recreating it at {profile.disk_size}")
            self._recreate(path, profile.disk_size)
            return

        current = self._virtual_size(path)
        if current is None:
            log("WARN", f"{path} could not be read as a disk image; recreating it at {profile.disk_size}")
            self._recreate(path, profile.disk_size)
            return
        if current == requested:
            log("DEBUG", f"Boot disk already {profile.disk_size}")
            return
        shrink = requested < current
        if shrink and not allow_shrink:
            log("INFO", f"Boot disk is larger than {profile.disk_size}; not shrinking without confirmation")
            return

        cmd = ["qemu-img", "resize", "-f", DISK_FORMAT]
        if shrink:
            cmd.append("--shrink")
        cmd.extend([str(path), profile.disk_size])
        result = self._qemu_img(cmd)
        if result.returncode == 0:
            log("INFO", f"Boot disk resized to {profile.disk_size}")
            return
        if is_disk_format_error(result.stderr):
            log("WARN", f"Resize failed, {path} is not a usable disk image; recreating it at {profile.disk_size}")
            self._recreate(path, profile.disk_size)
            return
        raise ProvisioningError(f"Failed to resize {path}: {result.stderr.strip()}")

    @staticmethod
    def _has_disk_magic(path: Path) -> bool:
        try:
            with open(path, "rb") as f:
                return f.read(len(QCOW2_MAGIC)) == QCOW2_MAGIC
        except OSError as exc:
            raise ProvisioningError(f"Cannot read boot disk {path}: {exc}") from exc

    @staticmethod
    def _qemu_img(cmd: List[str]) -> subprocess.CompletedProcess:
        try:
            return run(cmd, check=False, capture_output=True)
        except FileNotFoundError as exc:
            raise ProvisioningError("qemu-img not found; install the QEMU utilities") from exc

    def _virtual_size(self, path: Path) -> Optional[int]:
        """Return the virtual size in bytes, or None if the file is not a readable image."""
        result = self._qemu_img(["qemu-img", "info", "--output=json", "-f", DISK_FORMAT, str(path)])
        if result.returncode != 0:
            if is_disk_format_error(result.stderr):
                return None
            raise ProvisioningError(f"Failed to inspect {path}: {result.stderr.strip()}")
        try:
            return int(json.loads(result.stdout)["virtual-size"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ProvisioningError(f"Unexpected qemu-img info output for {path}: {exc}") from exc

    def _recreate(self, path: Path, size: str) -> None:
        tmp_path = path.with_name(f".{path.name}.new")
        tmp_path.unlink(missing_ok=True)
        result = self._qemu_img(["qemu-img", "create", "-f", DISK_FORMAT, str(tmp_path), size])
        if result.returncode != 0:
            tmp_path.unlink(missing_ok=True)
            raise ProvisioningError(f"Failed to create {path}: {result.stderr.strip()}")
        tmp_path.replace(path)
        log("SUCCESS", f"Created blank {DISK_FORMAT} disk {path} ({size})")

    # -- seed volume -------------------------------------------------------

    def ensure_seed(self, profile: VMProfile) -> None:
        marker = _fingerprint_path(profile.seed_file)
        fingerprint = seed_fingerprint(profile)
        if profile.seed_file.exists() and marker.exists() and marker.read_text().strip() == fingerprint:
            log("DEBUG", f"Seed volume {profile.seed_file} is current")
            return
        self.generate_seed(profile)
        marker.write_text(fingerprint + "\n")

    def generate_seed(self, profile: VMProfile) -> None:
        """Build the cloud-init NoCloud seed ISO for ``profile``."""
        seed = profile.seed_file
        tmp_seed = seed.with_name(f".{seed.name}.new")
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = Path(tmpdir)
            (tmp / "user-data").write_text(
                render_user_data(profile, hash_password(profile.password)), encoding="utf-8"
            )
            (tmp / "meta-data").write_text(render_meta_data(profile), encoding="utf-8")
            cmd = [
                "genisoimage",
                "-output",
                str(tmp_seed),
                "-volid",
                SEED_VOLUME_ID,
                "-joliet",
                "-rock",
                str(tmp / "user-data"),
                str(tmp / "meta-data"),
            ]
            try:
                run(cmd, capture_output=True)
            except FileNotFoundError as exc:
                tmp_seed.unlink(missing_ok=True)
                raise ProvisioningError("genisoimage not found; it is required to build the seed volume") from exc
            except subprocess.CalledProcessError as exc:
                tmp_seed.unlink(missing_ok=True)
                raise ProvisioningError(f"Failed to create seed volume: {(exc.stderr or '').strip()}") from exc
        tmp_seed.replace(seed)
        log("SUCCESS", f"Seed volume written to {seed}")


def _fingerprint_path(seed_file: Path) -> Path:
    return seed_file.with_name(f"{seed_file.name}.sha256")
