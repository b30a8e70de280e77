"""Global constants and path configuration for vpsctl."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_VM_DIR = Path.home() / "vms"
DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "distros.yaml"
DEFAULT_QEMU_BINARY = "qemu-system-x86_64"
DEFAULT_XORG_BINARY = "Xorg"

TRUTHY = {"1", "true", "yes", "on"}

NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")
DISK_SIZE_RE = re.compile(r"^(\d+)([GgMm])$")
PORT_MIN = 23
PORT_MAX = 65535

CACHE_MODES = ("writeback", "writethrough", "none")
DISPLAY_SERVER_LOCATIONS = ("host", "guest")
SUPPORTED_NETWORK_MODELS = {"virtio-net-pci", "e1000", "e1000e", "rtl8139", "vmxnet3"}

# Applied to records written before these fields existed.
PERFORMANCE_DEFAULTS = {
    "cache": "writeback",
    "io_threads": True,
    "network_model": "virtio-net-pci",
    "gpu": False,
    "display_server": "host",
}

DEFAULT_DISK_SIZE = "30G"
DEFAULT_MEMORY_MB = 4096
DEFAULT_CPUS = 4
DEFAULT_SSH_PORT = 2222

DISK_FORMAT = "qcow2"
QCOW2_MAGIC = b"QFI\xfb"
SEED_VOLUME_ID = "cidata"

# qemu-img stderr fragments that mean "this file is not a usable disk image"
# as opposed to permission or I/O trouble.
DISK_FORMAT_ERROR_MARKERS = (
    "not in qcow2 format",
    "image is not in",
    "unknown file format",
    "could not read image",
    "invalid header",
    "unsupported qcow2 version",
    "image is corrupt",
    "cannot probe",
)

DEFAULT_STOP_GRACE = 2.0
DEFAULT_COMPANION_TIMEOUT = 3.0
LAUNCH_SETTLE_SECONDS = 0.5

FIRST_DISPLAY_SLOT = 10
X_LOCK_TEMPLATE = "/tmp/.X{slot}-lock"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

_SENSITIVE_FIELDS = {"password"}

XORG_DUMMY_CONFIG = """\
Section "ServerLayout"
    Identifier "dummy_layout"
    Screen 0 "dummy_screen"
EndSection

Section "Device"
    Identifier "dummy_videocard"
    Driver "dummy"
    VideoRam 256000
EndSection

Section "Screen"
    Identifier "dummy_screen"
    Device "dummy_videocard"
    Monitor "dummy_monitor"
    DefaultDepth 24
    SubSection "Display"
        Depth 24
        Modes "1920x1080"
    EndSubSection
EndSection

Section "Monitor"
    Identifier "dummy_monitor"
    HorizSync 30.0-70.0
    VertRefresh 50.0-75.0
EndSection
"""
