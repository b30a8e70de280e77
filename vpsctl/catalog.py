"""OS image catalog loading for vpsctl."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vpsctl.constants import DEFAULT_CATALOG_PATH
from vpsctl.exceptions import ManagerError, NotFoundError
from vpsctl.models import OSImage

_REQUIRED_FIELDS = ("family", "variant", "url", "hostname", "username", "password")


def load_catalog(config_path: Optional[Path] = None) -> Dict[str, OSImage]:
    if config_path is None:
        config_path = DEFAULT_CATALOG_PATH
    if not config_path.exists():
        raise ManagerError(f"Image catalog missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ManagerError(f"Image catalog {config_path} contains invalid YAML: {exc}")
    entries = data.get("images", {}) if isinstance(data, dict) else {}
    if not isinstance(entries, dict):
        raise ManagerError(f"Image catalog {config_path}: 'images' must be a mapping")

    images: Dict[str, OSImage] = {}
    for label, info in entries.items():
        if not isinstance(info, dict):
            raise ManagerError(f"Image catalog entry '{label}' is not a mapping")
        missing = [name for name in _REQUIRED_FIELDS if name not in info]
        if missing:
            raise ManagerError(f"Image catalog entry '{label}' missing: {', '.join(missing)}")
        images[str(label)] = OSImage(label=str(label), **{name: str(info[name]) for name in _REQUIRED_FIELDS})
    return images


def find_image(label: str, config_path: Optional[Path] = None) -> OSImage:
    """Look up an image by label, case-insensitively."""
    images = load_catalog(config_path)
    if label in images:
        return images[label]
    for key, image in images.items():
        if key.lower() == label.lower():
            return image
    available = "\n    ".join(sorted(images))
    raise NotFoundError(f"Unknown image '{label}'.\n  Available images:\n    {available}")
