"""VM lifecycle flows for vpsctl."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vpsctl.catalog import find_image, load_catalog
from vpsctl.config import Settings, apply_edit, build_profile, describe_profile
from vpsctl.constants import _SENSITIVE_FIELDS
from vpsctl.exceptions import ConflictError, ParseError, ProvisioningError
from vpsctl.models import Capabilities, OSImage, VMProfile
from vpsctl.probe import probe
from vpsctl.provision import ImageProvisioner
from vpsctl.qemu import build
from vpsctl.store import ProfileStore
from vpsctl.supervisor import LaunchResult, ProcessSupervisor, RuntimeFiles, locate_vm, stop_companion
from vpsctl.utils import log


class VMManager:
    """Create, edit, delete, start and stop VMs kept under ``settings.vm_dir``.

    Host capabilities are probed on first use, once per manager.
    """

    def __init__(
        self,
        settings: Settings,
        capabilities: Optional[Capabilities] = None,
        provisioner: Optional[ImageProvisioner] = None,
    ) -> None:
        self.settings = settings
        self.store = ProfileStore(settings.vm_dir)
        self.provisioner = provisioner or ImageProvisioner()
        self._capabilities = capabilities
        self._supervisor: Optional[ProcessSupervisor] = None

    @property
    def capabilities(self) -> Capabilities:
        if self._capabilities is None:
            self._capabilities = probe(self.settings.qemu_binary, self.settings.xorg_binary)
        return self._capabilities

    @property
    def supervisor(self) -> ProcessSupervisor:
        if self._supervisor is None:
            self._supervisor = ProcessSupervisor(self.settings, self.store, self.capabilities, self.provisioner)
        return self._supervisor

    # -- catalog -----------------------------------------------------------

    def images(self) -> Dict[str, OSImage]:
        return load_catalog(self.settings.catalog_path)

    # -- create / edit / delete --------------------------------------------

    def create(self, image_label: str, **fields) -> VMProfile:
        """Validate, provision and persist a new VM.

        The record is saved only after the boot disk and seed exist. On failure,
        every artifact this call created is removed again.
        """
        image = find_image(image_label, self.settings.catalog_path)
        profile = build_profile(self.store, image, capabilities=self.capabilities, **fields)
        log("INFO", f"Creating VM '{profile.name}' from {image.label}")
        preexisting = {path for path in self.provisioner.artifacts(profile) if path.exists()}
        try:
            self.provisioner.ensure(profile)
            self.store.save(profile)
        except BaseException:
            for path in self.provisioner.artifacts(profile):
                if path not in preexisting:
                    path.unlink(missing_ok=True)
            raise
        log("SUCCESS", f"VM '{profile.name}' created")
        log("INFO", f"SSH: ssh -p {profile.ssh_port} {profile.username}@localhost")
        return profile

    def edit(self, name: str, field: str, value: str, confirm_shrink: bool = False) -> VMProfile:
        profile = self.store.load(name)
        edited, seed_changed = apply_edit(
            self.store, profile, field, value, confirm_shrink=confirm_shrink, capabilities=self.capabilities
        )
        running = self.supervisor.is_running(name)
        if field == "disk_size" and running:
            raise ConflictError(f"Stop VM '{name}' before resizing its disk")

        if field == "disk_size":
            self.provisioner.resize_boot_disk(edited, allow_shrink=confirm_shrink)
        if seed_changed:
            self.provisioner.ensure_seed(edited)
        self.store.save(edited)

        shown = "********" if field in _SENSITIVE_FIELDS else value
        log("SUCCESS", f"Updated {field} of VM '{name}' to {shown}")
        if running:
            log("INFO", f"VM '{name}' is running; the change takes effect on its next start")
        return edited

    def delete(self, name: str) -> None:
        """Remove a stopped VM's record, boot disk, seed and runtime files.

        Every file is first renamed aside; if any rename fails the earlier
        ones are restored, so the VM is either fully present or fully gone.
        """
        try:
            profile: Optional[VMProfile] = self.store.load(name)
        except ParseError as exc:
            log("WARN", f"{exc}; deleting the record and default artifact paths")
            profile = None

        files = RuntimeFiles(self.settings.runtime_dir)
        disk = profile.image_file if profile is not None else self.settings.vm_dir / f"{name}.img"
        if locate_vm(files, self.settings.qemu_binary, name, disk) is not None:
            raise ConflictError(f"VM '{name}' is running; stop it before deleting")
        stop_companion(files, name, self.settings.stop_grace)

        paths = [self.store.path_for(name)] + self._artifacts(name, profile)
        moved: List[Tuple[Path, Path]] = []
        try:
            for path in paths:
                if not path.exists():
                    continue
                aside = path.with_name(f".{path.name}.deleting")
                path.rename(aside)
                moved.append((path, aside))
        except OSError as exc:
            for original, aside in reversed(moved):
                aside.rename(original)
            raise ProvisioningError(f"Failed to delete VM '{name}': {exc}") from exc

        for _, aside in moved:
            aside.unlink(missing_ok=True)
        log("SUCCESS", f"VM '{name}' deleted")

    def _artifacts(self, name: str, profile: Optional[VMProfile]) -> List[Path]:
        if profile is None:
            vm_dir = self.settings.vm_dir
            disk_paths = [vm_dir / f"{name}.img", vm_dir / f"{name}-seed.iso", vm_dir / f"{name}-seed.iso.sha256"]
        else:
            disk_paths = self.provisioner.artifacts(profile)
        return disk_paths + RuntimeFiles(self.settings.runtime_dir).all_for(name)

    # -- runtime -----------------------------------------------------------

    def start(self, name: str, attach: bool = False) -> LaunchResult:
        return self.supervisor.start(name, attach=attach)

    def stop(self, name: str) -> bool:
        return self.supervisor.stop(name)

    def status(self, name: str) -> Dict[str, str]:
        if not self.supervisor.is_running(name):
            return {"name": name, "state": "stopped", "pid": "-"}
        pid = self.supervisor.pid_file(name).read_text().strip()
        return {"name": name, "state": "running", "pid": pid}

    def info(self, name: str) -> Dict[str, str]:
        profile = self.store.load(name)
        details = describe_profile(profile)
        details["state"] = self.status(name)["state"]
        details["command"] = build(profile, self.capabilities, binary=self.settings.qemu_binary).command_line()
        return details

    def list_vms(self) -> List[Dict[str, str]]:
        rows: List[Dict[str, str]] = []
        for name in self.store.list():
            try:
                profile = self.store.load(name)
            except ParseError as exc:
                log("WARN", str(exc))
                rows.append({"name": name, "os": "?", "ssh_port": "?", "state": "invalid"})
                continue
            state = "running" if self.supervisor.find_pid(profile) is not None else "stopped"
            rows.append(
                {
                    "name": name,
                    "os": f"{profile.os_type} {profile.codename}",
                    "ssh_port": str(profile.ssh_port),
                    "state": state,
                }
            )
        return rows
