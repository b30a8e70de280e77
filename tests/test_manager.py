"""Tests for vpsctl.manager module."""

from __future__ import annotations

import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from vpsctl.constants import QCOW2_MAGIC
from vpsctl.exceptions import ConflictError, NotFoundError, ProvisioningError, ValidationError
from vpsctl.manager import VMManager
from vpsctl.provision import ImageProvisioner


def _fake_ensure(profile, allow_shrink=False):
    profile.image_file.write_bytes(QCOW2_MAGIC)
    profile.seed_file.write_bytes(b"seed")


def _wait_for_cmdline(pid, needle, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            if needle in Path(f"/proc/{pid}/cmdline").read_bytes().decode():
                return
        except OSError:
            pass
        time.sleep(0.05)
    raise AssertionError(f"pid {pid} never showed {needle!r} on its command line")


@pytest.fixture
def provisioner():
    mock = MagicMock(spec=ImageProvisioner)
    mock.ensure.side_effect = _fake_ensure
    mock.artifacts.side_effect = ImageProvisioner.artifacts
    return mock


@pytest.fixture
def mgr(settings, capabilities, provisioner):
    return VMManager(settings, capabilities=capabilities, provisioner=provisioner)


@pytest.fixture
def created(mgr):
    return mgr.create("Ubuntu 24.04", name="web", ssh_port=2222)


class TestCreate:
    def test_provisions_then_saves(self, mgr, provisioner):
        profile = mgr.create("Ubuntu 24.04", name="web")
        provisioner.ensure.assert_called_once_with(profile)
        assert mgr.store.load("web") == profile
        assert profile.image_file.exists()

    def test_provisioning_failure_saves_nothing(self, mgr, provisioner):
        provisioner.ensure.side_effect = ProvisioningError("HTTP error 404")
        with pytest.raises(ProvisioningError):
            mgr.create("Ubuntu 24.04", name="web")
        assert not mgr.store.exists("web")

    def test_seed_failure_removes_downloaded_disk(self, mgr, provisioner, settings):
        def _fail_at_seed(profile, allow_shrink=False):
            profile.image_file.write_bytes(QCOW2_MAGIC)
            raise ProvisioningError("genisoimage failed: bad option")

        provisioner.ensure.side_effect = _fail_at_seed
        with pytest.raises(ProvisioningError, match="genisoimage"):
            mgr.create("Ubuntu 24.04", name="web")
        assert not mgr.store.exists("web")
        assert list(settings.vm_dir.iterdir()) == []

    def test_failure_keeps_files_that_were_already_there(self, mgr, provisioner, settings):
        disk = settings.vm_dir / "web.img"
        disk.write_bytes(QCOW2_MAGIC)
        provisioner.ensure.side_effect = ProvisioningError("genisoimage failed")
        with pytest.raises(ProvisioningError):
            mgr.create("Ubuntu 24.04", name="web")
        assert disk.exists()

    def test_duplicate_name(self, mgr, created):
        with pytest.raises(ConflictError, match="already exists"):
            mgr.create("Debian 12", name="web", ssh_port=2300)

    def test_port_collision(self, mgr, created):
        with pytest.raises(ConflictError, match="reserved by VM 'web'"):
            mgr.create("Debian 12", name="db", ssh_port=2222)

    def test_unknown_image(self, mgr):
        with pytest.raises(NotFoundError, match="Unknown image"):
            mgr.create("Windows 95")


class TestEdit:
    def test_seed_field_regenerates_seed(self, mgr, created, provisioner):
        edited = mgr.edit("web", "hostname", "www")
        provisioner.ensure_seed.assert_called_once_with(edited)
        assert mgr.store.load("web").hostname == "www"

    def test_plain_field_keeps_seed(self, mgr, created, provisioner):
        mgr.edit("web", "memory", "8192")
        provisioner.ensure_seed.assert_not_called()
        assert mgr.store.load("web").memory_mb == 8192

    def test_cpus_capped_to_host(self, mgr, created, capabilities):
        assert mgr.edit("web", "cpus", "64").cpus == capabilities.cpu_cores

    def test_disk_grow_resizes(self, mgr, created, provisioner):
        edited = mgr.edit("web", "disk_size", "50G")
        provisioner.resize_boot_disk.assert_called_once_with(edited, allow_shrink=False)

    def test_disk_shrink_needs_confirmation(self, mgr, created, provisioner):
        with pytest.raises(ValidationError):
            mgr.edit("web", "disk_size", "10G")
        provisioner.resize_boot_disk.assert_not_called()
        edited = mgr.edit("web", "disk_size", "10G", confirm_shrink=True)
        provisioner.resize_boot_disk.assert_called_once_with(edited, allow_shrink=True)

    def test_resize_refused_while_running(self, mgr, created, provisioner):
        with patch.object(mgr.supervisor, "is_running", return_value=True):
            with pytest.raises(ConflictError, match="Stop VM"):
                mgr.edit("web", "disk_size", "50G")
        provisioner.resize_boot_disk.assert_not_called()
        assert mgr.store.load("web").disk_size == "30G"

    def test_failed_reseed_keeps_old_record(self, mgr, created, provisioner):
        provisioner.ensure_seed.side_effect = ProvisioningError("genisoimage failed")
        with pytest.raises(ProvisioningError):
            mgr.edit("web", "password", "new-secret")
        assert mgr.store.load("web").password == created.password

    def test_password_not_logged(self, mgr, created, capsys):
        mgr.edit("web", "password", "hunter2")
        assert "hunter2" not in capsys.readouterr().out


class TestDelete:
    def test_removes_everything(self, mgr, created, settings):
        settings.runtime_dir.mkdir(parents=True)
        mgr.supervisor.log_file("web").write_text("console\n")
        mgr.delete("web")
        assert not mgr.store.exists("web")
        assert not created.image_file.exists()
        assert not created.seed_file.exists()
        assert not mgr.supervisor.log_file("web").exists()
        assert list(settings.vm_dir.glob(".*.deleting")) == []

    def test_refuses_running_vm(self, mgr, created):
        with patch("vpsctl.manager.locate_vm", return_value=4242):
            with pytest.raises(ConflictError, match="running"):
                mgr.delete("web")
        assert mgr.store.exists("web")
        assert created.image_file.exists()

    def test_refuses_running_vm_with_unparsable_record(self, mgr, settings):
        (settings.vm_dir / "broken.conf").write_text("garbage\n")
        disk = settings.vm_dir / "broken.img"
        disk.write_bytes(QCOW2_MAGIC)
        fake_vm = subprocess.Popen(
            [sys.executable, "-c", "import time; time.sleep(30)", settings.qemu_binary, "-drive", f"file={disk}"]
        )
        try:
            _wait_for_cmdline(fake_vm.pid, str(disk))
            with pytest.raises(ConflictError, match="running"):
                mgr.delete("broken")
        finally:
            fake_vm.kill()
            fake_vm.wait()
        assert disk.exists()
        assert (settings.vm_dir / "broken.conf").exists()

    def test_skips_capability_detection(self, settings, provisioner, created):
        mgr = VMManager(settings, provisioner=provisioner)
        with patch("vpsctl.manager.probe", side_effect=AssertionError("capabilities detected")):
            mgr.delete("web")
        assert not mgr.store.exists("web")

    def test_stops_leftover_companion(self, mgr, created, settings):
        with patch("vpsctl.manager.stop_companion") as stop_companion:
            mgr.delete("web")
        files, name, grace = stop_companion.call_args[0]
        assert files.runtime_dir == settings.runtime_dir
        assert (name, grace) == ("web", settings.stop_grace)

    def test_failed_rename_rolls_back(self, mgr, created):
        real_rename = Path.rename

        def _rename(self, target):
            if self.name.endswith("-seed.iso"):
                raise PermissionError("read-only")
            return real_rename(self, target)

        with patch.object(Path, "rename", _rename):
            with pytest.raises(ProvisioningError, match="read-only"):
                mgr.delete("web")
        assert mgr.store.exists("web")
        assert created.image_file.exists()
        assert created.seed_file.exists()

    def test_unparsable_record_can_be_deleted(self, mgr, settings):
        (settings.vm_dir / "broken.conf").write_text("garbage\n")
        (settings.vm_dir / "broken.img").write_bytes(b"x")
        mgr.delete("broken")
        assert not (settings.vm_dir / "broken.conf").exists()
        assert not (settings.vm_dir / "broken.img").exists()

    def test_missing_vm(self, mgr):
        with pytest.raises(NotFoundError):
            mgr.delete("ghost")


class TestQueries:
    def test_list(self, mgr, created, settings):
        (settings.vm_dir / "broken.conf").write_text("garbage\n")
        rows = mgr.list_vms()
        assert [row["name"] for row in rows] == ["broken", "web"]
        assert rows[0]["state"] == "invalid"
        assert rows[1] == {"name": "web", "os": "ubuntu noble", "ssh_port": "2222", "state": "stopped"}

    def test_status_stopped(self, mgr, created):
        assert mgr.status("web") == {"name": "web", "state": "stopped", "pid": "-"}

    def test_info(self, mgr, created):
        details = mgr.info("web")
        assert details["state"] == "stopped"
        assert details["command"].startswith("qemu-system-x86_64 ")
        assert "password" not in details

    def test_images(self, mgr):
        assert "Debian 12" in mgr.images()
