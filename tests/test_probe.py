"""Tests for vpsctl.probe module."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

from vpsctl import probe as probe_mod
from vpsctl.probe import probe


def _device_help(stdout: str):
    return subprocess.CompletedProcess(["qemu"], 0, stdout, "")


class TestProbe:
    def test_collects_capabilities(self):
        with patch("vpsctl.probe.kvm_available", return_value=True), patch(
            "vpsctl.probe._cpu_flags", return_value=frozenset({"avx2", "sse4_2"})
        ), patch("vpsctl.probe._total_memory_mb", return_value=32000), patch(
            "vpsctl.probe.os.cpu_count", return_value=12
        ), patch("vpsctl.probe.shutil.which", return_value="/usr/bin/found"), patch(
            "vpsctl.probe.subprocess.run", return_value=_device_help('name "virtio-vga-gl", bus PCI')
        ):
            caps = probe()
        assert caps.kvm is True
        assert caps.cpu_cores == 12
        assert "avx2" in caps.cpu_flags
        assert caps.memory_mb == 32000
        assert caps.virgl is True
        assert caps.display_server is True

    def test_missing_binaries(self):
        with patch("vpsctl.probe.kvm_available", return_value=False), patch(
            "vpsctl.probe.shutil.which", return_value=None
        ):
            caps = probe("no-such-qemu", "no-such-xorg")
        assert caps.kvm is False
        assert caps.virgl is False
        assert caps.display_server is False

    def test_no_virgl_device(self):
        with patch("vpsctl.probe.shutil.which", return_value="/usr/bin/qemu"), patch(
            "vpsctl.probe.subprocess.run", return_value=_device_help('name "virtio-vga", bus PCI')
        ):
            assert probe_mod._virgl_available("qemu-system-x86_64") is False

    def test_virgl_probe_failure(self):
        with patch("vpsctl.probe.shutil.which", return_value="/usr/bin/qemu"), patch(
            "vpsctl.probe.subprocess.run", side_effect=subprocess.TimeoutExpired(["qemu"], 10)
        ):
            assert probe_mod._virgl_available("qemu-system-x86_64") is False

    def test_host_facts_from_proc(self):
        # Every Linux host exposes these; values only need to be sane.
        assert probe_mod._total_memory_mb() > 0
        assert isinstance(probe_mod._cpu_flags(), frozenset)

    def test_logs_kvm_warning(self, capsys):
        with patch("vpsctl.probe.kvm_available", return_value=False), patch(
            "vpsctl.probe.shutil.which", return_value=None
        ):
            probe()
        assert "TCG" in capsys.readouterr().out
