"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from vpsctl.config import Settings
from vpsctl.models import Capabilities, PerformanceConfig, PortForward, VMProfile
from vpsctl.store import ProfileStore


@pytest.fixture(autouse=True)
def _no_host_port_probe(monkeypatch):
    """Keep conflict checks independent of whatever is listening on the test host."""
    monkeypatch.setattr("vpsctl.config.port_in_use", lambda port: False)


@pytest.fixture
def vm_dir(tmp_path) -> Path:
    path = tmp_path / "vms"
    path.mkdir()
    return path


@pytest.fixture
def settings(vm_dir) -> Settings:
    return Settings(vm_dir=vm_dir, stop_grace=1.0, companion_timeout=1.0)


@pytest.fixture
def store(vm_dir) -> ProfileStore:
    return ProfileStore(vm_dir)


@pytest.fixture
def capabilities() -> Capabilities:
    return Capabilities(
        kvm=True,
        cpu_cores=8,
        cpu_flags=frozenset({"sse4_2", "avx", "avx2"}),
        memory_mb=16384,
        virgl=False,
        display_server=False,
    )


@pytest.fixture
def make_profile(vm_dir):
    """Factory for profiles stored under the test VM directory."""

    def _make(name: str = "test-vm", **overrides) -> VMProfile:
        perf = overrides.pop("performance", None) or PerformanceConfig()
        values = dict(
            name=name,
            os_type="ubuntu",
            codename="noble",
            image_url="https://example.com/noble.img",
            hostname=name,
            username="ubuntu",
            password="secret",
            disk_size="20G",
            memory_mb=2048,
            cpus=2,
            ssh_port=2222,
            port_forwards=[],
            image_file=vm_dir / f"{name}.img",
            seed_file=vm_dir / f"{name}-seed.iso",
            created="2026-01-01T00:00:00Z",
            performance=perf,
        )
        values.update(overrides)
        return VMProfile(**values)

    return _make


@pytest.fixture
def profile(make_profile) -> VMProfile:
    return make_profile(port_forwards=[PortForward(8080, 80)])


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set
