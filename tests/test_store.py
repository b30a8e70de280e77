"""Tests for vpsctl.store module."""

from __future__ import annotations

from pathlib import Path

import pytest

from vpsctl.exceptions import NotFoundError, ParseError, ValidationError
from vpsctl.models import PerformanceConfig, PortForward
from vpsctl.store import (
    ProfileStore,
    parse_port_forwards,
    parse_record,
    profile_from_record,
    serialize_profile,
)

# A record as written by the shell tool before performance options existed.
LEGACY_RECORD = """\
VM_NAME="old-vm"
OS_TYPE="debian"
CODENAME="bookworm"
IMG_URL="https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2"
HOSTNAME="old-vm"
USERNAME="debian"
PASSWORD="debian"
DISK_SIZE="30G"
MEMORY="4096"
CPUS="4"
SSH_PORT="2223"
PORT_FORWARDS=""
IMG_FILE="/home/user/vms/old-vm.img"
SEED_FILE="/home/user/vms/old-vm-seed.iso"
CREATED="Mon Jan  1 00:00:00 UTC 2024"
"""


class TestRecordFormat:
    def test_round_trip_preserves_every_field(self, make_profile):
        profile = make_profile(
            password='p"a$s\\w`d',
            port_forwards=[PortForward(8080, 80), PortForward(8443, 443)],
            performance=PerformanceConfig(
                cache="none", io_threads=False, network_model="e1000", gpu=True, display_server="guest"
            ),
        )
        text = serialize_profile(profile)
        assert profile_from_record(parse_record(text)) == profile

    def test_special_characters_are_escaped(self, make_profile):
        text = serialize_profile(make_profile(password='a"b\\c'))
        assert 'PASSWORD="a\\"b\\\\c"' in text

    def test_legacy_record_gets_performance_defaults(self):
        profile = profile_from_record(parse_record(LEGACY_RECORD))
        assert profile.name == "old-vm"
        assert profile.ssh_port == 2223
        assert profile.port_forwards == []
        assert profile.performance == PerformanceConfig(
            cache="writeback", io_threads=True, network_model="virtio-net-pci", gpu=False, display_server="host"
        )

    def test_blank_lines_comments_and_unknown_keys(self):
        text = "# written by hand\n\n" + LEGACY_RECORD + 'SOMETHING_NEW="x"\n'
        assert profile_from_record(parse_record(text)).name == "old-vm"

    def test_malformed_line_raises(self):
        with pytest.raises(ParseError, match="expected KEY"):
            parse_record(LEGACY_RECORD + "not a record line\n")

    def test_missing_identity_key_raises(self):
        text = LEGACY_RECORD.replace('SSH_PORT="2223"\n', "")
        with pytest.raises(ParseError, match="SSH_PORT"):
            profile_from_record(parse_record(text))

    def test_bad_integer_raises(self):
        text = LEGACY_RECORD.replace('MEMORY="4096"', 'MEMORY="lots"')
        with pytest.raises(ParseError, match="MEMORY"):
            profile_from_record(parse_record(text))

    def test_bad_cache_mode_raises(self):
        with pytest.raises(ParseError, match="DISK_CACHE"):
            profile_from_record(parse_record(LEGACY_RECORD + 'DISK_CACHE="unsafe"\n'))

    def test_bad_bool_raises(self):
        with pytest.raises(ParseError, match="IO_THREADS"):
            profile_from_record(parse_record(LEGACY_RECORD + 'IO_THREADS="maybe"\n'))


class TestParsePortForwards:
    def test_pairs(self):
        assert parse_port_forwards("8080:80, 8443:443") == [PortForward(8080, 80), PortForward(8443, 443)]

    def test_empty(self):
        assert parse_port_forwards("") == []

    def test_invalid_pair(self):
        with pytest.raises(ValueError, match="HOST:GUEST"):
            parse_port_forwards("8080")


class TestProfileStore:
    def test_save_and_load(self, store, profile):
        store.save(profile)
        assert store.exists(profile.name)
        assert store.load(profile.name) == profile

    def test_save_leaves_no_temp_files(self, store, profile, vm_dir):
        store.save(profile)
        store.save(profile)
        assert sorted(p.name for p in vm_dir.iterdir()) == [f"{profile.name}.conf"]

    @pytest.mark.parametrize("password", ["pa\nss", "pa\rss", "pa\u2028ss", "pa\x00ss"])
    def test_line_breaking_value_is_never_written(self, store, make_profile, vm_dir, password):
        good = make_profile(password="original")
        store.save(good)
        with pytest.raises(ValidationError, match="PASSWORD"):
            store.save(make_profile(password=password))
        assert store.load(good.name) == good
        assert sorted(p.name for p in vm_dir.iterdir()) == [f"{good.name}.conf"]

    def test_load_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.load("nope")

    def test_load_name_mismatch_raises(self, store, vm_dir):
        (vm_dir / "other.conf").write_text(LEGACY_RECORD)
        with pytest.raises(ParseError, match="does not match"):
            store.load("other")

    def test_list_sorted(self, store, make_profile):
        for name in ("zeta", "alpha", "mid"):
            store.save(make_profile(name, ssh_port=3000 + len(name)))
        assert store.list() == ["alpha", "mid", "zeta"]

    def test_list_missing_dir(self, tmp_path):
        assert ProfileStore(tmp_path / "absent").list() == []

    def test_delete(self, store, profile):
        store.save(profile)
        store.delete(profile.name)
        assert not store.exists(profile.name)
        with pytest.raises(NotFoundError):
            store.delete(profile.name)

    def test_reserved_ports(self, store, make_profile):
        store.save(make_profile("one", ssh_port=2222, port_forwards=[PortForward(8080, 80)]))
        store.save(make_profile("two", ssh_port=2223))
        assert store.reserved_ports() == {2222: "one", 8080: "one", 2223: "two"}
        assert store.reserved_ports(exclude="one") == {2223: "two"}

    def test_reserved_ports_skips_unreadable_records(self, store, make_profile, vm_dir):
        store.save(make_profile("good", ssh_port=2222))
        Path(vm_dir / "bad.conf").write_text("garbage\n")
        assert store.reserved_ports() == {2222: "good"}
