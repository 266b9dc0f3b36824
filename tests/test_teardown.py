"""
Unit tests for teardown.py - registry-driven teardown engine.

Each test provisions a full stack on the FakeHost (loop device -> LUKS ->
LVM -> mounted filesystem) and then tears it down.
"""

import random
from pathlib import Path

import pytest

from devfixture_mcp.errors import (
    DeviceNotClean,
    ImageCleanupFailed,
    LuksCloseTimeout,
    LuksEraseVerificationFailed,
    UnmountTimeout,
)
from devfixture_mcp.registry import RegistryEntry, ResourceRegistry, ResourceType
from devfixture_mcp.stages import (
    create_loopback_device,
    format_filesystem,
    setup_luks,
    setup_lvm,
)
from devfixture_mcp.teardown import LUKS_CLOSE_ATTEMPTS, TeardownEngine, teardown_device


@pytest.fixture
def provisioned(host, config, tmp_path):
    registry = config.registry
    create_loopback_device(config, registry, "256M", tmp_path / "backing")
    setup_luks(config, registry)
    setup_lvm(config, registry)
    format_filesystem(config, registry)
    host.calls.clear()
    return config


def first_index(host, *prefix):
    for i, cmd in enumerate(host.calls):
        if cmd[: len(prefix)] == list(prefix):
            return i
    raise AssertionError(f"{' '.join(prefix)} was never run")


def assert_host_clean(host, config):
    assert host.mounts == {}
    assert host.lvs == set()
    assert host.vgs == set()
    assert host.pvs == set()
    assert host.mappings == {}
    assert host.dm_names == set()
    assert host.luks == set()
    assert host.loops == {}
    assert not Path(config.image_path).exists()
    assert not Path(config.mount_point).exists()


class TestTeardown:
    def test_full_teardown(self, host, provisioned):
        config = provisioned

        report = teardown_device(config)

        assert_host_clean(host, config)
        assert not Path(config.registry_path).exists()
        assert len(report.removed) == 7
        assert report.removed[0] == RegistryEntry(ResourceType.MOUNT, config.mount_point)
        assert report.removed[-1] == RegistryEntry(ResourceType.IMAGE, config.image_path)
        assert report.forced_terminations == []

    def test_reverse_dependency_order(self, host, provisioned):
        teardown_device(provisioned)

        order = [
            first_index(host, "umount", "-l"),
            first_index(host, "lvremove"),
            first_index(host, "vgremove"),
            first_index(host, "pvremove"),
            first_index(host, "cryptsetup", "close"),
            first_index(host, "dd"),
            first_index(host, "losetup", "-d"),
        ]
        assert order == sorted(order)

    def test_order_independent_of_registry_line_order(self, host, provisioned):
        path = Path(provisioned.registry_path)
        scrambled = path.read_text().splitlines()
        random.Random(7).shuffle(scrambled)
        scrambled.reverse()
        path.write_text("\n".join(scrambled) + "\n")

        report = teardown_device(provisioned)

        assert [e.type for e in report.removed] == [
            ResourceType.MOUNT,
            ResourceType.LVM_LV,
            ResourceType.LVM_VG,
            ResourceType.LVM_PV,
            ResourceType.LUKS,
            ResourceType.LOOPBACK,
            ResourceType.IMAGE,
        ]
        assert_host_clean(host, provisioned)

    def test_second_teardown_is_a_no_op(self, host, provisioned):
        teardown_device(provisioned)
        host.calls.clear()

        report = teardown_device(provisioned)

        assert report.registry_missing
        assert report.removed == []
        assert host.calls == []

    def test_missing_registry_path(self, host, tmp_path):
        report = teardown_device(tmp_path / "never-created.log")

        assert report.registry_missing
        assert "nothing to tear down" in report.summary()
        assert host.calls == []

    def test_wipes_filesystem_signatures_on_lv(self, host, provisioned):
        teardown_device(provisioned)
        assert host.ran("wipefs", "-a", "/dev/mapper/vgtest-lvtest")

    def test_erases_luks_header_on_backing_device(self, host, provisioned):
        teardown_device(provisioned)
        assert host.ran("cryptsetup", "erase", "--batch-mode", "/dev/loop7")
        assert host.ran("wipefs", "-a", "/dev/loop7")

    def test_non_empty_mount_point_is_left_in_place(self, host, config, tmp_path):
        mount_point = tmp_path / "existing"
        mount_point.mkdir()
        (mount_point / "precious.txt").write_text("keep me")
        config.mount_point = str(mount_point)
        registry = config.registry
        create_loopback_device(config, registry, "256M", tmp_path / "backing")
        setup_luks(config, registry)
        setup_lvm(config, registry)
        format_filesystem(config, registry)

        report = teardown_device(config)

        assert (mount_point / "precious.txt").read_text() == "keep me"
        assert host.mounts == {}
        assert any(str(mount_point) in note for note in report.notes)
        assert not Path(config.registry_path).exists()

    def test_removes_leftover_dm_entry(self, host, provisioned):
        # lvremove succeeded but the device-mapper entry lingered
        host.respond("lvremove", results=[(0, "", "")])
        host.lvs.clear()

        teardown_device(provisioned)

        assert host.ran("dmsetup", "remove", "vgtest-lvtest")
        assert "vgtest-lvtest" not in host.dm_names


class TestForcedTermination:
    def test_holders_are_killed_and_noted(self, host, provisioned):
        host.holders = ["4242", "4343"]

        report = teardown_device(provisioned)

        assert host.ran("fuser", "-km", provisioned.mount_point)
        assert report.forced_terminations == ["4242", "4343"]
        assert any("4242" in note for note in report.notes)
        assert "4242" in report.summary()

    def test_no_holders_no_kill(self, host, provisioned):
        report = teardown_device(provisioned)

        assert not host.ran("fuser", "-km")
        assert report.notes == []


class TestTimingFailures:
    def test_unmount_timeout_keeps_registry(self, host, provisioned):
        host.respond("mountpoint", results=[(0, "", "")])

        with pytest.raises(UnmountTimeout) as exc_info:
            teardown_device(provisioned)

        assert exc_info.value.resource == RegistryEntry(ResourceType.MOUNT, provisioned.mount_point)
        assert Path(provisioned.registry_path).exists()
        assert len(host.commands("mountpoint")) == 4
        # Nothing below the mount was touched
        assert not host.ran("lvremove")

    def test_retry_after_timeout_completes(self, host, provisioned):
        host.respond("mountpoint", results=[(0, "", "")])
        with pytest.raises(UnmountTimeout):
            teardown_device(provisioned)

        host.overrides.clear()
        report = teardown_device(provisioned)

        assert not report.registry_missing
        assert_host_clean(host, provisioned)
        assert not Path(provisioned.registry_path).exists()

    def test_luks_close_retries_until_success(self, host, provisioned):
        busy = (5, "", "Device TEST_LUKS is still in use.")
        host.respond("cryptsetup", "close", results=[busy, busy, (0, "", "")])

        teardown_device(provisioned)

        assert len(host.commands("cryptsetup", "close")) == 3

    def test_luks_close_timeout(self, host, provisioned):
        host.fail("cryptsetup", "close", returncode=5, stderr="Device is still in use.")

        with pytest.raises(LuksCloseTimeout) as exc_info:
            teardown_device(provisioned)

        assert len(host.commands("cryptsetup", "close")) == LUKS_CLOSE_ATTEMPTS
        assert exc_info.value.resource.type == ResourceType.LUKS
        assert Path(provisioned.registry_path).exists()
        assert not host.ran("dd")


class TestVerification:
    def test_luks_header_survives_erase(self, host, provisioned):
        host.respond("cryptsetup", "isLuks", results=[(0, "", "")])

        with pytest.raises(LuksEraseVerificationFailed) as exc_info:
            teardown_device(provisioned)

        assert exc_info.value.resource == RegistryEntry(
            ResourceType.LUKS, "/dev/mapper/TEST_LUKS"
        )
        # Loop device reset never started
        assert not host.ran("dd")
        assert not host.ran("losetup", "-d")
        assert Path(provisioned.registry_path).exists()

    def test_failed_luks_wipe_is_noted(self, host, provisioned):
        host.fail("wipefs", "-a", "/dev/loop7", stderr="wipefs: error: probing initialization failed")
        host.respond("cryptsetup", "isLuks", results=[(1, "", "")])
        host.respond("blkid", results=[(2, "", "")])

        report = teardown_device(provisioned)

        assert "Failed to wipe LUKS signatures on /dev/loop7" in report.notes
        assert host.ran("losetup", "-d", "/dev/loop7")

    def test_device_not_clean(self, host, provisioned):
        host.respond("blkid", results=[(0, '/dev/loop7: PTTYPE="dos"\n', "")])

        with pytest.raises(DeviceNotClean) as exc_info:
            teardown_device(provisioned)

        assert "PTTYPE" in exc_info.value.output
        assert exc_info.value.resource == RegistryEntry(ResourceType.LOOPBACK, "/dev/loop7")
        assert not host.ran("losetup", "-d")
        assert Path(provisioned.image_path).exists()

    def test_image_still_attached(self, host, provisioned):
        image = provisioned.image_path
        host.respond("losetup", "-j", results=[(0, f"/dev/loop7: []: ({image})\n", "")])

        with pytest.raises(ImageCleanupFailed):
            teardown_device(provisioned)

        assert Path(provisioned.registry_path).exists()


class TestRerunSafety:
    def test_inactive_luks_mapping_skips_close(self, host, config, tmp_path):
        """A mapping closed by an earlier, interrupted run is not closed again."""
        host.block_devices.add("/dev/loop7")
        host.luks.add("/dev/loop7")
        registry = config.registry
        registry.append(ResourceType.LOOPBACK, "/dev/loop7")
        registry.append(ResourceType.LUKS, "/dev/mapper/TEST_LUKS")

        teardown_device(config)

        assert not host.ran("cryptsetup", "close")
        assert host.ran("cryptsetup", "erase", "--batch-mode", "/dev/loop7")
        assert "/dev/loop7" not in host.luks

    def test_vanished_loop_device_is_noted(self, host, config):
        config.registry.append(ResourceType.LOOPBACK, "/dev/loop7")

        report = TeardownEngine(config.registry, poll_interval=0.01).run()

        assert not host.ran("dd")
        assert any("/dev/loop7" in note for note in report.notes)

    def test_engine_accepts_registry_object(self, host, tmp_path):
        registry = ResourceRegistry(tmp_path / "reg.log")
        registry.create()

        report = teardown_device(registry)

        assert report.removed == []
        assert not registry.exists()
