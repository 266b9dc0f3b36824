"""
Acquisition stages of the device fixture.

Each stage validates its preconditions, performs one host-state mutation,
records what it created in the registry and fills in the matching
DeviceConfig field. Stages run strictly in order:

    register_existing_device / create_loopback_device
    -> setup_luks -> setup_lvm -> format_filesystem

A failing stage raises; resources registered by earlier stages stay in the
registry so the caller can tear them down.
"""

import logging
import secrets
from pathlib import Path
from typing import List, Optional

from .device_utils import (
    command_output,
    create_loop_device,
    detach_loop_device,
    dm_exists,
    dm_major_minor,
    is_block_device,
    is_luks,
    run_command,
    udev_settle,
    udev_trigger,
)
from .errors import (
    AlreadyEncrypted,
    FixtureError,
    FormatFailed,
    LabelInUse,
    LoopSetupFailed,
    LuksFormatFailed,
    LuksOpenFailed,
    LVExists,
    LvmSetupFailed,
    MountFailed,
    MountpointCreateFailed,
    NoVolume,
    NotABlockDevice,
    PollTimeout,
    VGExists,
)
from .fixture_config import DeviceConfig
from .polling import wait_for
from .registry import ResourceRegistry, ResourceType

logger = logging.getLogger(__name__)

# Attempts when waiting for a freshly created device node to show up
NODE_WAIT_ATTEMPTS = 10

# luksFormat and mkfs can take a while on slow backing storage
SLOW_COMMAND_TIMEOUT = 300.0


def register_existing_device(
    config: DeviceConfig, registry: ResourceRegistry, path: str
) -> None:
    """Use an externally supplied block device as the fixture's test device.

    Raises:
        NotABlockDevice: ``path`` is not a block special file
    """
    if not is_block_device(path):
        raise NotABlockDevice(path)

    config.test_device = path

    if registry.contains(ResourceType.LOOPBACK, path):
        logger.info(f"{path} is already registered, skipping")
        return

    registry.append(ResourceType.LOOPBACK, path)
    logger.info(f"Found and registered loop device: {path}")


def create_loopback_device(
    config: DeviceConfig,
    registry: ResourceRegistry,
    size: str,
    backing_dir: Optional[Path] = None,
) -> str:
    """Allocate a sparse backing file and bind it to a free loop device.

    Returns:
        Loop device path

    Raises:
        InvalidSize: ``size`` could not be parsed
        LoopSetupFailed: No loop device could be attached (backing file removed)
    """
    name = f"devfixture-{secrets.token_hex(3)}"
    loop_dev, backing_file = create_loop_device(
        size, name, backing_dir, timeout=config.command_timeout
    )

    try:
        wait_for(
            lambda: is_block_device(loop_dev),
            interval=config.poll_interval,
            attempts=NODE_WAIT_ATTEMPTS,
            message=f"Loop device {loop_dev} did not appear",
        )
    except PollTimeout as e:
        detach_loop_device(loop_dev, timeout=config.command_timeout)
        if backing_file.exists():
            backing_file.unlink()
        raise LoopSetupFailed(str(e)) from e

    config.image_path = str(backing_file)
    config.test_device = loop_dev

    registry.append(ResourceType.IMAGE, str(backing_file))
    registry.append(ResourceType.LOOPBACK, loop_dev)
    return loop_dev


def setup_luks(config: DeviceConfig, registry: ResourceRegistry) -> str:
    """Format the test device as LUKS2 and open it under ``config.luks_label``.

    The passphrase is piped through stdin (``--key-file -``) so it never shows
    up in the process list. Formatting is never retried: a failure after
    luksFormat succeeded is reported as LuksOpenFailed.

    Returns:
        Mapped device path (/dev/mapper/<label>)
    """
    device = config.test_device
    label = config.luks_label
    mapped = config.expected_mapped_device_path

    if not is_block_device(device):
        raise NotABlockDevice(device)

    if is_luks(device, timeout=config.command_timeout):
        raise AlreadyEncrypted(device)

    if is_block_device(mapped) or dm_exists(label, timeout=config.command_timeout):
        raise LabelInUse(label)

    logger.info(f"Formatting {device} as LUKS2 ({config.luks_profile.cipher})...")
    result = run_command(
        [
            "cryptsetup",
            "luksFormat",
            *config.luks_profile.format_args(),
            "--label",
            label,
            "--batch-mode",
            "--key-file",
            "-",
            device,
        ],
        timeout=max(config.command_timeout, SLOW_COMMAND_TIMEOUT),
        input_text=config.luks_passphrase,
    )
    if result.returncode != 0:
        raise LuksFormatFailed(f"cryptsetup luksFormat failed on {device}", command_output(result))

    result = run_command(
        ["cryptsetup", "open", "--key-file", "-", device, label],
        timeout=config.command_timeout,
        input_text=config.luks_passphrase,
    )
    if result.returncode != 0:
        raise LuksOpenFailed(
            f"{device} was formatted but could not be opened as {label} (not retrying)",
            command_output(result),
        )

    # The mapping exists from here on; record it before waiting for the node
    registry.append(ResourceType.LUKS, mapped)

    udev_settle()
    wait_for(
        lambda: is_block_device(mapped),
        interval=config.poll_interval,
        attempts=NODE_WAIT_ATTEMPTS,
        message=f"Mapped device {mapped} did not appear",
    )

    config.mapped_device_path = mapped
    logger.info(f"✓ LUKS container created and opened at {mapped}")
    return mapped


class LvmTransaction:
    """
    Context manager for LVM setup with rollback on failure.

    Records each PV/VG/LV as it is created; if the block raises, removes
    exactly those (LV, then VG, then PV) before the exception propagates.

    Usage:
        with LvmTransaction(timeout=60) as txn:
            ... pvcreate ...
            txn.record_pv(device)
    """

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout
        self.created_pvs: List[str] = []
        self.created_vgs: List[str] = []
        self.created_lvs: List[str] = []

    def __enter__(self) -> "LvmTransaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            logger.error(f"LVM setup failed: {exc_val}")
            self._rollback()
        return False

    def record_pv(self, pv: str) -> None:
        self.created_pvs.append(pv)

    def record_vg(self, vg: str) -> None:
        self.created_vgs.append(vg)

    def record_lv(self, lv: str) -> None:
        self.created_lvs.append(lv)

    def _rollback(self) -> None:
        logger.info("Rolling back LVM changes...")

        for lv in reversed(self.created_lvs):
            self._best_effort(["lvremove", "-f", lv], f"LV: {lv}")

        for vg in reversed(self.created_vgs):
            self._best_effort(["vgremove", "-f", vg], f"VG: {vg}")

        for pv in reversed(self.created_pvs):
            self._best_effort(["pvremove", "-ff", "-y", pv], f"PV: {pv}")

        logger.info("Rollback complete")

    def _best_effort(self, cmd: List[str], what: str) -> None:
        try:
            result = run_command(cmd, timeout=self.timeout)
        except FixtureError as e:
            logger.error(f"Failed to remove {what}: {e}")
            return
        if result.returncode == 0:
            logger.info(f"Removed {what}")
        else:
            logger.error(f"Failed to remove {what}: {command_output(result)}")


def _lvm_step(step: str, cmd: List[str], message: str, timeout: float) -> None:
    result = run_command(cmd, timeout=timeout)
    if result.returncode != 0:
        raise LvmSetupFailed(step, message, command_output(result))


def setup_lvm(config: DeviceConfig, registry: ResourceRegistry) -> str:
    """Layer PV -> VG -> LV (100% of free space) on the opened LUKS device.

    Returns:
        Logical volume path (/dev/mapper/<vg>-<lv>)

    Raises:
        NotABlockDevice: Mapped LUKS device is missing
        VGExists / LVExists: Names already taken
        LvmSetupFailed: A creation step failed (completed steps rolled back)
    """
    device = config.mapped_device_path
    vg = config.volume_group_name
    lv = config.logical_volume_name
    timeout = config.command_timeout

    if not is_block_device(device):
        raise NotABlockDevice(device)

    if run_command(["vgs", vg], timeout=timeout).returncode == 0:
        raise VGExists(vg)

    if run_command(["lvs", config.lv_full_name], timeout=timeout).returncode == 0:
        raise LVExists(config.lv_full_name)

    lv_path = config.expected_lvm_path

    with LvmTransaction(timeout=timeout) as txn:
        logger.info(f"Creating physical volume on {device}...")
        _lvm_step("pvcreate", ["pvcreate", "-y", device], f"Failed to create PV on {device}", timeout)
        txn.record_pv(device)

        logger.info(f"Creating volume group '{vg}'...")
        _lvm_step("vgcreate", ["vgcreate", vg, device], f"Failed to create VG {vg}", timeout)
        txn.record_vg(vg)

        logger.info(f"Creating logical volume '{lv}'...")
        _lvm_step(
            "lvcreate",
            ["lvcreate", "-y", "-l", "100%FREE", "-n", lv, "--zero", "n", vg],
            f"Failed to create LV {config.lv_full_name}",
            timeout,
        )
        txn.record_lv(config.lv_full_name)

        _lvm_step("vgchange", ["vgchange", "-ay", vg], f"Failed to activate VG {vg}", timeout)
        _lvm_step(
            "lvchange",
            ["lvchange", "-ay", config.lv_full_name],
            f"Failed to activate LV {config.lv_full_name}",
            timeout,
        )

        udev_trigger()
        udev_settle()
        _ensure_lv_node(config, lv_path)

    registry.append(ResourceType.LVM_PV, device)
    registry.append(ResourceType.LVM_VG, vg)
    registry.append(ResourceType.LVM_LV, lv_path)

    config.mapped_lvm_path = lv_path
    logger.info(f"✓ LVM setup complete: {lv_path}")
    return lv_path


def _ensure_lv_node(config: DeviceConfig, lv_path: str) -> None:
    """Make sure the LV device node exists, creating it by hand if udev lost the race."""
    try:
        wait_for(
            lambda: is_block_device(lv_path),
            interval=config.poll_interval,
            attempts=NODE_WAIT_ATTEMPTS,
            message=f"Logical volume node {lv_path} did not appear",
        )
        return
    except PollTimeout as e:
        logger.warning(f"{e}; attempting to create the device node manually")

    numbers = dm_major_minor(config.lv_dm_name, timeout=config.command_timeout)
    if numbers is None:
        raise LvmSetupFailed(
            "mknod", f"Failed to retrieve major/minor numbers for {lv_path}"
        )

    major, minor = numbers
    _lvm_step(
        "mknod",
        ["mknod", lv_path, "b", str(major), str(minor)],
        f"Failed to create device node {lv_path} ({major}:{minor})",
        config.command_timeout,
    )

    if not is_block_device(lv_path):
        raise LvmSetupFailed("mknod", f"{lv_path} is still not a block device after mknod")
    logger.info(f"Created device node {lv_path} ({major}:{minor})")


def _mkfs_force_flags(fs_type: str) -> List[str]:
    if fs_type.startswith("ext"):
        return ["-F"]
    if fs_type in ("xfs", "btrfs"):
        return ["-f"]
    return []


def format_filesystem(config: DeviceConfig, registry: ResourceRegistry) -> str:
    """Format the logical volume and mount it at ``config.mount_point``.

    Returns:
        Mount point path

    Raises:
        NoVolume: No logical volume has been created yet (nothing is run)
        NotABlockDevice: The logical volume path is stale (nothing is run)
        FormatFailed / MountpointCreateFailed / MountFailed
    """
    target = config.mapped_lvm_path
    if not target:
        raise NoVolume()

    if not is_block_device(target):
        raise NotABlockDevice(target)

    fs_type = config.filesystem_type
    mount_point = config.mount_point

    result = run_command(
        [f"mkfs.{fs_type}", *_mkfs_force_flags(fs_type), target],
        timeout=max(config.command_timeout, SLOW_COMMAND_TIMEOUT),
    )
    if result.returncode != 0:
        raise FormatFailed(fs_type, target, command_output(result))
    logger.info(f"✓ {target} formatted as {fs_type}")

    try:
        Path(mount_point).mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise MountpointCreateFailed(mount_point, str(e)) from e

    result = run_command(
        ["mount", "-t", fs_type, target, mount_point], timeout=config.command_timeout
    )
    if result.returncode != 0:
        raise MountFailed(target, mount_point, command_output(result))

    registry.append(ResourceType.MOUNT, mount_point)
    logger.info(f"✓ {target} mounted at {mount_point} as {fs_type}")
    return mount_point
