"""
Teardown engine for the device fixture.

Reads the resource registry and removes every recorded resource in fixed
reverse-dependency order (MOUNT -> LVM_LV -> LVM_VG -> LVM_PV -> LUKS ->
LOOPBACK -> IMAGE), polling after each removal until the kernel reports the
resource gone.

Best-effort steps (remount read-only, killing holders, wipefs) log their
failures and carry on. Timeouts and verification failures stop teardown at
the failing resource and leave the registry file in place for a retry.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from .device_utils import (
    DEFAULT_COMMAND_TIMEOUT,
    command_output,
    detach_loop_device,
    dm_exists,
    is_block_device,
    is_luks,
    is_mounted,
    kill_holders,
    loop_devices_for_image,
    mount_source,
    probe_signatures,
    processes_holding,
    run_command,
    sync_disks,
    udev_settle,
    wipe_signatures,
    zero_device_start,
)
from .errors import (
    DeviceNotClean,
    FixtureError,
    ImageCleanupFailed,
    LuksCloseTimeout,
    LuksEraseVerificationFailed,
    PollTimeout,
    UnmountTimeout,
    describe_failure,
)
from .fixture_config import DEFAULT_POLL_INTERVAL, DeviceConfig
from .polling import wait_for, wait_until_gone
from .registry import RegistryEntry, ResourceRegistry, ResourceType

logger = logging.getLogger(__name__)


UNMOUNT_ATTEMPTS = 4
LUKS_CLOSE_ATTEMPTS = 10
REMOVAL_ATTEMPTS = 20
HOLDER_EXIT_ATTEMPTS = 4


@dataclass
class TeardownReport:
    """What a teardown run did."""

    registry_path: str
    removed: List[RegistryEntry] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    forced_terminations: List[str] = field(default_factory=list)
    registry_missing: bool = False

    def note(self, message: str) -> None:
        self.notes.append(message)

    def summary(self) -> str:
        if self.registry_missing:
            return f"No registry at {self.registry_path}; nothing to tear down."

        lines = [f"Teardown complete ({len(self.removed)} resource(s) removed):"]
        for entry in self.removed:
            lines.append(f"  ✓ {entry}")
        if self.notes:
            lines.append("Notes:")
            for note in self.notes:
                lines.append(f"  - {note}")
        return "\n".join(lines)


class TeardownEngine:
    """Consumes a registry and restores the host to its pre-fixture state."""

    def __init__(
        self,
        registry: ResourceRegistry,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.registry = registry
        self.poll_interval = poll_interval
        self.command_timeout = command_timeout
        self._entries: List[RegistryEntry] = []
        self._report = TeardownReport(registry_path=str(registry.path))

        self._handlers: Dict[ResourceType, Callable[[str], None]] = {
            ResourceType.MOUNT: self._teardown_mount,
            ResourceType.LVM_LV: self._teardown_lv,
            ResourceType.LVM_VG: self._teardown_vg,
            ResourceType.LVM_PV: self._teardown_pv,
            ResourceType.LUKS: self._teardown_luks,
            ResourceType.LOOPBACK: self._teardown_loopback,
            ResourceType.IMAGE: self._teardown_image,
        }
        missing = set(ResourceType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No teardown handler for: {sorted(t.value for t in missing)}")

    def run(self) -> TeardownReport:
        """Tear down everything in the registry.

        Returns:
            TeardownReport; ``registry_missing`` is True when there was nothing to do

        Raises:
            FixtureError: A step failed fatally. ``error.resource`` names the
                entry; the registry file is kept.
        """
        if not self.registry.exists():
            logger.debug(f"No registry at {self.registry.path}, nothing to tear down")
            self._report.registry_missing = True
            return self._report

        logger.info("Starting explicit teardown of device fixture...")
        self._entries = self.registry.entries()

        for entry in self.registry.teardown_sequence():
            try:
                self._handlers[entry.type](entry.value)
            except FixtureError as e:
                if e.resource is None:
                    e.resource = entry
                logger.error(f"Teardown stopped: {describe_failure(e)}")
                logger.error(f"Registry kept at {self.registry.path} for retry")
                raise
            self._report.removed.append(entry)

        self.registry.delete()
        logger.info("Teardown complete.")
        return self._report

    # Helpers

    def _run(self, cmd: List[str]):
        return self._run_logged(cmd, None)

    def _run_logged(self, cmd: List[str], failure: Optional[str]):
        """Run a best-effort command; log and note a failure instead of raising."""
        result = run_command(cmd, timeout=self.command_timeout)
        if result.returncode != 0 and failure:
            detail = command_output(result)
            logger.warning(f"{failure}: {detail}" if detail else failure)
            self._report.note(failure)
        return result

    def _values(self, resource_type: ResourceType) -> List[str]:
        return [e.value for e in self._entries if e.type == resource_type]

    def _exists(self, cmd: List[str]) -> bool:
        return run_command(cmd, timeout=self.command_timeout).returncode == 0

    def _wait_gone(self, exists: Callable[[], bool], what: str, error=PollTimeout) -> None:
        wait_until_gone(
            exists,
            what=what,
            interval=self.poll_interval,
            attempts=REMOVAL_ATTEMPTS,
            error=error,
        )

    # Handlers, one per ResourceType

    def _teardown_mount(self, mount_point: str) -> None:
        logger.info(f"Unmounting {mount_point} and wiping filesystem signatures...")

        source = mount_source(mount_point, timeout=self.command_timeout)

        self._run(["mount", "-o", "remount,ro", mount_point])

        holders = processes_holding(mount_point, timeout=self.command_timeout)
        if holders:
            pids = ", ".join(holders)
            logger.warning(f"Killing processes using {mount_point}: {pids}")
            kill_holders(mount_point, timeout=self.command_timeout)
            self._report.forced_terminations.extend(holders)
            self._report.note(f"Terminated processes holding {mount_point}: {pids}")
            try:
                wait_for(
                    lambda: not processes_holding(mount_point, timeout=self.command_timeout),
                    interval=self.poll_interval,
                    attempts=HOLDER_EXIT_ATTEMPTS,
                    message=f"Processes still holding {mount_point}",
                )
            except PollTimeout as e:
                logger.warning(f"{e}; continuing with lazy unmount")
        else:
            logger.info(f"No blocking processes on {mount_point}")

        self._run_logged(["umount", "-l", mount_point], f"Failed to unmount {mount_point}")

        wait_for(
            lambda: not is_mounted(mount_point, timeout=self.command_timeout),
            interval=self.poll_interval,
            attempts=UNMOUNT_ATTEMPTS,
            message=f"Timeout waiting for {mount_point} to unmount",
            error=UnmountTimeout,
        )

        # Only an empty directory is removed; anything else predates the fixture
        if os.path.isdir(mount_point):
            try:
                os.rmdir(mount_point)
            except OSError as e:
                logger.warning(f"Left mount point {mount_point} in place: {e}")
                self._report.note(f"Left non-empty mount point {mount_point} in place")

        for device in self._values(ResourceType.LVM_LV) or ([source] if source else []):
            if not wipe_signatures(device, timeout=self.command_timeout):
                self._report.note(f"Failed to wipe filesystem signatures on {device}")

        udev_settle()
        logger.info(f"Finished unmounting {mount_point} and wiping filesystem signatures")

    def _teardown_lv(self, lv_path: str) -> None:
        logger.info(f"Deactivating and removing logical volume {lv_path}...")
        self._run_logged(["lvchange", "-an", lv_path], f"Failed to deactivate {lv_path}")
        self._run_logged(["lvremove", "-f", lv_path], f"Failed to remove {lv_path}")
        self._wait_gone(lambda: self._exists(["lvs", lv_path]), f"logical volume {lv_path}")

        # LVM removal does not always clear the device-mapper entry right away
        name = os.path.basename(lv_path)
        if dm_exists(name, timeout=self.command_timeout):
            logger.info(f"Removing device-mapper entry {name}...")
            self._run_logged(["dmsetup", "remove", name], f"Failed to remove device-mapper entry {name}")
        self._wait_gone(
            lambda: dm_exists(name, timeout=self.command_timeout), f"device-mapper entry {name}"
        )

        sync_disks()
        udev_settle()
        logger.info(f"Finished deactivating and removing logical volume {lv_path}")

    def _teardown_vg(self, vg_name: str) -> None:
        logger.info(f"Deactivating and removing volume group {vg_name}...")
        self._run_logged(["vgchange", "-an", vg_name], f"Failed to deactivate {vg_name}")
        self._run_logged(["vgremove", "-f", vg_name], f"Failed to remove {vg_name}")
        self._wait_gone(lambda: self._exists(["vgs", vg_name]), f"volume group {vg_name}")
        udev_settle()
        logger.info(f"Finished deactivating and removing volume group {vg_name}")

    def _teardown_pv(self, pv: str) -> None:
        logger.info(f"Wiping and removing physical volume {pv}...")
        self._run_logged(["pvremove", "-ff", "-y", pv], f"Failed to remove {pv}")
        if not wipe_signatures(pv, timeout=self.command_timeout):
            self._report.note(f"Failed to wipe filesystem signatures on {pv}")
        self._wait_gone(lambda: self._exists(["pvs", pv]), f"physical volume {pv}")
        udev_settle()
        logger.info(f"Finished wiping and removing physical volume {pv}")

    def _luks_status(self, name: str):
        """(active, backing_device) for the LUKS mapping ``name``."""
        result = run_command(["cryptsetup", "status", name], timeout=self.command_timeout)
        match = re.search(r"^\s*device:\s*(\S+)", result.stdout or "", re.MULTILINE)
        return result.returncode == 0, match.group(1) if match else None

    def _teardown_luks(self, mapped: str) -> None:
        logger.info(f"Closing LUKS container {mapped}...")
        name = os.path.basename(mapped)
        active, backing = self._luks_status(name)

        if active:

            def _try_close() -> bool:
                result = run_command(["cryptsetup", "close", name], timeout=self.command_timeout)
                if result.returncode != 0:
                    logger.info(f"Waiting for LUKS container {mapped} to close...")
                return result.returncode == 0

            wait_for(
                _try_close,
                interval=self.poll_interval,
                attempts=LUKS_CLOSE_ATTEMPTS,
                message=f"Timeout while closing LUKS container {mapped}",
                error=LuksCloseTimeout,
            )
        else:
            logger.info(f"{mapped} is not active, skipping close")

        backing_devices = [backing] if backing else self._values(ResourceType.LOOPBACK)
        if not backing_devices:
            raise LuksEraseVerificationFailed(
                f"Cannot determine the device backing {mapped}; LUKS header state unknown"
            )

        for device in backing_devices:
            # Destroy the keyslots, then the header signatures themselves
            logger.info(f"Erasing LUKS header from {device}...")
            self._run_logged(
                ["cryptsetup", "erase", "--batch-mode", device],
                f"Failed to erase LUKS keyslots on {device}",
            )
            if not wipe_signatures(device, timeout=self.command_timeout):
                self._report.note(f"Failed to wipe LUKS signatures on {device}")

            if is_luks(device, timeout=self.command_timeout):
                raise LuksEraseVerificationFailed(
                    f"{device} is still a LUKS container after erase"
                )
            logger.info(f"LUKS metadata successfully removed from {device}")

        logger.info(f"Finished closing LUKS container {mapped}")

    def _teardown_loopback(self, device: str) -> None:
        logger.info(f"Resetting loop device {device}...")

        if not is_block_device(device):
            logger.warning(f"{device} is no longer a block device, nothing to reset")
            self._report.note(f"{device} was already gone")
            return

        if not wipe_signatures(device, timeout=self.command_timeout):
            self._report.note(f"Failed to wipe filesystem signatures on {device}")
        if not zero_device_start(device, timeout=self.command_timeout):
            self._report.note(f"Failed to zero out the start of {device}")

        sync_disks()
        udev_settle()

        logger.info(f"Ensuring test device {device} is clean")
        found, blkid_output = probe_signatures(device, timeout=self.command_timeout)
        if found or is_luks(device, timeout=self.command_timeout):
            raise DeviceNotClean(
                f"{device} still contains data or LUKS metadata after reset", blkid_output
            )

        logger.info(f"Loop device {device} reset to initial state")

    def _teardown_image(self, image: str) -> None:
        logger.info(f"Detaching loop devices and removing image file {image}...")

        for device in loop_devices_for_image(image, timeout=self.command_timeout):
            logger.info(f"Detaching loop device {device}...")
            detach_loop_device(device, timeout=self.command_timeout)

        try:
            self._wait_gone(
                lambda: bool(loop_devices_for_image(image, timeout=self.command_timeout)),
                f"loop devices bound to {image}",
            )
        except PollTimeout as e:
            raise ImageCleanupFailed(str(e)) from e

        image_path = Path(image)
        if image_path.exists():
            try:
                image_path.unlink()
            except OSError as e:
                raise ImageCleanupFailed(f"Failed to remove image file {image}", str(e)) from e

        logger.info(f"Removed image file {image}")


def teardown_device(target: Union[DeviceConfig, ResourceRegistry, str, Path]) -> TeardownReport:
    """Tear down a fixture session given its config, registry, or registry path."""
    if isinstance(target, DeviceConfig):
        engine = TeardownEngine(
            target.registry,
            poll_interval=target.poll_interval,
            command_timeout=target.command_timeout,
        )
    elif isinstance(target, ResourceRegistry):
        engine = TeardownEngine(target)
    else:
        engine = TeardownEngine(ResourceRegistry(target))
    return engine.run()
