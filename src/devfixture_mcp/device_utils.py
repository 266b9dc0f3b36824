"""
Shared host utilities for the device fixture.

Every host tool invocation goes through run_command() so timeouts, missing
binaries and diagnostic output are handled the same way everywhere. The
helpers below are thin probes and actions used by the stages and by the
teardown engine.
"""

import logging
import os
import re
import stat
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .errors import CommandNotFound, CommandTimeout, InvalidSize, LoopSetupFailed

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 60.0
DEFAULT_BACKING_DIR = Path("/var/tmp/devfixture-loop")

# How much of the device start is zeroed when resetting a loop device
ZERO_MEGABYTES = 10


def run_command(
    cmd: Sequence[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    input_text: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a host command with captured text output and a hard timeout.

    ``input_text`` is fed through stdin and never logged; it is how secrets
    reach cryptsetup without appearing on the command line.

    Raises:
        CommandTimeout: Command did not finish within ``timeout`` seconds
        CommandNotFound: Executable is not installed
    """
    cmd = [str(c) for c in cmd]
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
        )
    except subprocess.TimeoutExpired as e:
        raise CommandTimeout(cmd, timeout, _to_text(e.stderr)) from e
    except FileNotFoundError as e:
        raise CommandNotFound(f"Required tool not found: {cmd[0]}", str(e)) from e


def _to_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return str(data)


def command_output(result: subprocess.CompletedProcess) -> str:
    """Combined stderr/stdout of a finished command, for error messages."""
    parts = [_to_text(result.stderr).strip(), _to_text(result.stdout).strip()]
    return "\n".join(p for p in parts if p)


def parse_size(size: str) -> int:
    """Parse a size string like "10G", "512M" or "1024K" into bytes.

    A bare number is taken as megabytes.
    """
    match = re.match(r"^(\d+)(G|M|K)?$", str(size).strip(), re.IGNORECASE)
    if not match:
        raise InvalidSize(size)

    size_num = int(match.group(1))
    if size_num == 0:
        raise InvalidSize(size)

    size_unit = (match.group(2) or "M").upper()
    multiplier = {"K": 1024, "M": 1024**2, "G": 1024**3}[size_unit]
    return size_num * multiplier


def is_block_device(path: Optional[str]) -> bool:
    """True if ``path`` exists and is a block special file."""
    if not path:
        return False
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def udev_settle(timeout: int = 10) -> None:
    """Wait for pending udev events. Failures are not fatal."""
    try:
        run_command(["udevadm", "settle", f"--timeout={timeout}"], timeout=timeout + 5)
    except CommandNotFound:
        logger.debug("udevadm not found, proceeding without settle")
    except CommandTimeout:
        logger.debug("udevadm settle timed out, proceeding anyway")


def udev_trigger() -> None:
    try:
        run_command(["udevadm", "trigger"], timeout=30)
    except (CommandNotFound, CommandTimeout) as e:
        logger.debug(f"udevadm trigger failed: {e}")


def sync_disks() -> None:
    try:
        run_command(["sync"], timeout=60)
    except CommandTimeout:
        logger.warning("sync timed out")


# Probes


def is_luks(device: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    """True if cryptsetup recognises a LUKS header on ``device``."""
    result = run_command(["cryptsetup", "isLuks", device], timeout=timeout)
    return result.returncode == 0


def probe_signatures(device: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> Tuple[bool, str]:
    """Low-level blkid probe (bypasses the cache).

    Returns:
        (found, blkid_output); blkid exits 2 when nothing is found
    """
    result = run_command(["blkid", "-p", device], timeout=timeout)
    found = result.returncode == 0 and bool(_to_text(result.stdout).strip())
    return found, _to_text(result.stdout).strip()


def dm_name(vg_name: str, lv_name: str) -> str:
    """Device-mapper name for an LV; dashes inside names are doubled."""
    return f"{vg_name.replace('-', '--')}-{lv_name.replace('-', '--')}"


def dm_exists(name: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    result = run_command(["dmsetup", "info", name], timeout=timeout)
    return result.returncode == 0


def dm_major_minor(name: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> Optional[Tuple[int, int]]:
    """Major/minor numbers the device-mapper assigned to ``name``."""
    result = run_command(
        ["dmsetup", "info", "-c", "--noheadings", "-o", "major,minor", name], timeout=timeout
    )
    if result.returncode != 0:
        return None

    match = re.search(r"(\d+)\s*[:,]\s*(\d+)", _to_text(result.stdout))
    if not match:
        logger.warning(f"Could not parse dmsetup output for {name}: {result.stdout!r}")
        return None
    return int(match.group(1)), int(match.group(2))


def is_mounted(path: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    result = run_command(["mountpoint", "-q", str(path)], timeout=timeout)
    return result.returncode == 0


def mount_source(path: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> Optional[str]:
    """Source device backing the mount at ``path``, if mounted."""
    result = run_command(["findmnt", "-n", "-o", "SOURCE", str(path)], timeout=timeout)
    if result.returncode != 0:
        return None
    source = _to_text(result.stdout).strip().splitlines()
    return source[0].strip() if source else None


def processes_holding(path: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> List[str]:
    """PIDs of processes using the filesystem mounted at ``path``.

    fuser prints PIDs on stdout and access flags/names on stderr.
    """
    try:
        result = run_command(["fuser", "-m", str(path)], timeout=timeout)
    except CommandNotFound:
        logger.warning("fuser not found, cannot check for processes holding the mount")
        return []
    if result.returncode != 0:
        return []
    return re.findall(r"\d+", _to_text(result.stdout))


def kill_holders(path: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> subprocess.CompletedProcess:
    return run_command(["fuser", "-km", str(path)], timeout=timeout)


# Actions


def wipe_signatures(device: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    """wipefs -a; returns False (and logs) on failure."""
    result = run_command(["wipefs", "-a", device], timeout=timeout)
    if result.returncode != 0:
        logger.warning(f"Failed to wipe filesystem signatures on {device}: {command_output(result)}")
        return False
    return True


def zero_device_start(
    device: str, megabytes: int = ZERO_MEGABYTES, timeout: float = DEFAULT_COMMAND_TIMEOUT
) -> bool:
    """Overwrite the first ``megabytes`` MiB of ``device`` with zeros."""
    result = run_command(
        [
            "dd",
            "if=/dev/zero",
            f"of={device}",
            "bs=1M",
            f"count={megabytes}",
            "conv=fsync",
            "status=none",
        ],
        timeout=timeout,
    )
    if result.returncode != 0:
        logger.warning(f"Failed to zero out {device}: {command_output(result)}")
        return False
    return True


def create_loop_device(
    size: str,
    name: str,
    backing_dir: Optional[Path] = None,
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
) -> Tuple[str, Path]:
    """Create a loop device with sparse file backing.

    Args:
        size: Device size (e.g., "10G", "512M", "1024K")
        name: Name for backing file (e.g., "devfixture-1a2b3c")
        backing_dir: Directory for backing file (default: /var/tmp/devfixture-loop)

    Returns:
        (device_path, backing_file_path)

    Raises:
        InvalidSize: Size string could not be parsed
        LoopSetupFailed: Backing file or loop device could not be set up. The
            backing file is removed before raising.
    """
    size_bytes = parse_size(size)

    work_dir = Path(backing_dir or DEFAULT_BACKING_DIR)
    try:
        work_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise LoopSetupFailed(f"Cannot create backing directory {work_dir}", str(e)) from e

    backing_file = work_dir / f"{name}.img"

    try:
        result = run_command(["truncate", "-s", str(size_bytes), str(backing_file)], timeout=timeout)
        if result.returncode != 0:
            raise LoopSetupFailed(
                f"Failed to allocate backing file {backing_file}", command_output(result)
            )

        result = run_command(["losetup", "-f", "--show", str(backing_file)], timeout=timeout)
        loop_dev = _to_text(result.stdout).strip()
        if result.returncode != 0 or not loop_dev:
            raise LoopSetupFailed(
                f"Failed to attach a loop device to {backing_file}", command_output(result)
            )
    except Exception:
        # No orphaned backing files
        _remove_file(backing_file)
        raise

    logger.info(f"✓ Created loop device {loop_dev} backed by {backing_file} ({size})")
    return loop_dev, backing_file


def _remove_file(path: Path) -> None:
    try:
        if path.exists():
            path.unlink()
    except OSError as e:
        logger.error(f"Failed to remove backing file {path}: {e}")


def loop_devices_for_image(image: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> List[str]:
    """Loop devices currently bound to ``image`` (``losetup -j``)."""
    result = run_command(["losetup", "-j", str(image)], timeout=timeout)
    if result.returncode != 0:
        return []
    devices = []
    for line in _to_text(result.stdout).splitlines():
        if ":" in line:
            devices.append(line.split(":", 1)[0].strip())
    return devices


def detach_loop_device(device: str, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    result = run_command(["losetup", "-d", device], timeout=timeout)
    if result.returncode != 0:
        logger.warning(f"Failed to detach loop device {device}: {command_output(result)}")
        return False
    return True
