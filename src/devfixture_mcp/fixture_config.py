"""
Session configuration for the device fixture.

One DeviceConfig per lifecycle run. It is passed explicitly to every stage
and filled in as stages succeed: a path-valued field stays empty until the
stage producing it has completed.
"""

import logging
import os
import secrets
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .device_utils import DEFAULT_COMMAND_TIMEOUT, dm_name
from .registry import ResourceRegistry

logger = logging.getLogger(__name__)


DEFAULT_LUKS_LABEL = "TEST_LUKS"
DEFAULT_LUKS_PASSPHRASE = "password"
DEFAULT_VG_NAME = "vgtest"
DEFAULT_LV_NAME = "lvtest"
DEFAULT_FS_TYPE = "btrfs"
DEFAULT_MOUNT_POINT = "/mnt/target"
DEFAULT_POLL_INTERVAL = 0.5

REGISTRY_PREFIX = "device_fixture_registry-"
REGISTRY_SUFFIX = ".log"


@dataclass(frozen=True)
class LuksProfile:
    """Fixed cipher/hash/KDF profile used for luksFormat."""

    cipher: str = "aes-xts-plain64"
    key_size: int = 512  # XTS splits the key: 512 bits = AES-256
    hash: str = "sha512"
    pbkdf: str = "pbkdf2"
    iter_time_ms: int = 1000

    def format_args(self):
        return [
            "--type",
            "luks2",
            "--cipher",
            self.cipher,
            "--key-size",
            str(self.key_size),
            "--hash",
            self.hash,
            "--pbkdf",
            self.pbkdf,
            "--iter-time",
            str(self.iter_time_ms),
        ]


@dataclass
class DeviceConfig:
    """Mutable state of one fixture lifecycle run."""

    registry_path: str
    test_device: str = ""
    image_path: str = ""
    luks_label: str = DEFAULT_LUKS_LABEL
    mapped_device_path: str = ""
    volume_group_name: str = DEFAULT_VG_NAME
    logical_volume_name: str = DEFAULT_LV_NAME
    mapped_lvm_path: str = ""
    filesystem_type: str = DEFAULT_FS_TYPE
    mount_point: str = DEFAULT_MOUNT_POINT
    luks_passphrase: str = field(default=DEFAULT_LUKS_PASSPHRASE, repr=False)
    luks_profile: LuksProfile = field(default_factory=LuksProfile)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT

    @property
    def registry(self) -> ResourceRegistry:
        return ResourceRegistry(self.registry_path)

    @property
    def expected_mapped_device_path(self) -> str:
        return f"/dev/mapper/{self.luks_label}"

    @property
    def lv_dm_name(self) -> str:
        return dm_name(self.volume_group_name, self.logical_volume_name)

    @property
    def expected_lvm_path(self) -> str:
        return f"/dev/mapper/{self.lv_dm_name}"

    @property
    def lv_full_name(self) -> str:
        """``vg/lv`` form accepted by the LVM tools."""
        return f"{self.volume_group_name}/{self.logical_volume_name}"

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view without the passphrase."""
        return {
            "registry_path": self.registry_path,
            "test_device": self.test_device,
            "image_path": self.image_path,
            "luks_label": self.luks_label,
            "mapped_device_path": self.mapped_device_path,
            "volume_group_name": self.volume_group_name,
            "logical_volume_name": self.logical_volume_name,
            "mapped_lvm_path": self.mapped_lvm_path,
            "filesystem_type": self.filesystem_type,
            "mount_point": self.mount_point,
        }

    @classmethod
    def create(
        cls,
        registry_dir: Optional[Path] = None,
        unique_names: bool = False,
        **overrides: Any,
    ) -> "DeviceConfig":
        """Create a config together with its (empty) registry file.

        Args:
            registry_dir: Directory for the registry file (default: system temp dir)
            unique_names: Suffix label/VG/LV/mount point with a per-run token so
                parallel runs do not collide
            **overrides: Field values to use instead of the defaults
        """
        if registry_dir is not None:
            Path(registry_dir).mkdir(parents=True, exist_ok=True)
        fd, registry_path = tempfile.mkstemp(
            prefix=REGISTRY_PREFIX,
            suffix=REGISTRY_SUFFIX,
            dir=str(registry_dir) if registry_dir is not None else None,
        )
        os.close(fd)

        config = cls(registry_path=registry_path, **overrides)
        if unique_names:
            config.apply_unique_suffix(secrets.token_hex(3))

        logger.info(f"Device fixture session created (registry: {registry_path})")
        return config

    @classmethod
    def from_env(
        cls,
        registry_dir: Optional[Path] = None,
        unique_names: bool = False,
        **overrides: Any,
    ) -> "DeviceConfig":
        """Like create(), with DEVFIXTURE_* environment overrides applied first."""
        values = _env_overrides()
        env_dir = values.pop("registry_dir", None)
        values.update(overrides)
        return cls.create(
            registry_dir=registry_dir or env_dir, unique_names=unique_names, **values
        )

    def apply_unique_suffix(self, token: str) -> None:
        self.luks_label = f"{self.luks_label}_{token}"
        self.volume_group_name = f"{self.volume_group_name}{token}"
        self.logical_volume_name = f"{self.logical_volume_name}{token}"
        self.mount_point = f"{self.mount_point.rstrip('/')}-{token}"


_ENV_STRINGS = {
    "DEVFIXTURE_LUKS_LABEL": "luks_label",
    "DEVFIXTURE_LUKS_PASSPHRASE": "luks_passphrase",
    "DEVFIXTURE_VG_NAME": "volume_group_name",
    "DEVFIXTURE_LV_NAME": "logical_volume_name",
    "DEVFIXTURE_FS_TYPE": "filesystem_type",
    "DEVFIXTURE_MOUNT_POINT": "mount_point",
    "DEVFIXTURE_REGISTRY_DIR": "registry_dir",
}

_ENV_FLOATS = {
    "DEVFIXTURE_POLL_INTERVAL": ("poll_interval", DEFAULT_POLL_INTERVAL),
    "DEVFIXTURE_COMMAND_TIMEOUT": ("command_timeout", DEFAULT_COMMAND_TIMEOUT),
}


def _env_overrides() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, key in _ENV_STRINGS.items():
        value = os.getenv(var)
        if value:
            values[key] = value

    for var, (key, default) in _ENV_FLOATS.items():
        raw = os.getenv(var)
        if not raw:
            continue
        try:
            parsed = float(raw)
            if parsed <= 0:
                raise ValueError(raw)
            values[key] = parsed
        except (ValueError, TypeError):
            logger.warning(f"Invalid {var} environment variable, using default {default}")
            values[key] = default

    return values
