"""
Resource registry for a device fixture session.

Plain-text file, one ``TYPE VALUE`` line per created resource, appended in
creation order. Teardown reads it back to know what to unwind and deletes it
only after every resource is gone.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Union

logger = logging.getLogger(__name__)


class ResourceType(Enum):
    """Kinds of host resources the fixture creates."""

    LOOPBACK = "LOOPBACK"
    IMAGE = "IMAGE"
    LUKS = "LUKS"
    LVM_PV = "LVM_PV"
    LVM_VG = "LVM_VG"
    LVM_LV = "LVM_LV"
    MOUNT = "MOUNT"


# Reverse of the creation dependency chain:
# mount -> LV -> VG -> PV -> LUKS mapping -> loop device -> backing image
TEARDOWN_ORDER = (
    ResourceType.MOUNT,
    ResourceType.LVM_LV,
    ResourceType.LVM_VG,
    ResourceType.LVM_PV,
    ResourceType.LUKS,
    ResourceType.LOOPBACK,
    ResourceType.IMAGE,
)


@dataclass(frozen=True)
class RegistryEntry:
    """One created resource."""

    type: ResourceType
    value: str

    def to_line(self) -> str:
        return f"{self.type.value} {self.value}"

    @staticmethod
    def from_line(line: str) -> "RegistryEntry":
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            raise ValueError(f"Malformed registry line: {line!r}")
        return RegistryEntry(ResourceType(parts[0]), parts[1].strip())

    def __str__(self) -> str:
        return self.to_line()


class ResourceRegistry:
    """Append-only log of created resources backed by a text file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def create(self) -> None:
        """Create the (empty) registry file at session start."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    def append(self, resource_type: ResourceType, value: str) -> RegistryEntry:
        """Record a created resource; flushed to disk before returning."""
        entry = RegistryEntry(resource_type, str(value))
        with open(self.path, "a") as f:
            f.write(entry.to_line() + "\n")
            f.flush()
            os.fsync(f.fileno())
        logger.debug(f"Registered {entry}")
        return entry

    def entries(self) -> List[RegistryEntry]:
        """All entries in creation order (empty if the file does not exist)."""
        if not self.path.exists():
            return []

        entries = []
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                entries.append(RegistryEntry.from_line(line))
        return entries

    def contains(self, resource_type: ResourceType, value: str) -> bool:
        return RegistryEntry(resource_type, str(value)) in self.entries()

    def values(self, resource_type: ResourceType) -> List[str]:
        return [e.value for e in self.entries() if e.type == resource_type]

    def grouped(self) -> Dict[ResourceType, List[str]]:
        """Entries grouped by type, preserving creation order within a type."""
        groups: Dict[ResourceType, List[str]] = {t: [] for t in ResourceType}
        for entry in self.entries():
            groups[entry.type].append(entry.value)
        return groups

    def teardown_sequence(self) -> List[RegistryEntry]:
        """Entries ordered for teardown: fixed type priority, creation order within a type."""
        groups = self.grouped()
        return [RegistryEntry(t, v) for t in TEARDOWN_ORDER for v in groups[t]]

    def delete(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.debug(f"Removed registry file {self.path}")
