"""
Shared fixtures: a fake host that stands in for subprocess.run.

FakeHost keeps just enough state (loop devices, LUKS headers and mappings,
PVs/VGs/LVs, device-mapper names, mounts) for the stages and the teardown
engine to run end to end without root or real devices.
"""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import patch

import pytest


class FakeHost:
    def __init__(self, loop_device: str = "/dev/loop7"):
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.overrides: Dict[tuple, list] = {}

        self.next_loop = loop_device
        self.auto_lv_node = True
        self.block_devices = set()
        self.loops: Dict[str, str] = {}
        self.luks = set()
        self.mappings: Dict[str, str] = {}  # label -> backing device
        self.dm_names = set()
        self.pvs = set()
        self.vgs = set()
        self.lvs = set()  # (vg, lv)
        self.mounts: Dict[str, str] = {}
        self.holders: List[str] = []

    # Test helpers

    def respond(self, *prefix, results):
        """Override the response for commands starting with ``prefix``.

        ``results`` are returned in order, the last one repeats. An exception
        instance is raised instead of returned.
        """
        self.overrides[tuple(prefix)] = list(results)

    def fail(self, *prefix, returncode=1, stderr="simulated failure"):
        self.respond(*prefix, results=[(returncode, "", stderr)])

    def commands(self, *prefix) -> List[List[str]]:
        return [c for c in self.calls if c[: len(prefix)] == list(prefix)]

    def ran(self, *prefix) -> bool:
        return bool(self.commands(*prefix))

    def is_block_device(self, path) -> bool:
        return bool(path) and path in self.block_devices

    # subprocess.run replacement

    def __call__(self, cmd, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        self.inputs.append(kwargs.get("input"))

        result = self._override(cmd)
        if result is None:
            result = self._simulate(cmd)

        if isinstance(result, BaseException):
            raise result
        returncode, stdout, stderr = result
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)

    def _override(self, cmd):
        matches = [p for p in self.overrides if cmd[: len(p)] == list(p)]
        if not matches:
            return None
        results = self.overrides[max(matches, key=len)]
        return results.pop(0) if len(results) > 1 else results[0]

    @staticmethod
    def _mapper(vg, lv):
        return f"/dev/mapper/{vg.replace('-', '--')}-{lv.replace('-', '--')}"

    def _find_lv(self, name):
        for vg, lv in self.lvs:
            if name in (f"{vg}/{lv}", self._mapper(vg, lv)):
                return vg, lv
        return None

    def _simulate(self, cmd):
        ok = (0, "", "")
        missing = (1, "", "not found")
        tool, args = cmd[0], cmd[1:]

        if tool == "truncate":
            Path(args[-1]).touch()
            return ok

        if tool == "losetup":
            if args[:2] == ["-f", "--show"]:
                dev = self.next_loop
                self.loops[dev] = args[2]
                self.block_devices.add(dev)
                return (0, dev + "\n", "")
            if args[0] == "-j":
                lines = [f"{d}: []: ({f})" for d, f in self.loops.items() if f == args[1]]
                return (0, "\n".join(lines), "")
            if args[0] == "-d":
                if self.loops.pop(args[1], None) is None:
                    return missing
                self.block_devices.discard(args[1])
                return ok

        if tool == "cryptsetup":
            action = args[0]
            if action == "isLuks":
                return ok if args[1] in self.luks else missing
            if action == "luksFormat":
                self.luks.add(args[-1])
                return ok
            if action == "open":
                device, label = args[-2], args[-1]
                self.mappings[label] = device
                self.dm_names.add(label)
                self.block_devices.add(f"/dev/mapper/{label}")
                return ok
            if action == "status":
                device = self.mappings.get(args[1])
                if device is None:
                    return missing
                return (0, f"/dev/mapper/{args[1]} is active.\n  type:    LUKS2\n  device:  {device}\n", "")
            if action == "close":
                if self.mappings.pop(args[1], None) is None:
                    return missing
                self.dm_names.discard(args[1])
                self.block_devices.discard(f"/dev/mapper/{args[1]}")
                return ok
            if action == "erase":
                return ok

        if tool == "dmsetup":
            name = args[-1]
            if args[0] == "info" and "-c" in args:
                return (0, "253:3\n", "") if name in self.dm_names else missing
            if args[0] == "info":
                return ok if name in self.dm_names else missing
            if args[0] == "remove":
                self.dm_names.discard(name)
                return ok

        if tool == "pvcreate":
            self.pvs.add(args[-1])
            return ok
        if tool == "vgcreate":
            self.vgs.add(args[0])
            return ok
        if tool == "lvcreate":
            vg, lv = args[-1], args[args.index("-n") + 1]
            self.lvs.add((vg, lv))
            self.dm_names.add(self._mapper(vg, lv).rsplit("/", 1)[1])
            if self.auto_lv_node:
                self.block_devices.add(self._mapper(vg, lv))
            return ok
        if tool == "pvs":
            return ok if args[-1] in self.pvs else missing
        if tool == "vgs":
            return ok if args[-1] in self.vgs else missing
        if tool == "lvs":
            return ok if self._find_lv(args[-1]) else missing
        if tool == "lvremove":
            found = self._find_lv(args[-1])
            if found:
                self.lvs.discard(found)
                self.block_devices.discard(self._mapper(*found))
            return ok
        if tool == "vgremove":
            self.vgs.discard(args[-1])
            return ok
        if tool == "pvremove":
            self.pvs.discard(args[-1])
            return ok
        if tool == "mknod":
            self.block_devices.add(args[0])
            return ok

        if tool == "wipefs":
            self.luks.discard(args[-1])
            return ok
        if tool == "dd":
            of = next(a for a in args if a.startswith("of="))[3:]
            self.luks.discard(of)
            return ok
        if tool == "blkid":
            return (0, f'{args[-1]}: TYPE="crypto_LUKS"\n', "") if args[-1] in self.luks else (2, "", "")

        if tool == "mount":
            if args[:2] == ["-o", "remount,ro"]:
                return ok if args[-1] in self.mounts else missing
            if args[0] == "-t":
                self.mounts[args[-1]] = args[-2]
                return ok
        if tool == "umount":
            return ok if self.mounts.pop(args[-1], None) else missing
        if tool == "mountpoint":
            return ok if args[-1] in self.mounts else missing
        if tool == "findmnt":
            source = self.mounts.get(args[-1])
            return (0, source + "\n", "") if source else missing
        if tool == "fuser":
            if not self.holders:
                return missing
            if args[0] == "-km":
                self.holders = []
                return ok
            return (0, " " + " ".join(self.holders), f"{args[-1]}: ")

        return ok


@pytest.fixture
def host():
    """Patch subprocess.run, block-device checks and sleeps with a FakeHost."""
    fake = FakeHost()
    with patch("subprocess.run", side_effect=fake), patch(
        "devfixture_mcp.stages.is_block_device", side_effect=fake.is_block_device
    ), patch(
        "devfixture_mcp.teardown.is_block_device", side_effect=fake.is_block_device
    ), patch("devfixture_mcp.polling.time.sleep"):
        yield fake


@pytest.fixture
def config(tmp_path):
    from devfixture_mcp.fixture_config import DeviceConfig

    return DeviceConfig.create(
        registry_dir=tmp_path / "registry",
        mount_point=str(tmp_path / "mnt" / "target"),
        poll_interval=0.01,
    )
