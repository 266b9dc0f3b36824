"""
MCP tools for the device fixture.

Provides MCP tool definitions and handlers for provisioning, inspecting and
tearing down LUKS + LVM + filesystem test devices.
"""

import logging
from typing import Any, Dict, List

from mcp.types import Tool, TextContent

from .errors import FixtureError, describe_failure
from .fixture import DeviceFixture
from .registry import ResourceRegistry
from .teardown import teardown_device


logger = logging.getLogger(__name__)


# Tool definitions for MCP server
def get_device_fixture_tools() -> List[Tool]:
    """Get list of device fixture MCP tools."""
    return [
        Tool(
            name="device_fixture_setup",
            description=(
                "Provision an encrypted test device: LUKS2 container -> LVM PV/VG/LV -> "
                "filesystem, mounted and ready. Uses an existing block device or a new "
                "sparse loop device. Returns the registry path needed for teardown."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "device_path": {
                        "type": "string",
                        "description": "Existing block device to use (e.g., '/dev/loop7'). ALL DATA ON IT IS DESTROYED.",
                    },
                    "size": {
                        "type": "string",
                        "description": "Create a new loop device of this size instead (e.g., '1G', '512M')",
                    },
                    "fs_type": {
                        "type": "string",
                        "description": "Filesystem type (default: btrfs)",
                    },
                    "mount_point": {
                        "type": "string",
                        "description": "Where to mount the filesystem (default: /mnt/target)",
                    },
                    "unique_names": {
                        "type": "boolean",
                        "description": "Suffix LUKS label, VG, LV and mount point with a per-run token",
                        "default": True,
                    },
                    "backing_dir": {
                        "type": "string",
                        "description": "Directory for the loop device backing file (default: /var/tmp/devfixture-loop)",
                    },
                    "registry_dir": {
                        "type": "string",
                        "description": "Directory for the registry file (default: system temp dir)",
                    },
                },
            },
        ),
        Tool(
            name="device_fixture_teardown",
            description="Tear down everything recorded in a fixture registry, in reverse dependency order",
            inputSchema={
                "type": "object",
                "properties": {
                    "registry_path": {
                        "type": "string",
                        "description": "Registry file returned by device_fixture_setup",
                    },
                },
                "required": ["registry_path"],
            },
        ),
        Tool(
            name="device_fixture_status",
            description="List the resources recorded in a fixture registry",
            inputSchema={
                "type": "object",
                "properties": {
                    "registry_path": {
                        "type": "string",
                        "description": "Registry file returned by device_fixture_setup",
                    },
                },
                "required": ["registry_path"],
            },
        ),
    ]


async def handle_device_fixture_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """
    Handle device fixture tool calls.

    Args:
        name: Tool name
        arguments: Tool arguments

    Returns:
        List of TextContent responses
    """
    try:
        if name == "device_fixture_setup":
            return await _handle_device_fixture_setup(arguments)
        elif name == "device_fixture_teardown":
            return await _handle_device_fixture_teardown(arguments)
        elif name == "device_fixture_status":
            return await _handle_device_fixture_status(arguments)
        else:
            return [TextContent(type="text", text=f"Unknown device fixture tool: {name}")]
    except FixtureError as e:
        logger.error(f"Error handling device fixture tool '{name}': {e}", exc_info=True)
        text = f"Error: {describe_failure(e)}"
        if e.output:
            text += f"\n\n{e.output.strip()}"
        return [TextContent(type="text", text=text)]
    except Exception as e:
        logger.error(f"Error handling device fixture tool '{name}': {e}", exc_info=True)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


async def _handle_device_fixture_setup(arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle device_fixture_setup tool."""
    device_path = arguments.get("device_path")
    size = arguments.get("size")

    if bool(device_path) == bool(size):
        return [
            TextContent(type="text", text="Error: exactly one of device_path or size is required")
        ]

    overrides = {}
    if arguments.get("fs_type"):
        overrides["filesystem_type"] = arguments["fs_type"]
    if arguments.get("mount_point"):
        overrides["mount_point"] = arguments["mount_point"]

    fixture = DeviceFixture(
        device=device_path,
        size=size,
        backing_dir=arguments.get("backing_dir"),
        registry_dir=arguments.get("registry_dir"),
        unique_names=arguments.get("unique_names", True),
        **overrides,
    )
    fixture.registry.create()

    logger.info(f"Setting up device fixture on {device_path or f'new {size} loop device'}")
    try:
        config = fixture.provision()
    except Exception:
        # Undo whatever the completed stages created, then report the original failure
        try:
            fixture.teardown()
        except FixtureError as teardown_error:
            logger.error(
                f"Cleanup after failed setup did not complete: {describe_failure(teardown_error)}"
            )
            logger.error(f"Registry kept at {fixture.config.registry_path} for manual teardown")
        raise

    response_text = f"""Device Fixture Ready!

Test Device: {config.test_device}
LUKS Mapping: {config.mapped_device_path}
Volume Group: {config.volume_group_name}
Logical Volume: {config.mapped_lvm_path}
Filesystem: {config.filesystem_type}
Mount Point: {config.mount_point}
"""
    if config.image_path:
        response_text += f"Backing Image: {config.image_path}\n"

    response_text += f"\nRegistry: {config.registry_path}"
    response_text += (
        f"\n\nTo tear down:\n  device_fixture_teardown registry_path={config.registry_path}"
    )

    return [TextContent(type="text", text=response_text)]


async def _handle_device_fixture_teardown(arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle device_fixture_teardown tool."""
    registry_path = arguments["registry_path"]

    logger.info(f"Tearing down device fixture from {registry_path}")
    report = teardown_device(registry_path)

    return [TextContent(type="text", text=report.summary())]


async def _handle_device_fixture_status(arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle device_fixture_status tool."""
    registry = ResourceRegistry(arguments["registry_path"])

    if not registry.exists():
        return [
            TextContent(
                type="text",
                text=f"Registry '{registry.path}' not found. Nothing is provisioned (or it was already torn down).",
            )
        ]

    entries = registry.entries()
    response_text = f"Device Fixture Registry: {registry.path}\n\nResources: {len(entries)}\n"
    for entry in entries:
        response_text += f"  - {entry.type.value}: {entry.value}\n"

    if entries:
        response_text += "\nTeardown order:\n"
        for i, entry in enumerate(registry.teardown_sequence(), 1):
            response_text += f"  {i}. {entry}\n"

    return [TextContent(type="text", text=response_text)]
