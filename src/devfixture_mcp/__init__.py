"""
Devfixture MCP - Model Context Protocol server for encrypted test devices.

This package provisions disposable LUKS2 + LVM + filesystem stacks on loop
or spare block devices for integration tests, records every resource it
creates, and tears them down again in reverse dependency order.
"""

__version__ = "0.1.0"
