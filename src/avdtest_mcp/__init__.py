"""
avdtest-mcp - boot-test a patched ramdisk on Android emulator images.

This package drives the Android emulator through two boots per platform
version (stock boot to patch, patched boot to verify), and exposes the
harness both as a command-line tool and as an MCP server.
"""

__version__ = "0.1.0"
