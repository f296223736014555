"""
MCP server for boot-testing patched ramdisks on Android emulators.
"""
import asyncio
import atexit
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List

from mcp.server import Server
from mcp.types import Tool, TextContent

from .artifacts import ArtifactStore
from .config import (
    DEFAULT_PLATFORM_VERSIONS,
    IMAGE_TYPES,
    SUPPORTED_PLATFORM_VERSIONS,
    HarnessConfig,
    parse_platform_versions,
)
from .driver import OuterDriver, format_run_result
from .emulator import (
    EMULATOR_PID_TRACKING_FILE,
    cleanup_dead_tracked_emulators,
    get_tracked_emulators,
    kill_tracked_emulators,
)
from .environment import resolve_environment
from .sdk_tools import check_sdk_tools

# Configure logging - log to both file and stderr
# File logging allows tailing progress: tail -f /tmp/avdtest-mcp.log
log_file = Path("/tmp/avdtest-mcp.log")
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(log_file, mode="a"),  # Append mode
        logging.StreamHandler(),  # stderr - may show in MCP client
    ],
)
logger = logging.getLogger(__name__)

app = Server("avdtest-mcp")

# One run at a time: runs share the device profile and the system images
_run_lock = asyncio.Lock()


def _cleanup_on_exit():
    """Remove the emulator tracking file when the server exits."""
    try:
        if EMULATOR_PID_TRACKING_FILE.exists():
            EMULATOR_PID_TRACKING_FILE.unlink()
    except OSError:
        pass


atexit.register(_cleanup_on_exit)


_VERSIONS_SCHEMA = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Platform versions, e.g. [\"28\", \"33:T\", \"UpsideDownCake\"]. "
                   "Defaults to the configured list.",
}


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available MCP tools."""
    return [
        Tool(
            name="run_avd_test",
            description="""Boot-test a patched ramdisk on one or more Android emulator images.

For each platform version this will:
  • Install the system image and recreate the 'test' AVD
  • Boot the stock image and run the patch command on its ramdisk
  • Reboot with the patched ramdisk and check the patched version
  • Wait for full boot, install the APK and launch its main activity
  • Restore the original ramdisk and advancedFeatures.ini

On failure every configured image is restored and the AVD is deleted.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "platform_versions": _VERSIONS_SCHEMA,
                    "image_type": {
                        "type": "string",
                        "enum": list(IMAGE_TYPES),
                        "default": "google_apis",
                    },
                    "sdk_root": {"type": "string", "description": "Android SDK root"},
                    "workdir": {
                        "type": "string",
                        "description": "Directory the patch command and APK path are relative to",
                    },
                    "apk_path": {"type": "string", "description": "APK to install"},
                    "bootanim_timeout": {"type": "number", "default": 180},
                    "boot_timeout": {"type": "number", "default": 360},
                    "update_sdk": {"type": "boolean", "default": True},
                },
            },
        ),
        Tool(
            name="restore_system_images",
            description="Restore ramdisk.img and advancedFeatures.ini from their .bak copies",
            inputSchema={
                "type": "object",
                "properties": {
                    "platform_versions": _VERSIONS_SCHEMA,
                    "image_type": {"type": "string", "enum": list(IMAGE_TYPES)},
                    "sdk_root": {"type": "string"},
                },
            },
        ),
        Tool(
            name="list_platform_versions",
            description="List the default and supported platform versions",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="check_android_sdk",
            description="Check that emulator, avdmanager, sdkmanager and adb are installed",
            inputSchema={
                "type": "object",
                "properties": {"sdk_root": {"type": "string"}},
            },
        ),
        Tool(
            name="kill_hanging_emulators",
            description="""Kill emulator processes launched by THIS avdtest-mcp session.

Only tracked emulators are signalled (whole process group); emulators
started elsewhere are left alone.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "force": {
                        "type": "boolean",
                        "description": "Use SIGKILL instead of SIGTERM",
                        "default": False,
                    }
                },
            },
        ),
    ]


def _config_from_arguments(arguments: Dict[str, Any]) -> HarnessConfig:
    return HarnessConfig().with_overrides(
        platform_versions=arguments.get("platform_versions"),
        image_type=arguments.get("image_type"),
        sdk_root=arguments.get("sdk_root"),
        workdir=arguments.get("workdir"),
        apk_path=arguments.get("apk_path"),
        bootanim_timeout=arguments.get("bootanim_timeout"),
        boot_timeout=arguments.get("boot_timeout"),
        update_sdk=arguments.get("update_sdk"),
    ).validate()


def _restore_images(config: HarnessConfig) -> List[str]:
    store = ArtifactStore()
    lines = []
    for version in config.platform_versions:
        context = resolve_environment(version, config.variant, config.sdk_root)
        restored = store.restore(context)
        if restored:
            lines.append(f"✓ {version}: restored {', '.join(p.name for p in restored)}")
        else:
            lines.append(f"• {version}: no backups found in {context.image_dir}")
    return lines


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    logger.info("=" * 80)
    logger.info(f"TOOL CALL: {name}")
    logger.info(f"Arguments: {arguments}")
    logger.info("=" * 80)
    arguments = arguments or {}

    try:
        if name == "run_avd_test":
            config = _config_from_arguments(arguments)
            if _run_lock.locked():
                logger.info("Another AVD test is running, waiting for it to finish...")
            async with _run_lock:
                result = await asyncio.to_thread(OuterDriver(config).run)
            return [TextContent(type="text", text=format_run_result(result))]

        elif name == "restore_system_images":
            config = _config_from_arguments(arguments)
            async with _run_lock:
                lines = _restore_images(config)
            return [TextContent(type="text", text="\n".join(lines))]

        elif name == "list_platform_versions":
            data = {
                "default": [asdict(v) for v in DEFAULT_PLATFORM_VERSIONS],
                "supported": [asdict(v) for v in SUPPORTED_PLATFORM_VERSIONS],
            }
            return [TextContent(type="text", text=json.dumps(data, indent=2))]

        elif name == "check_android_sdk":
            config = HarnessConfig().with_overrides(sdk_root=arguments.get("sdk_root"))
            output_lines = [f"Android SDK: {config.sdk_root}", ""]
            tools = check_sdk_tools(config.sdk_root)
            for tool_name, path, present in tools:
                mark = "✓" if present else "✗"
                output_lines.append(f"{mark} {tool_name}: {path}")
            output_lines.append("")
            if all(present for _, _, present in tools):
                output_lines.append("✓ All SDK tools available")
            else:
                output_lines.append("✗ Missing SDK tools - install them with sdkmanager")
            return [TextContent(type="text", text="\n".join(output_lines))]

        elif name == "kill_hanging_emulators":
            force = arguments.get("force", False)
            cleanup_dead_tracked_emulators()
            tracked = get_tracked_emulators()
            if not tracked:
                return [TextContent(type="text", text="✓ No tracked emulator processes found")]

            output_lines = [f"Found {len(tracked)} tracked emulator process(es):"]
            for pid, info in tracked.items():
                output_lines.append(f"  • PID {pid}: {info.get('description', 'Unknown')}")
            killed = kill_tracked_emulators(force=force)
            output_lines.append("")
            output_lines.append(f"Signalled {len(killed)} process(es) with "
                                f"{'SIGKILL' if force else 'SIGTERM'}")
            return [TextContent(type="text", text="\n".join(output_lines))]

        else:
            raise ValueError(f"Unknown tool: {name}")

    except Exception as e:
        logger.error(f"Error in tool {name}: {e}", exc_info=True)
        return [TextContent(type="text", text=f"Error: {str(e)}")]


def main():
    """Main entry point for the MCP server."""
    import mcp.server.stdio

    async def run():
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )

    asyncio.run(run())


if __name__ == "__main__":
    main()
