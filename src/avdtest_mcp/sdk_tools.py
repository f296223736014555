"""
Wrappers for the Android SDK command-line tools the harness drives.

Only the contract of each tool matters here: which arguments it takes and
how success or failure is reported. sdkmanager provisions images, avdmanager
manages the device profile, adb talks to the running emulator, and the
patch command rewrites the ramdisk in place.
"""
import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Type

from .errors import (
    CommandFailure,
    InstallOrLaunchFailure,
    PatchFailure,
    PreflightFailure,
    ProfileFailure,
    ProvisioningFailure,
    VerificationFailure,
)

logger = logging.getLogger(__name__)

AVD_HACK_DISABLED = "ENABLE_AVD_HACK 0"


def _run(
    cmd: Sequence[str],
    error_cls: Type[CommandFailure],
    description: str,
    timeout: Optional[float] = None,
    input: Optional[str] = None,
    cwd: Optional[Path] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command, mapping every failure onto error_cls.

    Args:
        cmd: Command and arguments
        error_cls: CommandFailure subclass raised on failure
        description: What the command does (used in log and error messages)
        timeout: Seconds before the command is abandoned
        input: Text fed to stdin
        cwd: Working directory
        check: Raise on non-zero exit

    Returns:
        CompletedProcess with text stdout (stderr merged in)
    """
    cmd = [str(c) for c in cmd]
    logger.debug(f"Running: {' '.join(cmd)}")
    # Never let a child read our stdin (the MCP stdio stream)
    stdin_kwargs = {"input": input} if input is not None else {"stdin": subprocess.DEVNULL}
    try:
        result = subprocess.run(
            cmd,
            **stdin_kwargs,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            cwd=cwd,
        )
    except FileNotFoundError:
        raise error_cls(f"{description} failed: {cmd[0]} not found", cmd=cmd)
    except subprocess.TimeoutExpired as e:
        output = e.output.decode(errors="replace") if isinstance(e.output, bytes) else e.output
        raise error_cls(f"{description} timed out after {timeout}s", cmd=cmd, output=output or "")

    if check and result.returncode != 0:
        raise error_cls(
            f"{description} failed", cmd=cmd, returncode=result.returncode, output=result.stdout
        )
    return result


def sdk_tool_paths(sdk_root: Path) -> Dict[str, Path]:
    """Locations of the SDK tools under sdk_root."""
    sdk_root = Path(sdk_root)
    cmdline_tools = sdk_root / "cmdline-tools" / "latest" / "bin"
    return {
        "emulator": sdk_root / "emulator" / "emulator",
        "avdmanager": cmdline_tools / "avdmanager",
        "sdkmanager": cmdline_tools / "sdkmanager",
        "adb": sdk_root / "platform-tools" / "adb",
    }


def check_sdk_tools(sdk_root: Path) -> List[Tuple[str, Path, bool]]:
    """Report which SDK tools are installed.

    Returns:
        List of (tool name, expected path, present) tuples
    """
    return [(name, path, path.exists()) for name, path in sdk_tool_paths(sdk_root).items()]


def check_init_header(header: Path) -> bool:
    """Fail if the init sources still have the AVD hack disabled.

    Returns:
        True if the header was checked, False if it does not exist
    """
    header = Path(header)
    if not header.exists():
        logger.warning(f"⚠ {header} not found, skipping AVD hack check")
        return False

    if AVD_HACK_DISABLED in header.read_text(errors="replace"):
        raise PreflightFailure(
            f"Please patch {header}: {AVD_HACK_DISABLED!r} must be enabled for AVD tests"
        )
    return True


class SdkManager:
    """Provisions system images with sdkmanager."""

    def __init__(self, sdk_root: Path, timeout: float = 600):
        self.path = sdk_tool_paths(sdk_root)["sdkmanager"]
        self.timeout = timeout

    def accept_licenses(self) -> None:
        # Equivalent of `yes | sdkmanager --licenses`
        _run(
            [self.path, "--licenses"],
            ProvisioningFailure,
            "Accepting SDK licenses",
            timeout=self.timeout,
            input="y\n" * 100,
        )

    def update(self, channel: int = 3) -> None:
        logger.info(f"Updating SDK packages (channel {channel})...")
        _run(
            [self.path, f"--channel={channel}", "--update"],
            ProvisioningFailure,
            "SDK update",
            timeout=self.timeout,
        )

    def install(self, package: str) -> None:
        """Install a package. Re-installing an installed package is a no-op."""
        logger.info(f"Provisioning {package}...")
        _run([self.path, package], ProvisioningFailure, f"Installing {package}", timeout=self.timeout)
        logger.info(f"✓ Provisioned {package}")


class AvdManager:
    """Creates and deletes the virtual device profile."""

    def __init__(self, sdk_root: Path, timeout: float = 120):
        self.path = sdk_tool_paths(sdk_root)["avdmanager"]
        self.timeout = timeout

    def create(self, name: str, package: str) -> None:
        """Create (or overwrite) profile `name` bound to a system image package."""
        # avdmanager asks whether to create a custom hardware profile
        _run(
            [self.path, "create", "avd", "-f", "-n", name, "-k", package],
            ProfileFailure,
            f"Creating AVD '{name}'",
            timeout=self.timeout,
            input="no\n",
        )
        logger.info(f"✓ Created AVD '{name}' for {package}")

    def delete(self, name: str) -> None:
        _run([self.path, "delete", "avd", "-n", name], ProfileFailure, f"Deleting AVD '{name}'",
             timeout=self.timeout)
        logger.info(f"✓ Deleted AVD '{name}'")


class Adb:
    """Device bridge to the running emulator."""

    def __init__(self, sdk_root: Optional[Path] = None, adb_path: Optional[str] = None,
                 timeout: float = 120):
        if adb_path is None:
            candidate = sdk_tool_paths(sdk_root)["adb"] if sdk_root else None
            adb_path = str(candidate) if candidate and candidate.exists() else "adb"
        self.path = adb_path
        self.timeout = timeout

    def getprop(self, name: str, timeout: float = 10) -> str:
        """Read a system property.

        An unreachable device reads as an empty value, the same as an
        unset property.
        """
        try:
            result = subprocess.run(
                [self.path, "exec-out", "getprop", name],
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=timeout,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug(f"getprop {name} failed: {e}")
            return ""
        if result.returncode != 0:
            return ""
        return result.stdout.strip()

    def dump_properties(self) -> str:
        """Return the output of a bare `getprop`, for diagnostics."""
        result = _run([self.path, "exec-out", "getprop"], CommandFailure, "Reading device properties",
                      timeout=30)
        return result.stdout

    def shell(self, *args: str, error_cls: Type[CommandFailure] = CommandFailure) -> str:
        result = _run([self.path, "shell", *args], error_cls, f"adb shell {' '.join(args)}",
                      timeout=self.timeout)
        return result.stdout.strip()

    def install(self, apk: Path) -> None:
        """Install an APK, replacing any installed copy."""
        apk = Path(apk)
        if not apk.exists():
            raise InstallOrLaunchFailure(f"APK not found: {apk}")
        result = _run([self.path, "install", "-r", apk], InstallOrLaunchFailure,
                      f"Installing {apk.name}", timeout=self.timeout)
        # Older adb versions exit 0 even when the install fails
        if "Failure" in result.stdout:
            raise InstallOrLaunchFailure(f"Installing {apk.name} failed", cmd=result.args,
                                         returncode=result.returncode, output=result.stdout)
        logger.info(f"✓ Installed {apk.name}")

    def start_activity(self, component: str) -> None:
        """Start an activity and wait for the launch to complete."""
        output = self.shell("am", "start", "-W", "-n", component, error_cls=InstallOrLaunchFailure)
        if "Error" in output:
            raise InstallOrLaunchFailure(f"Starting {component} failed", output=output)
        logger.info(f"✓ Launched {component}")

    def verify_version(self, command: Sequence[str], expected: Optional[str] = None) -> str:
        """Run the patched binary's version command on the device.

        Returns:
            The reported version string
        """
        output = self.shell(*command, error_cls=VerificationFailure)
        if not output:
            raise VerificationFailure(f"`{' '.join(command)}` reported no version")
        if expected is not None and expected not in output:
            raise VerificationFailure(
                f"Version mismatch: expected {expected!r}", output=output
            )
        logger.info(f"✓ {' '.join(command)}: {output}")
        return output


class PatchInvoker:
    """Runs the external patch command on a ramdisk image."""

    def __init__(self, command: Sequence[str], cwd: Optional[Path] = None, timeout: float = 600):
        self.command = list(command)
        self.cwd = cwd
        self.timeout = timeout

    def patch(self, ramdisk: Path) -> None:
        logger.info(f"Patching {ramdisk}...")
        _run([*self.command, ramdisk], PatchFailure, f"Patching {ramdisk.name}",
             timeout=self.timeout, cwd=self.cwd)
        logger.info(f"✓ Patched {ramdisk}")
