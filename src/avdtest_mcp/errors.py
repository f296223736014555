"""
Error types raised by the AVD boot harness.

Every failure that aborts a test cycle derives from HarnessError so the
driver can tell harness failures apart from programming errors.
"""
from typing import List, Optional, Sequence


class HarnessError(Exception):
    """Base class for all harness failures."""


class ConfigError(HarnessError):
    """Invalid harness configuration."""


class PreflightFailure(HarnessError):
    """The workspace is not ready for an AVD test run."""


class CommandFailure(HarnessError):
    """An external command exited non-zero or could not be run."""

    def __init__(self, message: str, cmd: Optional[Sequence[str]] = None,
                 returncode: Optional[int] = None, output: str = ""):
        self.cmd: List[str] = list(cmd) if cmd else []
        self.returncode = returncode
        self.output = output or ""
        super().__init__(message)

    def __str__(self) -> str:
        text = super().__str__()
        if self.returncode is not None:
            text += f" (exit code {self.returncode})"
        tail = self.output.strip().splitlines()[-5:]
        if tail:
            text += "\n  " + "\n  ".join(tail)
        return text


class ProvisioningFailure(CommandFailure):
    """sdkmanager failed, or a provisioned image is missing its artifacts."""


class ProfileFailure(CommandFailure):
    """avdmanager could not create or delete the device profile."""


class LaunchFailure(HarnessError):
    """The emulator process could not be spawned."""


class SignalTimeout(HarnessError):
    """A boot signal did not become ready before its deadline."""

    def __init__(self, description: str, timeout: float, last_value: str = ""):
        self.description = description
        self.timeout = timeout
        self.last_value = last_value
        super().__init__(
            f"Timed out after {timeout:g}s waiting for {description} "
            f"(last value: {last_value!r})"
        )


class CycleCancelled(HarnessError):
    """A boot signal wait was cancelled."""


class PatchFailure(CommandFailure):
    """The patch command exited non-zero."""


class VerificationFailure(CommandFailure):
    """The patched boot did not report the expected version."""


class InstallOrLaunchFailure(CommandFailure):
    """The app could not be installed or its activity could not be started."""
