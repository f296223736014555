"""
Run the boot cycle over every configured platform version.

OuterDriver owns the collaborators and runs versions strictly one after
another. RunGuard wraps the whole run: if anything escapes, it stops the
emulator, rolls back the system images of every configured version and
deletes the shared device profile.
"""
import logging
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .artifacts import ArtifactStore
from .boot_cycle import BootCycle, CycleResult
from .config import HarnessConfig
from .emulator import EmulatorController
from .environment import resolve_environment
from .errors import HarnessError
from .sdk_tools import Adb, AvdManager, PatchInvoker, SdkManager, check_init_header

logger = logging.getLogger(__name__)

BANNER_INFO = "\033[44;30m"
BANNER_ERROR = "\033[41;30m"
BANNER_RESET = "\033[0m"


def banner(message: str, color: str = BANNER_INFO, level: int = logging.INFO) -> None:
    """Log a highlighted one-line banner."""
    if sys.stderr.isatty():
        message = f"{color}{message}{BANNER_RESET}"
    logger.log(level, "")
    logger.log(level, message)
    logger.log(level, "")


@dataclass
class RunResult:
    """Outcome of a whole harness run."""

    cycles: List[CycleResult] = field(default_factory=list)
    duration: float = 0.0
    error: Optional[HarnessError] = None
    cleanup_errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None and all(c.success for c in self.cycles)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def summary(self) -> str:
        passed = sum(1 for c in self.cycles if c.success)
        if self.success:
            return f"✓ All {passed} platform version(s) passed ({self.duration:.1f}s)"
        return (
            f"✗ AVD test failed after {self.duration:.1f}s: "
            f"{passed}/{len(self.cycles)} platform version(s) passed"
        )


class RunGuard:
    """Context manager that rolls back a failed run.

    Usage:
        with RunGuard(driver) as guard:
            ...run cycles...
            guard.disarm()

    Leaving the block with an exception runs the rollback once; the
    exception is re-raised. Each rollback step is best-effort so a cleanup
    error never hides the original failure.
    """

    def __init__(self, driver: "OuterDriver"):
        self.driver = driver
        self.armed = True
        self.fired = False

    def __enter__(self) -> "RunGuard":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and self.armed:
            logger.error(f"Run failed: {exc_val}")
            self.fail()
        return False  # Re-raise exception

    def disarm(self) -> None:
        self.armed = False

    def fail(self) -> None:
        """Roll back after a failure. Calling it again does nothing."""
        if self.fired:
            return
        self.fired = True
        driver = self.driver

        logger.info("=" * 60)
        self._step("Dumping device properties", self._dump_properties)
        banner("! An error occurred", BANNER_ERROR, logging.ERROR)
        self._step("Stopping emulators", driver.emulator.interrupt_all)
        for version in driver.config.platform_versions:
            context = resolve_environment(version, driver.config.variant, driver.config.sdk_root)
            self._step(f"Restoring {version}", driver.artifacts.restore, context)
        self._step("Deleting device profile", driver.delete_profile)
        logger.info("Rollback complete")
        logger.info("=" * 60)

    def _dump_properties(self) -> None:
        props = self.driver.adb.dump_properties()
        logger.error("Device properties:\n%s", props)

    def _step(self, description: str, func, *args) -> None:
        try:
            func(*args)
        except Exception as e:
            message = f"{description} failed: {e}"
            logger.error(f"✗ {message}")
            self.driver.cleanup_errors.append(message)


class OuterDriver:
    """Runs the test cycle for each platform version in the configuration."""

    def __init__(
        self,
        config: HarnessConfig,
        sdk: Optional[SdkManager] = None,
        avd: Optional[AvdManager] = None,
        adb: Optional[Adb] = None,
        emulator: Optional[EmulatorController] = None,
        patcher: Optional[PatchInvoker] = None,
        artifacts: Optional[ArtifactStore] = None,
        cancel: Optional[threading.Event] = None,
        monitor_options: Optional[dict] = None,
    ):
        self.config = config.validate()
        timeout = config.command_timeout
        self.sdk = sdk or SdkManager(config.sdk_root, timeout=timeout)
        self.avd = avd or AvdManager(config.sdk_root)
        self.adb = adb or Adb(config.sdk_root)
        self.emulator = emulator or EmulatorController(
            config.sdk_root, terminate_timeout=config.terminate_timeout
        )
        self.patcher = patcher or PatchInvoker(
            config.patch_command, cwd=config.workdir, timeout=timeout
        )
        self.artifacts = artifacts or ArtifactStore()
        self.cancel = cancel
        self.monitor_options = monitor_options
        self.profile_deleted = False
        self.cleanup_errors: List[str] = []

    def delete_profile(self) -> None:
        """Delete the shared device profile, at most once per run."""
        if self.profile_deleted:
            return
        self.avd.delete(self.config.avd_name)
        self.profile_deleted = True

    def prepare(self) -> None:
        """Preflight checks and SDK setup, run once before the first version."""
        if self.config.preflight:
            check_init_header(self.config.resolve_path(self.config.init_header))
        self.sdk.accept_licenses()
        if self.config.update_sdk:
            self.sdk.update(self.config.sdk_channel)

    def run(self) -> RunResult:
        """Run every platform version.

        HarnessErrors are reported in the returned RunResult after the
        rollback has run. Anything else (e.g. KeyboardInterrupt) is raised
        after the rollback.
        """
        config = self.config
        result = RunResult()
        start = time.time()

        logger.info("=" * 60)
        logger.info(f"Starting AVD test: {', '.join(str(v) for v in config.platform_versions)}")
        logger.info(f"Image: {config.image_type}/{config.arch}, SDK: {config.sdk_root}")
        logger.info("=" * 60)

        try:
            with RunGuard(self) as guard:
                self.prepare()
                for version in config.platform_versions:
                    context = resolve_environment(version, config.variant, config.sdk_root)
                    banner(f"* Testing {context.package}")
                    cycle = BootCycle(
                        config, context, self.sdk, self.avd, self.adb, self.emulator,
                        self.patcher, self.artifacts, cancel=self.cancel,
                        monitor_options=self.monitor_options,
                    )
                    result.cycles.append(cycle.result)
                    cycle.run()
                    logger.info(f"✓ {version} passed in {cycle.result.duration:.1f}s")
                self.delete_profile()
                guard.disarm()
        except HarnessError as e:
            result.error = e
        finally:
            result.duration = time.time() - start
            result.cleanup_errors = list(self.cleanup_errors)

        if result.success:
            logger.info(result.summary())
        else:
            logger.error(result.summary())
        return result


def format_run_result(result: RunResult) -> str:
    """Format a run result for display."""
    lines = [result.summary(), ""]

    for cycle in result.cycles:
        mark = "✓" if cycle.success else "✗"
        lines.append(f"{mark} {cycle.context.version}: {cycle.context.package}")
        lines.append(f"    Reached: {cycle.last_reached.value} ({cycle.duration:.1f}s)")
        if cycle.version_output:
            lines.append(f"    Version: {cycle.version_output}")
        if cycle.error is not None:
            lines.append(f"    Error: {cycle.error}")
    if result.cycles:
        lines.append("")

    if result.error is not None and not any(c.error is result.error for c in result.cycles):
        lines.append(f"Error: {result.error}")
        lines.append("")

    if result.cleanup_errors:
        lines.append(f"Cleanup errors ({len(result.cleanup_errors)}):")
        for i, error in enumerate(result.cleanup_errors, 1):
            lines.append(f"  {i}. {error}")
        lines.append("")

    return "\n".join(lines)
