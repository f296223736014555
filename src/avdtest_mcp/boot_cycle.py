"""
The two-boot test cycle run for each platform version.

Cycle 1 boots the stock image and patches its ramdisk while the emulator
is up. Cycle 2 boots the patched ramdisk, checks the patch took effect,
waits for a full boot, and installs and launches the app. Artifacts are
restored before cycle 1 and after cycle 2.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .artifacts import ArtifactStore
from .boot_monitor import WaitResult, boot_completed_monitor, bootanim_monitor
from .config import HarnessConfig
from .emulator import EmulatorController, EmulatorSession
from .environment import EnvironmentContext
from .errors import CycleCancelled, SignalTimeout
from .sdk_tools import Adb, AvdManager, PatchInvoker, SdkManager

logger = logging.getLogger(__name__)


class CycleState(Enum):
    """States of a test cycle, in the order they are reached."""

    PENDING = "pending"
    PROVISIONED = "provisioned"
    PROFILE_CREATED = "profile_created"
    CYCLE1_LAUNCHED = "cycle1_launched"
    CYCLE1_READY = "cycle1_ready"
    PATCHED = "patched"
    CYCLE1_TERMINATED = "cycle1_terminated"
    CYCLE2_LAUNCHED = "cycle2_launched"
    CYCLE2_READY = "cycle2_ready"
    CYCLE2_FULLY_BOOTED = "cycle2_fully_booted"
    APP_INSTALLED = "app_installed"
    APP_LAUNCHED = "app_launched"
    CYCLE2_TERMINATED = "cycle2_terminated"
    ARTIFACTS_RESTORED = "artifacts_restored"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Outcome of one platform version's cycle."""

    context: EnvironmentContext
    state: CycleState = CycleState.PENDING
    history: List[CycleState] = field(default_factory=list)
    duration: float = 0.0
    version_output: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def success(self) -> bool:
        return self.state == CycleState.ARTIFACTS_RESTORED

    @property
    def last_reached(self) -> CycleState:
        """Furthest state reached before any failure."""
        reached = [s for s in self.history if s != CycleState.FAILED]
        return reached[-1] if reached else CycleState.PENDING


class BootCycle:
    """Runs the dual-boot sequence for one EnvironmentContext."""

    def __init__(
        self,
        config: HarnessConfig,
        context: EnvironmentContext,
        sdk: SdkManager,
        avd: AvdManager,
        adb: Adb,
        emulator: EmulatorController,
        patcher: PatchInvoker,
        artifacts: ArtifactStore,
        cancel: Optional[threading.Event] = None,
        monitor_options: Optional[dict] = None,
    ):
        self.config = config
        self.context = context
        self.sdk = sdk
        self.avd = avd
        self.adb = adb
        self.emulator = emulator
        self.patcher = patcher
        self.artifacts = artifacts
        self.cancel = cancel
        # Extra BootSignalMonitor arguments (clock/sleep)
        self.monitor_options = monitor_options or {}
        self.result = CycleResult(context=context)
        self._session: Optional[EmulatorSession] = None

    def _advance(self, state: CycleState) -> None:
        self.result.state = state
        self.result.history.append(state)
        logger.debug(f"{self.context.version}: -> {state.value}")

    def run(self) -> CycleResult:
        """Run the cycle.

        On failure the live emulator, if any, is left running so the caller
        can collect its properties before stopping it.
        """
        start = time.time()
        try:
            self._run()
        except BaseException as e:
            self.result.error = e
            self._advance(CycleState.FAILED)
            if self._session is not None:
                logger.warning(f"Emulator {self._session.pid} left running for cleanup")
            raise
        finally:
            self.result.duration = time.time() - start
        return self.result

    def _run(self) -> None:
        config = self.config
        ctx = self.context

        # Setup
        self.sdk.install(ctx.package)
        self.artifacts.ensure_backups(ctx)
        self._advance(CycleState.PROVISIONED)

        self.avd.create(config.avd_name, ctx.package)
        self._advance(CycleState.PROFILE_CREATED)

        # Cycle 1: boot the stock image and patch it
        self.artifacts.restore(ctx)
        self._launch()
        self._advance(CycleState.CYCLE1_LAUNCHED)

        self._wait_bootanim()
        self._advance(CycleState.CYCLE1_READY)

        self.patcher.patch(ctx.ramdisk)
        self._advance(CycleState.PATCHED)

        self._terminate()
        self._advance(CycleState.CYCLE1_TERMINATED)

        # Cycle 2: boot the patched ramdisk (no restore in between)
        self._launch()
        self._advance(CycleState.CYCLE2_LAUNCHED)

        self._wait_bootanim()
        self._advance(CycleState.CYCLE2_READY)

        self.result.version_output = self.adb.verify_version(
            config.verify_command, config.expected_version
        )
        self._wait(
            boot_completed_monitor(self.adb, config.poll_interval, **self.monitor_options),
            config.boot_timeout,
        )
        self._advance(CycleState.CYCLE2_FULLY_BOOTED)

        self.adb.install(config.resolve_path(config.apk_path))
        self._advance(CycleState.APP_INSTALLED)

        self.adb.start_activity(config.app_component)
        self._advance(CycleState.APP_LAUNCHED)

        self._terminate()
        self._advance(CycleState.CYCLE2_TERMINATED)

        self.artifacts.restore(ctx)
        self._advance(CycleState.ARTIFACTS_RESTORED)

    def _launch(self) -> None:
        self._session = self.emulator.launch(self.config.avd_name, self.config.emulator_args)

    def _terminate(self) -> None:
        session, self._session = self._session, None
        self.emulator.terminate(session)

    def _wait_bootanim(self) -> None:
        monitor = bootanim_monitor(self.adb, self.config.poll_interval, **self.monitor_options)
        self._wait(monitor, self.config.bootanim_timeout)

    def _wait(self, monitor, timeout: float) -> None:
        outcome = monitor.wait(timeout, cancel=self.cancel)
        if outcome.result == WaitResult.TIMED_OUT:
            raise SignalTimeout(monitor.description, timeout, outcome.last_value)
        if outcome.result == WaitResult.CANCELLED:
            raise CycleCancelled(f"Cancelled while waiting for {monitor.description}")
