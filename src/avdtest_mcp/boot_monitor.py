"""
Poll device properties until the emulator reports a boot milestone.
"""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

BOOTANIM_PROP = "init.svc.bootanim"
BOOT_COMPLETED_PROP = "sys.boot_completed"


class WaitResult(Enum):
    """How a boot signal wait ended."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class WaitOutcome:
    """Result of BootSignalMonitor.wait()."""

    result: WaitResult
    attempts: int  # Property queries made
    elapsed: float  # seconds
    last_value: str = ""

    @property
    def ready(self) -> bool:
        return self.result == WaitResult.READY


class BootSignalMonitor:
    """Waits for a device property to satisfy a readiness predicate.

    The device bridge only needs a ``getprop(name) -> str`` method. The
    clock and sleep functions are injectable so waits can be driven by a
    fake clock.
    """

    def __init__(
        self,
        adb,
        prop: str,
        predicate: Callable[[str], bool],
        description: str,
        poll_interval: float = 2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.adb = adb
        self.prop = prop
        self.predicate = predicate
        self.description = description
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def wait(self, timeout: float, cancel: Optional[threading.Event] = None) -> WaitOutcome:
        """Poll until ready, the deadline passes, or `cancel` is set.

        Args:
            timeout: Seconds allowed for the signal to become ready
            cancel: Optional event; setting it ends the wait early

        Returns:
            WaitOutcome with READY, TIMED_OUT or CANCELLED
        """
        start = self._clock()
        deadline = start + timeout
        attempts = 0
        value = ""

        logger.info(f"Waiting for {self.description} (timeout {timeout:g}s)...")
        while True:
            if cancel is not None and cancel.is_set():
                return self._finish(WaitResult.CANCELLED, attempts, start, value)

            attempts += 1
            value = self.adb.getprop(self.prop)
            logger.debug(f"  [{attempts}] {self.prop}={value!r}")
            if self.predicate(value):
                return self._finish(WaitResult.READY, attempts, start, value)

            remaining = deadline - self._clock()
            if remaining <= 0:
                return self._finish(WaitResult.TIMED_OUT, attempts, start, value)

            self._pause(min(self.poll_interval, remaining), cancel)

    def _pause(self, seconds: float, cancel: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel is not None:
            cancel.wait(seconds)
        else:
            time.sleep(seconds)

    def _finish(self, result: WaitResult, attempts: int, start: float, value: str) -> WaitOutcome:
        elapsed = self._clock() - start
        if result == WaitResult.READY:
            logger.info(f"✓ {self.description} after {elapsed:.1f}s ({attempts} checks)")
        elif result == WaitResult.TIMED_OUT:
            logger.error(f"✗ {self.description} not reached after {elapsed:.1f}s "
                         f"(last {self.prop}={value!r})")
        else:
            logger.warning(f"⚠ Wait for {self.description} cancelled after {elapsed:.1f}s")
        return WaitOutcome(result=result, attempts=attempts, elapsed=elapsed, last_value=value)


def bootanim_monitor(adb, poll_interval: float = 2, **kwargs) -> BootSignalMonitor:
    """Ready once the boot animation service reports "stopped"."""
    return BootSignalMonitor(
        adb, BOOTANIM_PROP, lambda value: value == "stopped", "boot animation to stop",
        poll_interval=poll_interval, **kwargs,
    )


def boot_completed_monitor(adb, poll_interval: float = 2, **kwargs) -> BootSignalMonitor:
    """Ready once sys.boot_completed is set to anything."""
    return BootSignalMonitor(
        adb, BOOT_COMPLETED_PROP, lambda value: value != "", "boot to complete",
        poll_interval=poll_interval, **kwargs,
    )
