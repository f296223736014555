"""
Emulator process lifecycle: launch, interrupt-and-wait, and tracking.
"""
import datetime
import json
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .errors import LaunchFailure
from .sdk_tools import sdk_tool_paths

logger = logging.getLogger(__name__)

EMULATOR_LOG_DIR = Path("/tmp/avdtest-emulator-logs")

# PID tracking for launched emulators (so we only ever kill our own).
# The harness PID is part of the filename so concurrent harnesses do not
# see each other's emulators.
_HARNESS_PID = os.getpid()
EMULATOR_PID_TRACKING_FILE = Path(f"/tmp/avdtest-emulator-pids-{_HARNESS_PID}.json")


def _load_tracking_data() -> Dict[str, Any]:
    if not EMULATOR_PID_TRACKING_FILE.exists():
        return {}
    try:
        with open(EMULATOR_PID_TRACKING_FILE, "r") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _save_tracking_data(tracking_data: Dict[str, Any]) -> None:
    if tracking_data:
        with open(EMULATOR_PID_TRACKING_FILE, "w") as f:
            json.dump(tracking_data, f, indent=2)
    elif EMULATOR_PID_TRACKING_FILE.exists():
        EMULATOR_PID_TRACKING_FILE.unlink()


def _is_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # Signal 0 checks if process exists
        return True
    except (OSError, ProcessLookupError):
        return False


def _track_emulator_process(
    pid: int, pgid: int, description: str = "", log_file_path: Optional[Path] = None
):
    """Record a launched emulator so it can be killed later if needed."""
    tracking_data = _load_tracking_data()
    tracking_data[str(pid)] = {
        "pid": pid,
        "pgid": pgid,
        "description": description,
        "started_at": time.time(),
        "log_file_path": str(log_file_path) if log_file_path else None,
    }
    try:
        _save_tracking_data(tracking_data)
    except OSError as e:
        logger.warning(f"Failed to track emulator process {pid}: {e}")


def _untrack_emulator_process(pid: int):
    tracking_data = _load_tracking_data()
    if str(pid) not in tracking_data:
        return
    del tracking_data[str(pid)]
    try:
        _save_tracking_data(tracking_data)
    except OSError as e:
        logger.warning(f"Failed to untrack emulator process {pid}: {e}")


def get_tracked_emulators() -> Dict[int, Dict[str, Any]]:
    """Tracked emulator processes that are still alive, keyed by PID."""
    result = {}
    for pid_str, info in _load_tracking_data().items():
        try:
            pid = int(pid_str)
        except ValueError:
            continue
        if _is_alive(pid):
            result[pid] = info
    return result


def cleanup_dead_tracked_emulators():
    """Drop exited processes from the tracking file."""
    alive = {str(pid): info for pid, info in get_tracked_emulators().items()}
    try:
        _save_tracking_data(alive)
    except OSError:
        pass


def kill_tracked_emulators(force: bool = False) -> List[int]:
    """Signal the process group of every tracked emulator.

    Args:
        force: Use SIGKILL instead of SIGTERM

    Returns:
        PIDs that were signalled
    """
    sig = signal.SIGKILL if force else signal.SIGTERM
    killed = []
    for pid, info in get_tracked_emulators().items():
        pgid = info.get("pgid", pid)
        try:
            os.killpg(pgid, sig)
            killed.append(pid)
            logger.info(f"Sent {sig.name} to emulator {pid} (PGID {pgid})")
        except (ProcessLookupError, PermissionError) as e:
            logger.warning(f"Failed to kill emulator {pid}: {e}")
    cleanup_dead_tracked_emulators()
    return killed


def _ensure_log_directory() -> Path:
    EMULATOR_LOG_DIR.mkdir(parents=True, exist_ok=True)
    return EMULATOR_LOG_DIR


def _cleanup_old_logs(max_age_days: int = 7):
    """Delete emulator logs older than max_age_days."""
    if not EMULATOR_LOG_DIR.exists():
        return

    max_age_seconds = max_age_days * 24 * 60 * 60
    now = time.time()
    for log_file in EMULATOR_LOG_DIR.glob("emulator-*.log"):
        try:
            if now - log_file.stat().st_mtime > max_age_seconds:
                log_file.unlink()
        except OSError:
            # Ignore errors during cleanup
            pass


@dataclass
class EmulatorSession:
    """One running emulator process."""

    process: subprocess.Popen
    avd_name: str
    pgid: int
    log_file: Optional[Path] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.poll() is None


class EmulatorController:
    """Spawns and stops emulator sessions, one at a time."""

    def __init__(self, sdk_root: Path, terminate_timeout: float = 60,
                 emulator_path: Optional[Path] = None, log_output: bool = True):
        """Initialize the controller.

        Args:
            sdk_root: Android SDK root containing emulator/emulator
            terminate_timeout: Seconds to wait after SIGINT before SIGKILL
            emulator_path: Override the emulator binary
            log_output: Write emulator output to a log file instead of discarding it
        """
        self.emulator_path = Path(emulator_path or sdk_tool_paths(sdk_root)["emulator"])
        self.terminate_timeout = terminate_timeout
        self.log_output = log_output
        self._sessions: List[EmulatorSession] = []
        self.launch_count = 0
        self.max_live_sessions = 0

    @property
    def live_sessions(self) -> List[EmulatorSession]:
        return [s for s in self._sessions if s.alive]

    def launch(self, avd_name: str, args: Sequence[str] = ()) -> EmulatorSession:
        """Start the emulator for `avd_name` without waiting for it to boot."""
        live = self.live_sessions
        if live:
            raise LaunchFailure(
                f"Emulator {live[0].pid} for '{live[0].avd_name}' is still running"
            )
        # Exited sessions have already been reaped
        self._sessions = []

        cmd = [str(self.emulator_path), f"@{avd_name}", *args]
        log_file = None
        stdout = subprocess.DEVNULL
        if self.log_output:
            _ensure_log_directory()
            _cleanup_old_logs()
            timestamp = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
            log_file = EMULATOR_LOG_DIR / f"emulator-{timestamp}-{avd_name}-{self.launch_count}.log"

        logger.info(f"Launching emulator: {' '.join(cmd)}")
        try:
            if log_file:
                stdout = open(log_file, "w", encoding="utf-8", buffering=1)
            try:
                # New session: the emulator and its qemu children share a process group
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            finally:
                if log_file:
                    stdout.close()
        except OSError as e:
            raise LaunchFailure(f"Failed to launch emulator {self.emulator_path}: {e}")

        try:
            pgid = os.getpgid(process.pid)
        except ProcessLookupError:
            pgid = process.pid

        session = EmulatorSession(process=process, avd_name=avd_name, pgid=pgid, log_file=log_file)
        self._sessions.append(session)
        self.launch_count += 1
        self.max_live_sessions = max(self.max_live_sessions, len(self.live_sessions))
        _track_emulator_process(process.pid, pgid, f"emulator @{avd_name}", log_file_path=log_file)

        logger.info(f"✓ Emulator started (PID {process.pid})")
        if log_file:
            logger.info(f"  Emulator log: {log_file}")
        return session

    def terminate(self, session: EmulatorSession) -> Optional[int]:
        """Interrupt the emulator and wait for it to exit.

        Safe to call on a session whose process has already exited. If the
        process ignores SIGINT for terminate_timeout seconds its process
        group is killed.

        Returns:
            The emulator's exit code
        """
        if session.alive:
            logger.info(f"Stopping emulator (PID {session.pid})...")
            try:
                session.process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
        returncode = self._wait_or_kill(session)
        logger.info(f"✓ Emulator stopped (PID {session.pid}, exit code {returncode})")
        return returncode

    def interrupt_all(self) -> None:
        """Interrupt every live session's process group and wait for it.

        Used on the failure path; errors are logged, not raised.
        """
        for session in self.live_sessions:
            logger.warning(f"Interrupting emulator process group {session.pgid}")
            try:
                os.killpg(session.pgid, signal.SIGINT)
            except (ProcessLookupError, PermissionError) as e:
                logger.warning(f"Failed to interrupt emulator {session.pid}: {e}")
            try:
                self._wait_or_kill(session)
            except Exception as e:
                logger.error(f"Failed to stop emulator {session.pid}: {e}")

    def _wait_or_kill(self, session: EmulatorSession) -> Optional[int]:
        try:
            returncode = session.process.wait(timeout=self.terminate_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"⚠ Emulator {session.pid} still running after {self.terminate_timeout:g}s, killing"
            )
            try:
                os.killpg(session.pgid, signal.SIGKILL)
            except ProcessLookupError:
                # Process already died
                pass
            returncode = session.process.wait()
        _untrack_emulator_process(session.pid)
        return returncode
