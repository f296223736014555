"""
Shared fixtures and fakes for the harness tests.
"""
from pathlib import Path
from typing import Dict, List
from unittest.mock import MagicMock

import pytest

from avdtest_mcp.artifacts import ArtifactStore
from avdtest_mcp.config import HarnessConfig, PlatformVersion
from avdtest_mcp.environment import resolve_environment


class FakeClock:
    """Monotonic clock that only moves when sleep() is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeAdb:
    """Device bridge that replays scripted property values.

    Each property maps to a list of values returned in order; the last value
    repeats once the list is exhausted.
    """

    def __init__(self, props: Dict[str, List[str]] = None, version: str = "27.0:MAGISK:D (27000)"):
        self.props = {name: list(values) for name, values in (props or {}).items()}
        self.version = version
        self.queries: List[str] = []
        self.calls: List[tuple] = []

    def getprop(self, name: str) -> str:
        self.queries.append(name)
        values = self.props.get(name, [""])
        return values.pop(0) if len(values) > 1 else values[0]

    def dump_properties(self) -> str:
        self.calls.append(("dump_properties",))
        return "[sys.boot_completed]: []"

    def verify_version(self, command, expected=None) -> str:
        self.calls.append(("verify_version", tuple(command)))
        return self.version

    def install(self, apk: Path) -> None:
        self.calls.append(("install", Path(apk)))

    def start_activity(self, component: str) -> None:
        self.calls.append(("start_activity", component))


class FakeSession:
    def __init__(self, pid: int, avd_name: str):
        self.pid = pid
        self.avd_name = avd_name
        self.alive = True


class FakeEmulator:
    """Emulator controller that records sessions instead of spawning processes."""

    def __init__(self):
        self.sessions: List[FakeSession] = []
        self.launch_count = 0
        self.terminated: List[int] = []
        self.max_live_sessions = 0
        self.interrupt_all_calls = 0

    @property
    def live_sessions(self) -> List[FakeSession]:
        return [s for s in self.sessions if s.alive]

    def launch(self, avd_name, args=()):
        assert not self.live_sessions, "launched while another emulator is live"
        self.launch_count += 1
        session = FakeSession(1000 + self.launch_count, avd_name)
        self.sessions.append(session)
        self.max_live_sessions = max(self.max_live_sessions, len(self.live_sessions))
        return session

    def terminate(self, session):
        session.alive = False
        self.terminated.append(session.pid)
        return 0

    def interrupt_all(self):
        self.interrupt_all_calls += 1
        for session in self.live_sessions:
            session.alive = False


BOOTING_PROPS = {
    "init.svc.bootanim": ["running", "running", "stopped"],
    "sys.boot_completed": ["", "", "1"],
}


def make_image(sdk_root: Path, version: PlatformVersion, image_type="google_apis", arch="x86_64"):
    """Create a provisioned system image directory with stock artifacts."""
    context = resolve_environment(
        version, HarnessConfig(image_type=image_type, arch=arch).variant, sdk_root
    )
    context.image_dir.mkdir(parents=True, exist_ok=True)
    context.ramdisk.write_bytes(b"stock ramdisk")
    context.features.write_text("Vulkan = off\n")
    return context


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sdk_root(tmp_path):
    root = tmp_path / "sdk"
    root.mkdir()
    return root


@pytest.fixture
def config(sdk_root, tmp_path):
    make_image(sdk_root, PlatformVersion(28, "P"))
    return HarnessConfig(
        sdk_root=sdk_root,
        image_type="google_apis",
        arch="x86_64",
        platform_versions=(PlatformVersion(28, "P"),),
        workdir=tmp_path,
        preflight=False,
        update_sdk=False,
    )


@pytest.fixture
def collaborators(clock):
    """Fakes for every external tool, keyed by OuterDriver argument name."""
    patcher = MagicMock()

    def patch_ramdisk(ramdisk):
        ramdisk.write_bytes(b"patched ramdisk")

    patcher.patch.side_effect = patch_ramdisk
    return {
        "sdk": MagicMock(),
        "avd": MagicMock(),
        "adb": FakeAdb(BOOTING_PROPS),
        "emulator": FakeEmulator(),
        "patcher": patcher,
        "artifacts": MagicMock(wraps=ArtifactStore()),
        "monitor_options": {"clock": clock, "sleep": clock.sleep},
    }
