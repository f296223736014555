"""
Tests for the per-version dual-boot cycle.
"""
import threading
from unittest.mock import call

import pytest

from avdtest_mcp.artifacts import backup_path
from avdtest_mcp.boot_cycle import BootCycle, CycleState
from avdtest_mcp.config import PlatformVersion
from avdtest_mcp.environment import resolve_environment
from avdtest_mcp.errors import (
    CycleCancelled,
    InstallOrLaunchFailure,
    PatchFailure,
    ProfileFailure,
    SignalTimeout,
    VerificationFailure,
)

from conftest import FakeAdb


@pytest.fixture
def context(config):
    return resolve_environment(PlatformVersion(28, "P"), config.variant, config.sdk_root)


def _cycle(config, context, collaborators, cancel=None):
    c = collaborators
    return BootCycle(
        config, context, c["sdk"], c["avd"], c["adb"], c["emulator"], c["patcher"],
        c["artifacts"], cancel=cancel, monitor_options=c["monitor_options"],
    )


def test_happy_path_reaches_every_state_in_order(config, context, collaborators):
    result = _cycle(config, context, collaborators).run()

    assert result.success
    assert result.history == [
        CycleState.PROVISIONED,
        CycleState.PROFILE_CREATED,
        CycleState.CYCLE1_LAUNCHED,
        CycleState.CYCLE1_READY,
        CycleState.PATCHED,
        CycleState.CYCLE1_TERMINATED,
        CycleState.CYCLE2_LAUNCHED,
        CycleState.CYCLE2_READY,
        CycleState.CYCLE2_FULLY_BOOTED,
        CycleState.APP_INSTALLED,
        CycleState.APP_LAUNCHED,
        CycleState.CYCLE2_TERMINATED,
        CycleState.ARTIFACTS_RESTORED,
    ]
    assert result.version_output == "27.0:MAGISK:D (27000)"


def test_provisions_and_recreates_profile(config, context, collaborators):
    _cycle(config, context, collaborators).run()

    collaborators["sdk"].install.assert_called_once_with(context.package)
    collaborators["avd"].create.assert_called_once_with("test", context.package)


def test_restores_before_first_launch_and_after_last_stop(config, context, collaborators):
    _cycle(config, context, collaborators).run()

    artifacts = collaborators["artifacts"]
    assert artifacts.restore.call_args_list == [call(context), call(context)]
    # Live image is stock again, backup still stock
    assert context.ramdisk.read_bytes() == b"stock ramdisk"
    assert backup_path(context.ramdisk).read_bytes() == b"stock ramdisk"


def test_backup_taken_before_patch(config, context, collaborators):
    _cycle(config, context, collaborators).run()

    collaborators["artifacts"].ensure_backups.assert_called_once_with(context)
    collaborators["patcher"].patch.assert_called_once_with(context.ramdisk)


def test_second_boot_uses_patched_ramdisk(config, context, collaborators):
    seen = []
    emulator = collaborators["emulator"]
    launch = emulator.launch

    def recording_launch(avd_name, args=()):
        seen.append(context.ramdisk.read_bytes())
        return launch(avd_name, args)

    emulator.launch = recording_launch

    _cycle(config, context, collaborators).run()

    assert seen == [b"stock ramdisk", b"patched ramdisk"]


def test_sessions_are_strictly_sequential(config, context, collaborators):
    _cycle(config, context, collaborators).run()

    emulator = collaborators["emulator"]
    assert emulator.launch_count == 2
    assert emulator.max_live_sessions == 1
    assert emulator.live_sessions == []
    assert len(emulator.terminated) == 2


def test_launch_uses_configured_flags(config, context, collaborators):
    emulator = collaborators["emulator"]
    calls = []
    launch = emulator.launch
    emulator.launch = lambda name, args=(): calls.append((name, tuple(args))) or launch(name, args)

    _cycle(config, context, collaborators).run()

    assert calls == [("test", config.emulator_args)] * 2


def test_installs_and_launches_app(config, context, collaborators):
    _cycle(config, context, collaborators).run()

    adb = collaborators["adb"]
    assert ("install", config.workdir / "out" / "app-debug.apk") in adb.calls
    assert ("start_activity", config.app_component) in adb.calls


def test_bootanim_timeout_stops_before_install(config, context, collaborators):
    collaborators["adb"] = FakeAdb({"init.svc.bootanim": ["running"]})
    cycle = _cycle(config, context, collaborators)

    with pytest.raises(SignalTimeout) as exc_info:
        cycle.run()

    assert exc_info.value.timeout == 180
    assert cycle.result.state == CycleState.FAILED
    assert cycle.result.last_reached == CycleState.CYCLE1_LAUNCHED
    assert CycleState.APP_INSTALLED not in cycle.result.history
    collaborators["patcher"].patch.assert_not_called()
    # The live emulator is left for the driver's cleanup
    assert len(collaborators["emulator"].live_sessions) == 1
    assert collaborators["emulator"].terminated == []


def test_boot_completed_timeout(config, context, collaborators):
    collaborators["adb"] = FakeAdb({
        "init.svc.bootanim": ["stopped"],
        "sys.boot_completed": [""],
    })
    cycle = _cycle(config, context, collaborators)

    with pytest.raises(SignalTimeout) as exc_info:
        cycle.run()

    assert exc_info.value.timeout == 360
    assert cycle.result.last_reached == CycleState.CYCLE2_READY
    assert not any(c[0] == "install" for c in collaborators["adb"].calls)


def test_patch_failure_aborts(config, context, collaborators):
    collaborators["patcher"].patch.side_effect = PatchFailure("patch failed", returncode=1)
    cycle = _cycle(config, context, collaborators)

    with pytest.raises(PatchFailure):
        cycle.run()

    assert cycle.result.last_reached == CycleState.CYCLE1_READY
    assert collaborators["emulator"].launch_count == 1
    assert len(collaborators["emulator"].live_sessions) == 1


def test_verification_failure_aborts(config, context, collaborators):
    adb = collaborators["adb"]

    def fail_verify(command, expected=None):
        raise VerificationFailure("magisk not found")

    adb.verify_version = fail_verify
    cycle = _cycle(config, context, collaborators)

    with pytest.raises(VerificationFailure):
        cycle.run()

    assert cycle.result.last_reached == CycleState.CYCLE2_READY


def test_launch_failure_aborts(config, context, collaborators):
    def fail_start(component):
        raise InstallOrLaunchFailure("Error: Activity class does not exist")

    collaborators["adb"].start_activity = fail_start
    cycle = _cycle(config, context, collaborators)

    with pytest.raises(InstallOrLaunchFailure):
        cycle.run()

    assert cycle.result.last_reached == CycleState.APP_INSTALLED


def test_profile_failure_before_any_launch(config, context, collaborators):
    collaborators["avd"].create.side_effect = ProfileFailure("avdmanager failed")
    cycle = _cycle(config, context, collaborators)

    with pytest.raises(ProfileFailure):
        cycle.run()

    assert cycle.result.last_reached == CycleState.PROVISIONED
    assert collaborators["emulator"].launch_count == 0


def test_cancel_aborts_wait(config, context, collaborators):
    cancel = threading.Event()
    cancel.set()
    cycle = _cycle(config, context, collaborators, cancel=cancel)

    with pytest.raises(CycleCancelled):
        cycle.run()

    assert cycle.result.last_reached == CycleState.CYCLE1_LAUNCHED
