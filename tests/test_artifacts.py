"""
Tests for system image backup and restore.
"""
import pytest

from avdtest_mcp.artifacts import ArtifactStore, backup_path
from avdtest_mcp.config import PlatformVersion
from avdtest_mcp.errors import ProvisioningFailure

from conftest import make_image


@pytest.fixture
def context(sdk_root):
    return make_image(sdk_root, PlatformVersion(28, "P"))


@pytest.fixture
def store():
    return ArtifactStore()


def test_backup_path_suffix(context):
    assert backup_path(context.ramdisk).name == "ramdisk.img.bak"


def test_restore_without_backup_is_noop(store, context):
    context.ramdisk.write_bytes(b"patched")

    assert store.restore(context) == []
    assert context.ramdisk.read_bytes() == b"patched"


def test_ensure_backups_creates_copies(store, context):
    created = store.ensure_backups(context)

    assert set(created) == {backup_path(context.ramdisk), backup_path(context.features)}
    assert backup_path(context.ramdisk).read_bytes() == b"stock ramdisk"
    assert backup_path(context.features).read_text() == "Vulkan = off\n"


def test_ensure_backups_never_overwrites(store, context):
    store.ensure_backups(context)
    context.ramdisk.write_bytes(b"patched")

    assert store.ensure_backups(context) == []
    assert backup_path(context.ramdisk).read_bytes() == b"stock ramdisk"


def test_ensure_backups_requires_provisioned_image(store, context):
    context.ramdisk.unlink()

    with pytest.raises(ProvisioningFailure, match="ramdisk.img"):
        store.ensure_backups(context)


def test_restore_copies_backup_over_live(store, context):
    store.ensure_backups(context)
    context.ramdisk.write_bytes(b"patched")
    context.features.write_text("Vulkan = on\n")

    restored = store.restore(context)

    assert restored == [context.ramdisk, context.features]
    assert context.ramdisk.read_bytes() == b"stock ramdisk"
    assert context.features.read_text() == "Vulkan = off\n"
    # The backup is the source, never the destination
    assert backup_path(context.ramdisk).read_bytes() == b"stock ramdisk"


def test_restore_is_idempotent(store, context):
    store.ensure_backups(context)
    context.ramdisk.write_bytes(b"patched")

    store.restore(context)
    first = context.ramdisk.read_bytes()
    store.restore(context)

    assert context.ramdisk.read_bytes() == first == b"stock ramdisk"


def test_restore_handles_partial_backups(store, context):
    store.ensure_backups(context)
    backup_path(context.features).unlink()
    context.ramdisk.write_bytes(b"patched")

    assert store.restore(context) == [context.ramdisk]
