"""
Resolve SDK package names and system image paths for a platform version.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from .config import ImageVariant, PlatformVersion

RAMDISK_NAME = "ramdisk.img"
FEATURES_NAME = "advancedFeatures.ini"


@dataclass(frozen=True)
class EnvironmentContext:
    """Package specifier and mutable image files for one platform version."""

    version: PlatformVersion
    package: str  # e.g. "system-images;android-33;google_apis;x86_64"
    image_dir: Path
    ramdisk: Path
    features: Path

    @property
    def artifacts(self) -> Tuple[Path, Path]:
        """Files the harness mutates and must roll back."""
        return (self.ramdisk, self.features)


def resolve_environment(
    version: PlatformVersion, variant: ImageVariant, sdk_root: Path
) -> EnvironmentContext:
    """Build the EnvironmentContext for a version.

    Paths follow the SDK layout
    {sdk_root}/system-images/android-{id}/{type}/{arch}/. Nothing is checked
    on disk here; the image may not be provisioned yet.
    """
    android_id = f"android-{version.sdk_id}"
    package = f"system-images;{android_id};{variant.type};{variant.arch}"
    image_dir = Path(sdk_root) / "system-images" / android_id / variant.type / variant.arch
    return EnvironmentContext(
        version=version,
        package=package,
        image_dir=image_dir,
        ramdisk=image_dir / RAMDISK_NAME,
        features=image_dir / FEATURES_NAME,
    )
