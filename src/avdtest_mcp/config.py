"""
Harness configuration: platform versions, image variant and run settings.

HarnessConfig is immutable and handed to the driver at construction; a run
never reads configuration from module globals.
"""
import json
import logging
import os
import platform
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)


IMAGE_TYPES = ("google_apis", "default")
ARCHITECTURES = ("arm64-v8a", "x86_64")

EMULATOR_ARGS = (
    "-no-window",
    "-gpu",
    "swiftshader_indirect",
    "-no-snapshot",
    "-noaudio",
    "-no-boot-anim",
    "-show-kernel",
)

MAGISK_COMPONENT = "io.github.vvb2060.magisk/com.topjohnwu.magisk.ui.MainActivity"


@dataclass(frozen=True)
class PlatformVersion:
    """One Android release to test."""

    api_level: int
    codename: str
    preview: bool = False  # Preview images are published under their codename

    @property
    def sdk_id(self) -> str:
        """Token used in SDK package names and system image directories."""
        return self.codename if self.preview else str(self.api_level)

    def __str__(self) -> str:
        return f"android-{self.sdk_id} ({self.codename})"

    @staticmethod
    def parse(text: str) -> "PlatformVersion":
        """Parse "33", "33:T" or a bare preview codename like "UpsideDownCake"."""
        text = text.strip()
        if not text:
            raise ConfigError("Empty platform version")

        level, _, codename = text.partition(":")
        if level.isdigit():
            api_level = int(level)
            if not codename:
                codename = CODENAMES.get(api_level, level)
            return PlatformVersion(api_level, codename)

        if codename:
            raise ConfigError(f"Invalid platform version: {text!r}")

        # Codename only: a preview image
        for known_level, name in CODENAMES.items():
            if name == text:
                return PlatformVersion(known_level, name)
        return PlatformVersion(PREVIEW_API_LEVELS.get(text, 10000), text, preview=True)


CODENAMES = {
    23: "M",
    26: "O",
    28: "P",
    29: "Q",
    30: "R",
    31: "S",
    32: "Sv2",
    33: "T",
    34: "U",
    35: "V",
}

PREVIEW_API_LEVELS = {
    "UpsideDownCake": 34,
    "VanillaIceCream": 35,
}

# API 23: legacy rootfs w/o Treble
# API 26: legacy rootfs with Treble
# API 28: legacy system-as-root
# API 29: 2 Stage Init
# API 33: latest stable
SUPPORTED_PLATFORM_VERSIONS: Tuple[PlatformVersion, ...] = (
    PlatformVersion(23, "M"),
    PlatformVersion(26, "O"),
    PlatformVersion(28, "P"),
    PlatformVersion(29, "Q"),
    PlatformVersion(33, "T"),
)

DEFAULT_PLATFORM_VERSIONS: Tuple[PlatformVersion, ...] = (
    PlatformVersion(33, "T"),
    PlatformVersion(34, "UpsideDownCake", preview=True),
)


@dataclass(frozen=True)
class ImageVariant:
    """System image type and ABI, fixed for a whole run."""

    type: str
    arch: str

    def validate(self) -> None:
        if self.type not in IMAGE_TYPES:
            raise ConfigError(f"Invalid image type {self.type!r}, expected one of {IMAGE_TYPES}")
        if self.arch not in ARCHITECTURES:
            raise ConfigError(f"Invalid architecture {self.arch!r}, expected one of {ARCHITECTURES}")


def host_image_arch(machine: Optional[str] = None) -> str:
    """Map the host CPU to the emulator image ABI."""
    machine = (machine or platform.machine()).lower()
    if machine in ("arm64", "aarch64"):
        return "arm64-v8a"
    return "x86_64"


def default_sdk_root() -> Path:
    """Look up the Android SDK location from the environment.

    ANDROID_HOME wins when it points at a directory, matching sdkmanager.
    """
    android_home = os.getenv("ANDROID_HOME")
    if android_home and Path(android_home).is_dir():
        return Path(android_home)
    android_sdk_root = os.getenv("ANDROID_SDK_ROOT")
    if android_sdk_root:
        return Path(android_sdk_root)
    return Path.home() / "Android" / "Sdk"


@dataclass(frozen=True)
class HarnessConfig:
    """Settings for one harness run."""

    sdk_root: Path = field(default_factory=default_sdk_root)
    image_type: str = "google_apis"
    arch: str = field(default_factory=host_image_arch)
    platform_versions: Tuple[PlatformVersion, ...] = DEFAULT_PLATFORM_VERSIONS
    avd_name: str = "test"
    emulator_args: Tuple[str, ...] = EMULATOR_ARGS

    # Seconds
    bootanim_timeout: float = 180
    boot_timeout: float = 360
    poll_interval: float = 2
    terminate_timeout: float = 60
    command_timeout: float = 600

    workdir: Path = field(default_factory=Path.cwd)
    apk_path: Path = Path("out/app-debug.apk")
    app_component: str = MAGISK_COMPONENT
    patch_command: Tuple[str, ...] = ("./build.py", "avd_patch", "-s")
    verify_command: Tuple[str, ...] = ("magisk", "-v")
    expected_version: Optional[str] = None

    init_header: Path = Path("native/src/init/init.hpp")
    preflight: bool = True
    sdk_channel: int = 3
    update_sdk: bool = True

    @property
    def variant(self) -> ImageVariant:
        return ImageVariant(type=self.image_type, arch=self.arch)

    def resolve_path(self, path: Path) -> Path:
        """Resolve a workspace-relative path against workdir."""
        path = Path(path)
        return path if path.is_absolute() else Path(self.workdir) / path

    def validate(self) -> "HarnessConfig":
        """Check the configuration, raising ConfigError on the first problem."""
        self.variant.validate()

        if not self.platform_versions:
            raise ConfigError("At least one platform version is required")
        if not self.avd_name:
            raise ConfigError("avd_name must not be empty")
        if not self.patch_command:
            raise ConfigError("patch_command must not be empty")

        for name in _FLOAT_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number, got {value!r}")
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")

        return self

    def with_overrides(self, **overrides: Any) -> "HarnessConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(changes))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarnessConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(**_coerce(dict(data)))

    @classmethod
    def load(cls, config_file: Path) -> "HarnessConfig":
        """Load configuration from a JSON file."""
        config_file = Path(config_file)
        try:
            with open(config_file, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigError(f"Config file not found: {config_file}")
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigError(f"Failed to read config {config_file}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_file} must contain a JSON object")

        logger.info(f"Loaded configuration from {config_file}")
        return cls.from_dict(data)


_PATH_FIELDS = ("sdk_root", "workdir", "apk_path", "init_header")
_TUPLE_FIELDS = ("emulator_args", "patch_command", "verify_command")
_FLOAT_FIELDS = ("bootanim_timeout", "boot_timeout", "poll_interval", "terminate_timeout", "command_timeout")


def _coerce(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert JSON/CLI values into the types HarnessConfig stores."""
    for name in _PATH_FIELDS:
        if name in data:
            data[name] = Path(data[name]).expanduser()
    for name in _TUPLE_FIELDS:
        if name in data:
            value = data[name]
            data[name] = tuple(value.split()) if isinstance(value, str) else tuple(value)
    for name in _FLOAT_FIELDS:
        if name in data:
            data[name] = _number(name, data[name], float)
    if "sdk_channel" in data:
        data["sdk_channel"] = _number("sdk_channel", data["sdk_channel"], int)
    if "platform_versions" in data:
        data["platform_versions"] = parse_platform_versions(data["platform_versions"])
    return data


def _number(name: str, value: Any, kind: type) -> Any:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}")


def parse_platform_versions(values: Any) -> Tuple[PlatformVersion, ...]:
    """Parse a list of versions given as strings, ints or PlatformVersion objects."""
    if isinstance(values, str):
        values = values.replace(",", " ").split()

    versions = []
    for value in values:
        if isinstance(value, PlatformVersion):
            versions.append(value)
        elif isinstance(value, dict):
            try:
                versions.append(PlatformVersion(**value))
            except TypeError as e:
                raise ConfigError(f"Invalid platform version {value!r}: {e}")
        else:
            versions.append(PlatformVersion.parse(str(value)))
    return tuple(versions)


def platform_versions_from_args(values: Optional[Sequence[str]]) -> Optional[Tuple[PlatformVersion, ...]]:
    if not values:
        return None
    return parse_platform_versions(" ".join(values))
