"""
Command-line entry point: boot-test a patched ramdisk on Android emulators.

Exit status is 0 when every platform version passes, 1 on a test failure,
2 on a configuration error and 130 when interrupted.
"""
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from .config import IMAGE_TYPES, HarnessConfig, platform_versions_from_args
from .driver import OuterDriver, format_run_result
from .errors import ConfigError

logger = logging.getLogger(__name__)

LOG_FILE = Path("/tmp/avdtest-mcp.log")

EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def configure_logging(verbose: bool = False, log_file: Optional[Path] = LOG_FILE) -> None:
    """Log to stderr and, if given, append to log_file."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.insert(0, logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="avdtest", description=__doc__)
    parser.add_argument(
        "--config",
        type=Path,
        help="JSON file with HarnessConfig fields",
    )
    parser.add_argument(
        "--api",
        nargs="+",
        metavar="VERSION",
        help="Platform versions to test, e.g. 28 33:T UpsideDownCake",
    )
    parser.add_argument("--image-type", choices=IMAGE_TYPES, help="System image type")
    parser.add_argument("--sdk-root", type=Path, help="Android SDK root (default: $ANDROID_SDK_ROOT)")
    parser.add_argument("--apk", type=Path, help="APK to install on the patched device")
    parser.add_argument("--avd-name", help="Name of the device profile to (re)create")
    parser.add_argument("--bootanim-timeout", type=float, help="Seconds to wait for the boot animation")
    parser.add_argument("--boot-timeout", type=float, help="Seconds to wait for boot completion")
    parser.add_argument(
        "--expected-version",
        help="Substring the on-device version command must print",
    )
    parser.add_argument(
        "--no-update",
        action="store_true",
        help="Skip `sdkmanager --update`",
    )
    parser.add_argument(
        "--skip-preflight",
        action="store_true",
        help="Do not check the init header for ENABLE_AVD_HACK",
    )
    parser.add_argument("--log-file", type=Path, default=LOG_FILE, help="Append logs to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> HarnessConfig:
    config = HarnessConfig.load(args.config) if args.config else HarnessConfig()
    return config.with_overrides(
        platform_versions=platform_versions_from_args(args.api),
        image_type=args.image_type,
        sdk_root=args.sdk_root,
        apk_path=args.apk,
        avd_name=args.avd_name,
        bootanim_timeout=args.bootanim_timeout,
        boot_timeout=args.boot_timeout,
        expected_version=args.expected_version,
        update_sdk=False if args.no_update else None,
        preflight=False if args.skip_preflight else None,
    ).validate()


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"Received signal {signum}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        config = config_from_args(args)
    except ConfigError as e:
        logger.error(f"✗ {e}")
        return EXIT_CONFIG_ERROR

    # SIGTERM unwinds the same way as Ctrl-C so the rollback still runs
    signal.signal(signal.SIGTERM, _raise_interrupt)

    try:
        result = OuterDriver(config).run()
    except KeyboardInterrupt:
        logger.error("✗ Interrupted")
        return EXIT_INTERRUPTED

    print(format_run_result(result))
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
