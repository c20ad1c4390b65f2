#!/usr/bin/env python3

import sys
import os
import argparse
import logging
from typing import List, Optional

from .config.manager import ConfigManager, MirrorConfig
from .errors import ConfigError, MirrorError
from .registry.client import IndexFileRegistry
from .sync.mirror import MirrorOptions, MirrorRunner, RunSummary
from .verification.checker import MirrorVerifier

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging for the application"""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Determine log file path
    if os.geteuid() == 0:
        log_file = "/var/log/offline-mirror.log"
    else:
        log_file = os.path.expanduser("~/.local/log/offline-mirror.log")
        os.makedirs(os.path.dirname(log_file), exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file)
        ]
    )


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser"""
    parser = argparse.ArgumentParser(
        description="Offline Package Mirror",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s mirror wget curl --with-deps -d /srv/mirror   # Mirror two packages and their dependencies
  %(prog)s mirror --package-variant firefox -d /srv/mirror
  %(prog)s mirror --update --prune -d /srv/mirror       # Refresh an existing mirror
  %(prog)s mirror --config-only -d /srv/mirror          # Only write config.json
  %(prog)s verify /srv/mirror --checksums               # Check files and checksums
        """
    )

    parser.add_argument(
        "--config", "-c",
        help="Path to configuration file",
        default=None
    )

    parser.add_argument(
        "--log-level", "-l",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Set logging level"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Mirror command
    mirror_parser = subparsers.add_parser("mirror", help="Mirror package resources")
    mirror_parser.add_argument("names", nargs="*", help="Packages to mirror (default: all)")
    mirror_parser.add_argument("--directory", "-d", help="Mirror directory")
    mirror_parser.add_argument("--with-deps", action="store_true",
                               help="Include transitive runtime and recommended dependencies")
    mirror_parser.add_argument("--include-build", action="store_true",
                               help="Also follow build-only dependencies")
    mirror_parser.add_argument("--include-optional", action="store_true",
                               help="Also follow optional dependencies")
    mirror_parser.add_argument("--package-variant", nargs="+", default=[], metavar="TOKEN",
                               help="Prebuilt bundles to mirror")
    mirror_parser.add_argument("--collections", nargs="+", default=[], metavar="NAME",
                               help="Restrict to these registry collections")
    mirror_parser.add_argument("--platform", nargs="+", default=None, metavar="TAG",
                               help="Platform variants to mirror")
    mirror_parser.add_argument("--update", action="store_true",
                               help="Refresh an existing mirror using its manifest")
    mirror_parser.add_argument("--prune", action="store_true",
                               help="Delete payload files no longer referenced")
    mirror_parser.add_argument("--verify", action="store_true",
                               help="Verify the mirror after the run")
    mirror_parser.add_argument("--config-only", action="store_true",
                               help="Only write the configuration document")
    mirror_parser.add_argument("--delay", type=float, default=None,
                               help="Seconds between external fetches")
    mirror_parser.add_argument("--workers", type=int, default=None,
                               help="Parallel fetch workers")
    mirror_parser.add_argument("--registry", default=None, help="Registry index file")
    mirror_parser.add_argument("--base-address", default=None,
                               help="Address the redirection shim substitutes")
    mirror_parser.add_argument("--debug-tree", action="store_true",
                               help="Print the dependency tree")

    # Verify command
    verify_parser = subparsers.add_parser("verify", help="Verify a mirror directory")
    verify_parser.add_argument("directory", help="Mirror directory")
    verify_parser.add_argument("--checksums", action="store_true",
                               help="Recompute SHA256 of checksum-named files (slow)")
    verify_parser.add_argument("--verbose", "-v", action="store_true",
                               help="Show every warning")

    return parser


def print_summary(summary: RunSummary) -> None:
    if summary.tree:
        print("\nDependency tree:")
        for line in summary.tree:
            print(f"  {line}")

    print(f"\nMirror: {summary.directory}")
    print(f"  ✓ {len(summary.packages)} packages, {len(summary.bundles)} bundles")
    print(f"  ✓ {summary.fetched} fetched, {summary.cached} already cached")

    if summary.plan:
        print(f"  Update: {len(summary.plan.unchanged)} unchanged, {len(summary.plan.new)} new, "
              f"{len(summary.plan.stale)} stale")
    if summary.pruned:
        print(f"  Pruned {len(summary.pruned)} files")

    for name in summary.unresolved:
        print(f"  ? {name} - not found in registry")
    for skip in summary.skipped:
        print(f"  - {skip['package']}: skipped {skip['locator']} ({skip['reason']})")
    for failure in summary.failures:
        print(f"  ✗ {failure['package']}: {failure['locator']} - {failure['error']}")
    for warning in summary.warnings:
        print(f"  ! {warning}")


def print_verification(verifier: MirrorVerifier, results, verbose: bool = False) -> None:
    print(f"\n{verifier.get_verification_summary(results)}")

    for error in results['errors']:
        print(f"  ✗ {error}")

    warnings = results['warnings']
    if verbose:
        for warning in warnings:
            print(f"  ! {warning}")
    elif warnings:
        print(f"  ! {len(warnings)} warnings (use --verbose to list)")


def cmd_mirror(args, config_manager: ConfigManager) -> int:
    """Handle mirror command"""
    config = config_manager.apply_overrides(
        base_path=args.directory,
        base_address=args.base_address,
        registry_index=args.registry,
        delay=args.delay,
        max_workers=args.workers,
        platforms=args.platform,
    )

    if not config.registry_index:
        raise ConfigError("No registry index configured (use --registry or registry_index in the config file)")

    registry = IndexFileRegistry(config.registry_index)
    runner = MirrorRunner(config, registry)
    options = MirrorOptions(
        with_deps=args.with_deps,
        include_build=args.include_build,
        include_optional=args.include_optional,
        bundles=args.package_variant,
        collections=args.collections,
        update=args.update,
        prune=args.prune,
        config_only=args.config_only,
        debug_tree=args.debug_tree,
    )

    summary = runner.run(args.names, options)
    if args.config_only:
        print(f"✓ Wrote configuration document to {summary.directory}")
    else:
        print_summary(summary)

    if args.verify:
        return verify_directory(config.base_path, config, checksums=False, verbose=False)
    return 0


def verify_directory(directory: str, config: MirrorConfig, checksums: bool, verbose: bool) -> int:
    verifier = MirrorVerifier(directory, check_checksums=checksums, size_timeout=config.size_timeout)
    results = verifier.verify()
    print_verification(verifier, results, verbose)
    return 1 if results['errors'] else 0


def cmd_verify(args, config_manager: ConfigManager) -> int:
    """Handle verify command"""
    print("=== Mirror Verification ===")
    if args.checksums:
        print("Recomputing checksums... (this may take several minutes)")
    return verify_directory(args.directory, config_manager.get_config(), args.checksums, args.verbose)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    config_manager = ConfigManager(args.config)
    try:
        config = config_manager.load_config()
    except ConfigError as e:
        setup_logging(args.log_level or "INFO")
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(args.log_level or config.log_level)

    try:
        if args.command == "mirror":
            return cmd_mirror(args, config_manager)

        elif args.command == "verify":
            return cmd_verify(args, config_manager)

        parser.print_help()
        return 1

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130

    except MirrorError as e:
        logger.error(f"{e.code}: {e}")
        return 1

    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if (args.log_level or config.log_level).upper() == "DEBUG":
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
