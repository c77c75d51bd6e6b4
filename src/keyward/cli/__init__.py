"""
Keyward Command Line Interface

Modules:
- registry: Registry commands (init, onboard, offboard, list)
- access: Access commands (verify, reconcile, rotate, history)
- utils: Shared utilities
"""

import argparse
import sys

from .. import __version__
from ..logging import configure_logging
from .registry import register_registry_commands
from .access import register_access_commands


def create_parser():
    """Create and configure the argument parser with all commands."""
    parser = argparse.ArgumentParser(
        prog="keyward",
        description="Keyward: access control for encrypted secrets"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: $KEYWARD_LOG_LEVEL or INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    register_registry_commands(subparsers)
    register_access_commands(subparsers)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        configure_logging(level=args.log_level)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    args.func(args)


__all__ = [
    'main',
    'create_parser',
    'register_registry_commands',
    'register_access_commands',
]
