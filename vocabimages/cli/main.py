"""Main CLI entry point for vocabimages."""

import argparse
import sys

from vocabimages.utils.logger import setup_logging

from .commands.collect import setup_collect_commands
from .commands.items import setup_item_commands
from .commands.sources import setup_source_commands


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="vocabimages", description="Vocabulary image pipeline - search, score and store images per item"
    )
    parser.add_argument("--data-dir", help="Data directory (default: $VOCABIMAGES_DATA_DIR or ./data)")
    parser.add_argument("--log-level", help="Logging level (default: $VOCABIMAGES_LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    setup_source_commands(subparsers)
    setup_item_commands(subparsers)
    setup_collect_commands(subparsers)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(args.log_level)

    # Execute command
    if hasattr(args, "func"):
        return args.func(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
