from __future__ import annotations

import argparse
import logging
from pathlib import Path

from walk_cache.cacheconfig import CacheConfig
from walk_cache.cacheconfig import write_new_config
from walk_cache.cacheerrors import NotFoundError
from walk_cache.cacheerrors import TransientIOError
from walk_cache.cachemodel import DirectoryState
from walk_cache.scanner import Scanner

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("walk_cache")


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="walk-cache",
        description="Cache file timestamps of directories and log what changed between scans.",
    )
    parser.add_argument(
        "config",
        type=str,
        help="The path to the configuration file.",
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Directories to act on. Default: root_directories of the config.",
    )
    parser.add_argument(
        "--recursive",
        "-r",
        help="Include all subdirectories. Default: recursive of the config.",
        default=False,
        action="store_true",
    )
    parser.add_argument(
        "--loop",
        help="Scan in a loop until interrupted. Default: False (scan once).",
        default=False,
        action="store_true",
    )
    parser.add_argument(
        "--restore",
        help="Set file modified times back to their cached values instead of scanning.",
        default=False,
        action="store_true",
    )
    parser.add_argument(
        "--history",
        help="Print the action log of each directory instead of scanning.",
        default=False,
        action="store_true",
    )
    parser.add_argument(
        "--debug",
        help="Enable debug logging.",
        default=False,
        action="store_true",
    )
    parser.add_argument(
        "--log-file",
        help="Enable logging to a file next to the config file.",
        default=False,
        action="store_true",
    )
    parser.add_argument(
        "--make-config",
        help="Create a default configuration file.",
        default=False,
        action="store_true",
    )
    return parser.parse_args(args)


def add_file_handler_to_logging(config_filepath: str) -> None:
    """Add a file handler to the root logger next to the config file provided."""
    filepath = Path(config_filepath).absolute()
    log_filepath = filepath.parent / f"{filepath.stem}.log"
    file_handler = logging.FileHandler(log_filepath)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    logging.getLogger().addHandler(file_handler)


def print_history(scanner: Scanner, paths: list[str]) -> None:
    """Print the action log of each directory."""
    for path in paths:
        state = scanner.directory_state(path)
        print(f"{path} ({state.value})")
        if state is DirectoryState.UNKNOWN:
            continue

        for action in scanner.history(path):
            print(f"\t{action}")


def main(*, cli_args: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(cli_args)

    if args.make_config:
        write_new_config(args.config)
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
    )

    if args.log_file:
        add_file_handler_to_logging(args.config)

    config = CacheConfig(args.config)
    scanner = Scanner.from_config(config)
    paths = args.paths or config.root_directories
    recursive = args.recursive or config.recursive

    try:
        if args.history:
            print_history(scanner, paths)

        elif args.restore:
            for path in paths:
                scanner.restore_modified_dates(path)

        elif args.loop:
            scanner.run_loop(paths, recursive=recursive)

        else:
            scanner.run(paths, recursive=recursive)

    except (TransientIOError, NotFoundError) as error:
        logger.error("%s: %s", type(error).__name__, error)
        return 1

    finally:
        scanner.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
