from __future__ import annotations

import argparse
import logging
import os
import random
import shutil
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from string import ascii_lowercase

BASE_DIR: Path = Path(__file__).resolve().parent
TEST_DIR: Path = BASE_DIR / "smoketest_churn"
DIRECTORIES: list[Path] = [
    TEST_DIR / "inbox",
    TEST_DIR / "archive",
    TEST_DIR / "archive" / "2024",
    TEST_DIR / "scratch",
]
VANISHING_DIRECTORY: Path = TEST_DIR / "scratch"
FILE_COUNT_RANGE: tuple[int, int] = (1, 20)
CHANCE_OF_DELETE = 0.2  # out of 1.0
CHANCE_OF_TOUCH = 0.3  # out of 1.0

# Time intervals in seconds
FILE_CREATE_INTERVAL = 10
FILE_CHURN_INTERVAL = 5
VANISH_INTERVAL = 45

logger = logging.getLogger(__name__)


def build_smoketest_directories() -> None:
    """Create the directories for the smoketest."""
    for path in DIRECTORIES:
        logger.debug("Creating %s", path)
        path.mkdir(parents=True, exist_ok=True)


def destroy_smoketest_directories() -> None:
    """Delete the directories for the smoketest."""
    logger.debug("Deleting %s", TEST_DIR)
    shutil.rmtree(TEST_DIR, ignore_errors=True)


def _file_name() -> str:
    """Create a random eight character file name."""
    return "".join(random.choices(ascii_lowercase, k=8)) + ".txt"


def create_files(directory: Path) -> None:
    """Create a random number of files in the directory."""
    file_count = random.randint(*FILE_COUNT_RANGE)

    logger.info("Creating %s files in %s", file_count, directory)
    for _ in range(file_count):
        (directory / _file_name()).write_text(str(time.time()))


def churn_files(directory: Path) -> None:
    """Delete or touch some of the files in the directory."""
    if not directory.is_dir():
        return

    for file in directory.iterdir():
        if not file.is_file():
            continue

        roll = random.random()
        if roll < CHANCE_OF_DELETE:
            logger.debug("Deleting %s", file)
            file.unlink(missing_ok=True)

        elif roll < CHANCE_OF_DELETE + CHANCE_OF_TOUCH:
            logger.debug("Touching %s", file)
            os.utime(file)


def thread_file_creator(stop_flag: threading.Event) -> None:
    """Thread handler: Create files in every directory at a regular interval."""
    next_run = time.time() + FILE_CREATE_INTERVAL

    while not stop_flag.is_set():
        if time.time() < next_run:
            time.sleep(1)
            continue
        next_run = time.time() + FILE_CREATE_INTERVAL

        for directory in DIRECTORIES:
            if directory.is_dir():
                create_files(directory)


def thread_file_churner(stop_flag: threading.Event) -> None:
    """Thread handler: Delete and touch files at a regular interval."""
    next_run = time.time() + FILE_CHURN_INTERVAL

    while not stop_flag.is_set():
        if time.time() < next_run:
            time.sleep(1)
            continue
        next_run = time.time() + FILE_CHURN_INTERVAL

        for directory in DIRECTORIES:
            churn_files(directory)


def thread_vanishing_directory(stop_flag: threading.Event) -> None:
    """Thread handler: Remove the scratch directory, then bring it back."""
    next_run = time.time() + VANISH_INTERVAL

    while not stop_flag.is_set():
        if time.time() < next_run:
            time.sleep(1)
            continue
        next_run = time.time() + VANISH_INTERVAL

        if VANISHING_DIRECTORY.is_dir():
            logger.info("Removing %s", VANISHING_DIRECTORY)
            shutil.rmtree(VANISHING_DIRECTORY)
        else:
            logger.info("Restoring %s", VANISHING_DIRECTORY)
            VANISHING_DIRECTORY.mkdir(parents=True)


def start_threads(stop_flag: threading.Event) -> list[threading.Thread]:
    """Start all threads."""
    threads = []
    for target in (thread_file_creator, thread_file_churner, thread_vanishing_directory):
        threads.append(threading.Thread(target=target, args=(stop_flag,)))
        threads[-1].start()

    return threads


def stop_threads(threads: list[threading.Thread]) -> None:
    """Join all threads, allowing them to stop."""
    for thread in threads:
        thread.join()


@contextmanager
def smoketest_runner() -> Generator[None, None, None]:
    """Run the smoketest."""
    stop_flag = threading.Event()
    threads: list[threading.Thread] = []

    logger.debug("Building smoketest directories...")
    build_smoketest_directories()

    try:
        logger.debug("Starting threads...")
        threads = start_threads(stop_flag)

        yield None

    finally:
        logger.debug("Stopping threads...")
        stop_flag.set()
        stop_threads(threads)
        logger.debug("Destroying smoketest directories...")
        destroy_smoketest_directories()


def parse_args() -> str:
    """Parse command line arguments, return log level."""
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="ERROR",
        help="Set the logging level.",
    )
    return parser.parse_args().log_level


def run() -> int:
    """Main function - blocking."""
    logging.basicConfig(level=parse_args(), format="%(asctime)s %(message)s")

    with smoketest_runner():
        while True:
            try:
                time.sleep(1)
            except KeyboardInterrupt:
                break

    return 0


if __name__ == "__main__":
    raise SystemExit(run())
