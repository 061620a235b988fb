from __future__ import annotations

import logging

from smoketest_churn import TEST_DIR
from smoketest_churn import smoketest_runner

from walk_cache.cacheconfig import CacheConfig
from walk_cache.scanner import Scanner

CONFIG = "smoketest.ini"


def main() -> int:
    """Scan the churning smoketest directories until ctrl-c is pressed."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    config = CacheConfig(CONFIG)
    scanner = Scanner.from_config(config)

    try:
        with smoketest_runner():
            scanner.run_loop([str(TEST_DIR)], recursive=True)

    finally:
        scanner.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
