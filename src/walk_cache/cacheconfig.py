from __future__ import annotations

import logging
import os
from configparser import ConfigParser

from .cachemodel import ActionCodes

DATABASE_PATH_ENV = "DATABASE_PATH"

NEW_CONFIG = """\
[system]
# config_name should be unique for each configuration file.
config_name = {config_name}
# The DATABASE_PATH environment variable overrides this value.
database_path = {database_path}
max_is_running_seconds = 300
workers = 4
# Seconds allowed to list one directory, 0 to wait forever.
listing_timeout_seconds = 30
# Consecutive failed scans before a directory is marked removed.
missing_scan_threshold = 3
scan_interval = 60

[scanner]
# One directory per line.
root_directories = .
recursive = false

# Exclude directories and files from being scanned.
# The following are regular expressions. Directories are matched against the
# full path, files against their name.
# Multiline values are combined into a single regular expression.
exclude_directories = [\\/\\\\]\\.[^\\/\\\\]+$
exclude_files = ^\\..*$

[action_types]
# Integer stored in dir_actions_log.action_type for each action.
scanned = 0
added = 1
removed = 2
modified = 3
missing = 4
directory_removed = 5

    """


class CacheConfig:
    """Configuration for the Scanner."""

    logger = logging.getLogger("walk_cache.CacheConfig")

    def __init__(self, filepath: str) -> None:
        """Load the configuration from the given file."""
        self._config = ConfigParser()
        success = self._config.read(filepath)

        if not success:
            raise ValueError(f"Could not read config file at {filepath}")

        self.logger.debug("Loaded config from %s", filepath)

    @property
    def config_name(self) -> str:
        """Return the name of the config."""
        return self._config.get("system", "config_name", fallback="walk_cache")

    @property
    def database_path(self) -> str:
        """Return the database path, the environment wins over the file."""
        from_env = os.environ.get(DATABASE_PATH_ENV)
        if from_env:
            return from_env
        return self._config.get("system", "database_path", fallback=":memory:")

    @property
    def max_is_running_seconds(self) -> int:
        """Return the maximum age of the is_running flag in seconds."""
        return self._config.getint("system", "max_is_running_seconds", fallback=300)

    @property
    def workers(self) -> int:
        """Return the number of directories scanned in parallel."""
        return max(1, self._config.getint("system", "workers", fallback=4))

    @property
    def listing_timeout(self) -> float:
        """Return the listing timeout in seconds, 0 for none."""
        return self._config.getfloat(
            "system", "listing_timeout_seconds", fallback=30.0
        )

    @property
    def missing_scan_threshold(self) -> int:
        """Return the consecutive misses needed to mark a directory removed."""
        return max(1, self._config.getint("system", "missing_scan_threshold", fallback=3))

    @property
    def scan_interval(self) -> int:
        """Return the number of seconds between scans when looping."""
        return self._config.getint("system", "scan_interval", fallback=60)

    @property
    def root_directories(self) -> list[str]:
        """Return the directories scanned when none are given on the CLI."""
        config_line = self._config.get("scanner", "root_directories", fallback="")
        return [line.strip() for line in config_line.splitlines() if line.strip()]

    @property
    def recursive(self) -> bool:
        """Return whether subdirectories are scanned by default."""
        return self._config.getboolean("scanner", "recursive", fallback=False)

    @property
    def exclude_directory_pattern(self) -> str | None:
        """Return the pattern to exclude directories from the scan."""
        config_line = self._config.get("scanner", "exclude_directories", fallback="")
        lines = [line.strip() for line in config_line.splitlines() if line.strip()]
        return "|".join(lines) or None

    @property
    def exclude_file_pattern(self) -> str | None:
        """Return the pattern to exclude files from the scan."""
        config_line = self._config.get("scanner", "exclude_files", fallback="")
        lines = [line.strip() for line in config_line.splitlines() if line.strip()]
        return "|".join(lines) or None

    @property
    def action_codes(self) -> ActionCodes:
        """Return the action_type mapping, defaults for any unset kind."""
        if not self._config.has_section("action_types"):
            return ActionCodes()
        section = self._config["action_types"]
        return ActionCodes.from_names(
            {name: section.getint(name) for name in section}
        )


def write_new_config(filename: str) -> None:
    """Write a new config file if one does not exist."""
    if os.path.exists(filename):
        return

    config_name = os.path.splitext(os.path.basename(filename))[0]
    database_path = filename.replace(".ini", ".db")
    config = NEW_CONFIG.format(config_name=config_name, database_path=database_path)

    with open(filename, "w") as config_file:
        config_file.write(config)
