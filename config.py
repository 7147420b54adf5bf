#!/usr/bin/env python3
"""
Configuration management for the feed ingestion service.

This module centralizes configuration loading, validation, and logging setup.
It reads environment variables (optionally from a .env file) and the feeds.yaml
bootstrap file, and provides a single global `config` object for the rest of
the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # aiohttp access/client chatter is rarely useful at INFO
    getLogger("aiohttp").setLevel(WARNING)

    return getLogger("FeedIngest")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "fetcher", "pipeline", "scheduler")

    Returns:
        A logger named "FeedIngest.{name}"
    """
    return getLogger(f"FeedIngest.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the ingestion service.

    Values are loaded from, in order of precedence:
    1. Environment variables
    2. .env file next to this module (if present)
    3. The `thresholds` section of feeds.yaml (scheduler sizing only)

    feeds.yaml also declares the groups and feeds used to bootstrap storage:

    ```yaml
    thresholds:
      batch_size: 10
      worker_limit: 5
    groups:
      tech:
        feeds:
          lwn:
            url: "https://lwn.net/headlines/rss"
            update_frequency: 30
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1, max_val: int | None = None) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            if max_val is not None and value > max_val:
                logger.warning(f"{env_var} must be at most {max_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))

        # HTTP fetch configuration (one attempt per cycle, hard timeout)
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedIngest/1.0)")
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 10, 1)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)

        # Item bounds per cycle
        self.FIRST_FETCH_ITEMS = self._validate_positive_int("FIRST_FETCH_ITEMS", 20, 1)
        self.REFRESH_FETCH_ITEMS = self._validate_positive_int("REFRESH_FETCH_ITEMS", 50, 1)

        # Feed defaults
        self.DEFAULT_UPDATE_FREQUENCY = self._validate_positive_int("DEFAULT_UPDATE_FREQUENCY", 60, 5, 1440)

        # Scheduler sizing
        self.BATCH_SIZE = self._validate_positive_int("BATCH_SIZE", 10, 1)
        self.WORKER_LIMIT = self._validate_positive_int("WORKER_LIMIT", 5, 1)
        self.LEASE_TTL_SECONDS = self._validate_positive_int("LEASE_TTL_SECONDS", 300, 10)
        self.SWEEP_INTERVAL_SECONDS = self._validate_positive_int("SWEEP_INTERVAL_SECONDS", 60, 5)

    # ------------------------------------------------------------------
    # YAML loading
    # ------------------------------------------------------------------
    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate self.GROUP_SOURCES and scheduler thresholds from feeds.yaml.

        Any failure results in an empty mapping; bad entries are skipped with a warning.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        self.GROUP_SOURCES: Dict[str, List[Dict[str, Any]]] = {}
        if not isinstance(config_data, dict):
            return

        thresholds_section = config_data.get('thresholds')
        if isinstance(thresholds_section, dict):
            for key, attr in (('batch_size', 'BATCH_SIZE'), ('worker_limit', 'WORKER_LIMIT')):
                raw = thresholds_section.get(key)
                if raw is None:
                    continue
                try:
                    value = int(str(raw).strip())
                except ValueError:
                    logger.warning(f"Invalid {key} value '{raw}' in feeds.yaml; keeping {getattr(self, attr)}")
                    continue
                if value < 1:
                    logger.warning(f"{key} must be >=1; keeping {getattr(self, attr)} (got {raw})")
                    continue
                setattr(self, attr, value)

        groups_section = config_data.get('groups')
        if not isinstance(groups_section, dict):
            logger.warning(f"No valid groups found in {feeds_path}")
            return

        for group_name, group_cfg in groups_section.items():
            feeds_cfg = group_cfg.get('feeds') if isinstance(group_cfg, dict) else None
            if not isinstance(feeds_cfg, dict):
                logger.warning(f"Skipping group '{group_name}' without a feeds mapping")
                continue
            entries: List[Dict[str, Any]] = []
            for feed_slug, feed_cfg in feeds_cfg.items():
                if not isinstance(feed_cfg, dict) or not feed_cfg.get('url'):
                    logger.warning(f"Skipping invalid feed configuration for '{feed_slug}': {feed_cfg}")
                    continue
                frequency = feed_cfg.get('update_frequency', self.DEFAULT_UPDATE_FREQUENCY)
                try:
                    frequency = int(frequency)
                except (TypeError, ValueError):
                    logger.warning(f"Invalid update_frequency for '{feed_slug}'; using {self.DEFAULT_UPDATE_FREQUENCY}")
                    frequency = self.DEFAULT_UPDATE_FREQUENCY
                entries.append({
                    'slug': str(feed_slug),
                    'url': str(feed_cfg['url']).strip(),
                    'title': feed_cfg.get('title'),
                    'update_frequency': frequency,
                })
            self.GROUP_SOURCES[str(group_name)] = entries

        feed_count = sum(len(v) for v in self.GROUP_SOURCES.values())
        logger.info(f"Loaded {feed_count} feeds in {len(self.GROUP_SOURCES)} groups from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "http_timeout": self.HTTP_TIMEOUT,
            "first_fetch_items": self.FIRST_FETCH_ITEMS,
            "refresh_fetch_items": self.REFRESH_FETCH_ITEMS,
            "batch_size": self.BATCH_SIZE,
            "worker_limit": self.WORKER_LIMIT,
            "lease_ttl_seconds": self.LEASE_TTL_SECONDS,
            "group_count": len(self.GROUP_SOURCES),
            "feed_count": sum(len(v) for v in self.GROUP_SOURCES.values()),
        }

# Global configuration instance
config = Config()
