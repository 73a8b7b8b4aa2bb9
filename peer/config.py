"""Configuration management for relay peers."""

import json
import os
from pathlib import Path
from typing import Optional

from common.constants import (
    CHUNK_WAIT_BACKOFF,
    CHUNK_WAIT_INITIAL_DELAY_SECONDS,
    CHUNK_WAIT_MAX_ATTEMPTS,
    CHUNK_WAIT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_RATE_LIMIT_BYTES,
    HEARTBEAT_INTERVAL_SECONDS,
    HEARTBEAT_MAX_MISSED,
    HEARTBEAT_REPLY_TIMEOUT_SECONDS,
    RECOVERY_ATTEMPTS,
    RECOVERY_DELAY_SECONDS,
    RELAY_CHUNK_SIZE,
)
from common.logging_config import get_logger

logger = get_logger(__name__)


class PeerConfig:
    """Peer settings stored in an optional JSON file, defaults from the environment."""

    DEFAULT_CONFIG = {
        "relay_host": "localhost",
        "relay_port": 3001,
        "relay_url": os.environ.get("RELAY_URL"),
        "timeout": 30,
        "max_retries": 3,
        "retry_backoff_multiplier": 2,
        "max_backoff": 10,
        "max_concurrent": DEFAULT_MAX_CONCURRENT,
        "upload_rate_limit": DEFAULT_RATE_LIMIT_BYTES,
        "download_rate_limit": DEFAULT_RATE_LIMIT_BYTES,
        "chunk_wait_max_attempts": CHUNK_WAIT_MAX_ATTEMPTS,
        "chunk_wait_initial_delay": CHUNK_WAIT_INITIAL_DELAY_SECONDS,
        "chunk_wait_backoff": CHUNK_WAIT_BACKOFF,
        "chunk_wait_max_delay": CHUNK_WAIT_MAX_DELAY_SECONDS,
        "heartbeat_interval": HEARTBEAT_INTERVAL_SECONDS,
        "heartbeat_reply_timeout": HEARTBEAT_REPLY_TIMEOUT_SECONDS,
        "heartbeat_max_missed": HEARTBEAT_MAX_MISSED,
        "recovery_attempts": RECOVERY_ATTEMPTS,
        "recovery_delay": RECOVERY_DELAY_SECONDS,
        "relay_chunk_size": RELAY_CHUNK_SIZE,
        "reject_on_mismatch": False,
    }

    def __init__(self, config_path: Optional[Path] = None, **overrides):
        """
        Initialize configuration.

        Args:
            config_path: Optional path to a JSON file whose keys override the defaults
            **overrides: Values taking precedence over both defaults and file
        """
        self.config_path = config_path
        self.data = self._load()
        self.data.update(overrides)

    def _load(self) -> dict:
        """
        Load configuration from file when one is configured and readable.

        Returns:
            Configuration dictionary
        """
        config = self.DEFAULT_CONFIG.copy()
        if self.config_path is None or not self.config_path.exists():
            return config

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Ignoring unreadable config file {self.config_path}: {e}")
            return config

        config.update(data)
        return config

    def save(self) -> None:
        """
        Save current configuration to file.

        Raises:
            ValueError: If no config path is set
        """
        if self.config_path is None:
            raise ValueError("No config path set")
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w') as f:
            json.dump(self.data, f, indent=2)

    def get(self, key: str, default=None):
        return self.data.get(key, default)

    def get_base_url(self) -> str:
        """
        Get relay base URL.

        Returns:
            Base URL string (e.g., "http://localhost:3001")
        """
        if self.data.get('relay_url'):
            return self.data['relay_url'].rstrip('/')
        host = self.data.get('relay_host', 'localhost')
        port = self.data.get('relay_port', 3001)
        return f"http://{host}:{port}"

    def get_timeout(self) -> float:
        return self.data.get('timeout', 30)

    def get_retry_config(self) -> dict:
        """
        Get retry configuration for network and server errors.

        Returns:
            Dictionary with 'max_retries', 'retry_backoff_multiplier' and 'max_backoff'
        """
        return {
            'max_retries': self.data.get('max_retries', 3),
            'retry_backoff_multiplier': self.data.get('retry_backoff_multiplier', 2),
            'max_backoff': self.data.get('max_backoff', 10),
        }

    def get_chunk_wait_config(self) -> dict:
        """
        Get the retry schedule for chunks not yet uploaded by the sender.

        Returns:
            Dictionary with 'max_attempts', 'initial_delay', 'backoff' and 'max_delay'
        """
        return {
            'max_attempts': self.data.get('chunk_wait_max_attempts', CHUNK_WAIT_MAX_ATTEMPTS),
            'initial_delay': self.data.get('chunk_wait_initial_delay', CHUNK_WAIT_INITIAL_DELAY_SECONDS),
            'backoff': self.data.get('chunk_wait_backoff', CHUNK_WAIT_BACKOFF),
            'max_delay': self.data.get('chunk_wait_max_delay', CHUNK_WAIT_MAX_DELAY_SECONDS),
        }
