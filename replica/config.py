"""Configuration management for a docsync replica."""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / '.docsync' / 'config.json'


class Config:
    """Manages replica configuration stored in a JSON file."""

    DEFAULT_CONFIG = {
        "server_host": os.environ.get("DOCSYNC_SERVER_HOST", "localhost"),
        "server_port": int(os.environ.get("DOCSYNC_SERVER_PORT", "8000")),
        "api_token": os.environ.get("DOCSYNC_API_TOKEN"),
        "database_path": str(Path.home() / '.docsync' / 'replica.db'),
        "collections": [],
        "conflict_policy": "server-wins",
        "auto_sync_interval": 60,
        "debounce_seconds": 2.0,
        "timeout": 30,
        "max_retries": 3,
        "retry_backoff_multiplier": 2,
    }

    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (typically ~/.docsync/config.json)
        """
        self.config_path = Path(config_path)
        self.data = self._load()

    def _load(self) -> dict:
        """
        Load configuration from file, creating defaults if necessary.

        Returns:
            Configuration dictionary
        """
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            config = self.DEFAULT_CONFIG.copy()
            try:
                with open(self.config_path, 'w') as f:
                    json.dump(config, f, indent=2)
            except IOError as e:
                logger.warning(f"Could not write default config to {self.config_path}: {e}")
            return config

        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            backup_path = self.config_path.with_suffix('.json.bak')
            logger.warning(f"Unreadable config {self.config_path}, backing up to {backup_path}: {e}")
            try:
                shutil.copy(self.config_path, backup_path)
            except OSError as copy_error:
                logger.warning(f"Could not back up config: {copy_error}")
            return self.DEFAULT_CONFIG.copy()

        config = self.DEFAULT_CONFIG.copy()
        config.update(data)
        return config

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_path, 'w') as f:
                json.dump(self.data, f, indent=2)
        except IOError as e:
            logger.warning(f"Could not save config to {self.config_path}: {e}")

    def get_api_token(self) -> Optional[str]:
        return self.data.get('api_token')

    def set_api_token(self, token: str) -> None:
        """
        Set API token and save to file.
        """
        self.data['api_token'] = token
        self.save()

    def get_base_url(self) -> str:
        """
        Get sync server base URL.

        Returns:
            Base URL string (e.g., "http://localhost:8000")
        """
        host = self.data.get('server_host', 'localhost')
        port = self.data.get('server_port', 8000)
        return f"http://{host}:{port}"

    def get_timeout(self) -> float:
        return self.data.get('timeout', 30)

    def get_retry_config(self) -> dict:
        """
        Get retry configuration.

        Returns:
            Dictionary with 'max_retries' and 'retry_backoff_multiplier'
        """
        return {
            'max_retries': self.data.get('max_retries', 3),
            'retry_backoff_multiplier': self.data.get('retry_backoff_multiplier', 2),
        }

    def get_database_path(self) -> str:
        return self.data.get('database_path', self.DEFAULT_CONFIG['database_path'])

    def get_collections(self) -> List[str]:
        return list(self.data.get('collections', []))

    def get_conflict_policy(self) -> str:
        return self.data.get('conflict_policy', 'server-wins')

    def get_auto_sync_interval(self) -> float:
        """Seconds between automatic syncs; 0 disables periodic sync."""
        return float(self.data.get('auto_sync_interval', 60))

    def get_debounce_seconds(self) -> float:
        return float(self.data.get('debounce_seconds', 2.0))
