"""Configuration manager for named stream sources."""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Optional

from ..models.config import StreamSourceConfig

logger = logging.getLogger(__name__)

STREAMS_FILE = "config_streams.json"


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


class ConfigManager:
    """Thread-safe manager for the stream sources in config_streams.json.

    The file maps a source key to either a URL string or an object with
    ``url`` and an optional ``name``. Keys starting with ``_`` are ignored.
    """

    def __init__(self, config_dir: str = "/config"):
        """Initialize ConfigManager with configuration directory.

        Args:
            config_dir: Path to directory containing configuration files
        """
        self.config_dir = Path(config_dir)
        self._sources: Dict[str, StreamSourceConfig] = {}
        self._config_lock = threading.RLock()
        self._loaded = False

    def load_configurations(self) -> None:
        """Load the stream source file.

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        with self._config_lock:
            try:
                self._sources = self._read_sources()
                self._loaded = True
                logger.info(f"Loaded {len(self._sources)} stream sources")
            except ConfigurationError as e:
                logger.error(f"Failed to load configuration: {e}")
                raise

    def _read_sources(self) -> Dict[str, StreamSourceConfig]:
        streams_file = self.config_dir / STREAMS_FILE
        if not streams_file.exists():
            raise ConfigurationError(f"Stream configuration file not found: {streams_file}")

        try:
            with open(streams_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in stream configuration: {e}")
        except IOError as e:
            raise ConfigurationError(f"Error reading stream configuration file: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError("Stream configuration must be a JSON object")

        sources = {}
        for key, value in data.items():
            if key.startswith('_'):
                continue
            try:
                if isinstance(value, str):
                    sources[key] = StreamSourceConfig(url=value, name=key)
                else:
                    sources[key] = StreamSourceConfig(**value)
            except Exception as e:
                raise ConfigurationError(f"Invalid stream source '{key}': {e}")
        return sources

    def _require_loaded(self) -> None:
        if not self._loaded:
            raise ConfigurationError("Configuration not loaded. Call load_configurations() first.")

    def get_stream_url(self, source_key: str) -> Optional[str]:
        """Get the URL of a named stream source.

        Raises:
            ConfigurationError: If configurations haven't been loaded
        """
        with self._config_lock:
            self._require_loaded()
            source = self._sources.get(source_key)
            return source.url if source else None

    def get_all_sources(self) -> Dict[str, StreamSourceConfig]:
        with self._config_lock:
            self._require_loaded()
            return self._sources.copy()

    def reload_configurations(self) -> None:
        """Reload the stream source file, keeping the old sources on failure."""
        with self._config_lock:
            self._sources = self._read_sources()
            self._loaded = True
            logger.info("Configuration reloaded successfully")

    def is_loaded(self) -> bool:
        with self._config_lock:
            return self._loaded
