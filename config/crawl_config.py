"""Configuration loader for crawl settings."""

import os
import copy
import logging
import yaml
from typing import Dict, Any, List
from pathlib import Path

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIG = {
    'user_agent': 'LeadScopeBot/1.0 (+contact discovery)',
    'fetch': {
        'page_timeout_seconds': 12.0,
        'connect_timeout_seconds': 6.0,
        'max_response_bytes': 1_500_000,
        'max_retries': 1,
        'base_retry_delay': 0.5,
        'max_retry_delay': 4.0,
        'delay_between_requests': 0.4,
    },
    'safety': {
        'max_pages_per_crawl': 50,
        'max_concurrent_crawls': 1,
        'crawl_timeout_seconds': 60.0,
    },
    'discovery': {
        'queue_max_size': 100,
    },
    'runner': {
        'recent_job_window_hours': 24,
        'default_max_depth': 2,
    },
    'schedule': {
        'refresh_day': 1,
        'refresh_hour': 3,
    },
    'extra_skip_paths': [],
}


class CrawlConfig:
    """Crawl configuration manager."""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or self._get_default_config_path()
        self._config = self._load_config()

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path."""
        possible_paths = [
            os.environ.get('CRAWL_CONFIG_PATH'),
            os.path.join(os.getcwd(), 'config', 'crawl_config.yaml'),
            os.path.join(Path(__file__).parent, 'crawl_config.yaml'),
        ]

        for path in possible_paths:
            if path and os.path.exists(path):
                return path

        return os.path.join(Path(__file__).parent, 'crawl_config.yaml')

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or use defaults."""
        config = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}
                config = self._deep_merge(config, file_config)
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load crawl config from {self.config_path}: {e}; using defaults")
        else:
            logger.debug(f"Crawl config file not found at {self.config_path}, using defaults")

        return config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        value = self._config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_user_agent(self) -> str:
        return self.get('user_agent', DEFAULT_CONFIG['user_agent'])

    def get_fetch_settings(self) -> Dict[str, Any]:
        """Per-page fetch settings (timeouts, size cap, retries, politeness delay)."""
        return dict(self.get('fetch', {}))

    def get_safety_settings(self) -> Dict[str, Any]:
        return dict(self.get('safety', {}))

    def get_discovery_queue_size(self) -> int:
        return int(self.get('discovery.queue_max_size', 100))

    def get_recent_job_window_hours(self) -> int:
        return int(self.get('runner.recent_job_window_hours', 24))

    def get_default_max_depth(self) -> int:
        return int(self.get('runner.default_max_depth', 2))

    def get_refresh_schedule(self) -> Dict[str, int]:
        return {
            'day': int(self.get('schedule.refresh_day', 1)),
            'hour': int(self.get('schedule.refresh_hour', 3)),
        }

    def get_extra_skip_paths(self) -> List[str]:
        return list(self.get('extra_skip_paths', []))


_crawl_config = None


def get_crawl_config() -> CrawlConfig:
    """Get the global crawl configuration instance."""
    global _crawl_config
    if _crawl_config is None:
        _crawl_config = CrawlConfig()
    return _crawl_config


def reload_crawl_config(config_path: str = None) -> CrawlConfig:
    """Reload the global crawl configuration."""
    global _crawl_config
    _crawl_config = CrawlConfig(config_path)
    return _crawl_config
