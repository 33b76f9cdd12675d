"""Application settings assembled from the environment."""

import os
from typing import Optional
from pydantic import BaseModel, Field

from .database import StoreConfig


class AppSettings(BaseModel):
    """Top-level settings for the API process."""
    service_name: str = Field(default="leadscope-crawler", description="Service name used in log records")
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON log lines instead of colored text")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    store: StoreConfig = Field(default_factory=StoreConfig, description="Store backends")
    crawl_config_path: Optional[str] = Field(default=None, description="YAML file overriding crawl defaults")

    scheduler_enabled: bool = Field(default=False, description="Run the monthly refresh scheduler")
    default_user_id: str = Field(default="demo-user", description="User assumed when no X-User-Id header is sent")
    discovery_queue_max: Optional[int] = Field(default=None, description="Override for the discovery queue bound")

    @classmethod
    def from_env(cls) -> 'AppSettings':
        """Create settings from environment variables."""
        return cls(
            service_name=os.getenv('SERVICE_NAME', 'leadscope-crawler'),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            log_json=os.getenv('LOG_JSON', 'false').lower() in ('1', 'true', 'yes'),
            log_file=os.getenv('LOG_FILE'),
            store=StoreConfig.from_env(),
            crawl_config_path=os.getenv('CRAWL_CONFIG_PATH'),
            scheduler_enabled=os.getenv('SCHEDULER_ENABLED', 'false').lower() in ('1', 'true', 'yes'),
            default_user_id=os.getenv('DEFAULT_USER_ID', 'demo-user'),
            discovery_queue_max=int(os.environ['DISCOVERY_QUEUE_MAX']) if os.getenv('DISCOVERY_QUEUE_MAX') else None
        )
