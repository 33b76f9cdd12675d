"""Storage configuration for the lead crawler.

Describes the primary (PostgreSQL) and fallback (local JSON) backends and
how often the resolver re-probes their health.
"""

import os
import logging
from typing import Optional
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PostgresConfig(BaseModel):
    """PostgreSQL connection configuration."""
    dsn: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    database: str = "leadscope"
    user: str = "leadscope"
    password: str = ""
    min_connections: int = 1
    max_connections: int = 10
    command_timeout: int = 30


class StoreConfig(BaseModel):
    """Store backend configuration."""
    postgres_enabled: bool = Field(default=True, description="Probe PostgreSQL as the primary store")
    postgres: PostgresConfig = Field(default_factory=PostgresConfig, description="PostgreSQL configuration")

    local_dir: str = Field(default=".local-persistence", description="Root directory of the local fallback store")

    health_ttl_seconds: float = Field(default=60.0, description="Seconds a healthy backend is reused without a probe")
    health_timeout_seconds: float = Field(default=5.0, description="Timeout for a single health probe")

    @classmethod
    def from_env(cls) -> 'StoreConfig':
        """Create configuration from environment variables."""
        dsn = os.getenv('DATABASE_URL')
        postgres_config = PostgresConfig(
            dsn=dsn,
            host=os.getenv('POSTGRES_HOST', 'localhost'),
            port=int(os.getenv('POSTGRES_PORT', '5432')),
            database=os.getenv('POSTGRES_DB', 'leadscope'),
            user=os.getenv('POSTGRES_USER', 'leadscope'),
            password=os.getenv('POSTGRES_PASSWORD', ''),
            min_connections=int(os.getenv('POSTGRES_MIN_CONNECTIONS', '1')),
            max_connections=int(os.getenv('POSTGRES_MAX_CONNECTIONS', '10')),
            command_timeout=int(os.getenv('POSTGRES_COMMAND_TIMEOUT', '30'))
        )

        enabled = os.getenv('POSTGRES_ENABLED')
        if enabled is None:
            postgres_enabled = bool(dsn or os.getenv('POSTGRES_HOST'))
        else:
            postgres_enabled = enabled.lower() in ('1', 'true', 'yes')

        if not postgres_enabled:
            logger.info("PostgreSQL not configured, local store will be used")

        return cls(
            postgres_enabled=postgres_enabled,
            postgres=postgres_config,
            local_dir=os.getenv('LOCAL_STORE_DIR', '.local-persistence'),
            health_ttl_seconds=float(os.getenv('STORE_HEALTH_TTL_SECONDS', '60')),
            health_timeout_seconds=float(os.getenv('STORE_HEALTH_TIMEOUT_SECONDS', '5'))
        )


def get_store_config(override: Optional[StoreConfig] = None) -> StoreConfig:
    """Return the given configuration or one built from the environment."""
    return override or StoreConfig.from_env()
