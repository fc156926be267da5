"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".taskboard" / "tb.db")
    redis_url: str | None = None
    cache_ttl: int = 300
    stats_cache_ttl: int = 600
    cache_retries: int = 3
    log_level: str = "WARNING"
    default_user: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("TB_DB_PATH"):
            config.db_path = Path(db)

        config.redis_url = os.environ.get("TB_REDIS_URL") or None

        if ttl := os.environ.get("TB_CACHE_TTL"):
            config.cache_ttl = int(ttl)

        if stats_ttl := os.environ.get("TB_STATS_CACHE_TTL"):
            config.stats_cache_ttl = int(stats_ttl)

        if retries := os.environ.get("TB_CACHE_RETRIES"):
            config.cache_retries = int(retries)

        if level := os.environ.get("TB_LOG_LEVEL"):
            config.log_level = level.upper()

        config.default_user = os.environ.get("TB_USER") or None

        return config


def get_config() -> Config:
    return Config.from_env()
