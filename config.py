"""
Runtime settings

Everything is read from environment variables. Nothing here talks to the
storage medium; database.open_medium() decides which backend to build from
these values.
"""
import os
from typing import List, Optional

from pydantic import BaseModel, Field


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


class Settings(BaseModel):
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: Optional[str] = Field(None, description="MongoDB database name")
    storage_path: Optional[str] = Field(None, description="JSON file used when MongoDB is not configured")
    key_prefix: str = Field("schub_", description="Prefix for every key written to the medium")
    local_hosts: List[str] = Field(default_factory=list, description="Extra hostnames treated as local/dev")
    demo_password: str = Field("password", description="Password accepted for the demo accounts")
    session_max_age: int = Field(60 * 60 * 24 * 30, description="Lifetime of the session cookie in seconds")
    session_cache_size: int = Field(256, ge=1, description="Resolvers kept in memory, least recently used dropped first")
    run_startup_seed: bool = True
    log_level: str = "INFO"
    port: int = 8000


def load_settings() -> Settings:
    local_hosts = [h.strip().lower() for h in os.getenv("SCHUB_LOCAL_HOSTS", "").split(",") if h.strip()]
    return Settings(
        database_url=os.getenv("DATABASE_URL") or None,
        database_name=os.getenv("DATABASE_NAME") or None,
        storage_path=os.getenv("SCHUB_STORAGE_PATH") or None,
        key_prefix=os.getenv("SCHUB_KEY_PREFIX", "schub_"),
        local_hosts=local_hosts,
        demo_password=os.getenv("SCHUB_DEMO_PASSWORD", "password"),
        session_max_age=int(os.getenv("SCHUB_SESSION_MAX_AGE", 60 * 60 * 24 * 30)),
        session_cache_size=int(os.getenv("SCHUB_SESSION_CACHE_SIZE", 256)),
        run_startup_seed=_flag("RUN_STARTUP_SEED", "1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        port=int(os.getenv("PORT", 8000)),
    )
