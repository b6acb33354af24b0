"""
Storage backends for the Entitlements Service.
"""

from shared.config import EntitlementsConfig
from .base import EntitlementStore
from .memory import MemoryStore
from .postgres import PostgresStore
from .redis_store import RedisStore


def create_store(config: EntitlementsConfig) -> EntitlementStore:
    """Build the backend named by ``config.storage_backend``."""
    if config.storage_backend == "redis":
        return RedisStore(config.redis_url, config.redis_key_prefix)
    if config.storage_backend == "postgres":
        return PostgresStore(config.postgres_dsn)
    return MemoryStore()


__all__ = ["EntitlementStore", "MemoryStore", "PostgresStore", "RedisStore", "create_store"]
