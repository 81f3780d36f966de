"""Select and open the configured document store backend."""

from __future__ import annotations

import logging

from governance_heartbeat.config import HeartbeatSettings
from governance_heartbeat.store.base import DocumentStore

logger = logging.getLogger(__name__)


def open_store(config: HeartbeatSettings) -> DocumentStore:
    """Open the backend named by `config.store_backend` ("file" or "sql")."""
    if config.store_backend == "file":
        from governance_heartbeat.store.file_store import FileDocumentStore

        logger.info("Opening file document store at %s", config.store_root)
        return FileDocumentStore(config.store_root)

    if config.store_backend == "sql":
        from governance_heartbeat.store.sql_store import SqlDocumentStore

        store = SqlDocumentStore(config.database_url)
        store.initialize()
        logger.info("Opening SQL document store")
        return store

    raise ValueError(f"Unknown store backend: {config.store_backend!r}")
