"""SQLite persistence for connections, duplicate groups and process runs."""

from crm_dedupe.storage.db import Database
from crm_dedupe.storage.group_repository import GroupRepository
from crm_dedupe.storage.token_store import Connection, TokenStore

__all__ = ["Connection", "Database", "GroupRepository", "TokenStore"]
