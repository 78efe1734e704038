"""
Token store for HubSpot connections.

Persists one active credential pair per local account, the registry of
local accounts, and the set of consumed authorization state nonces.
Connections are never deleted; deactivation keeps the audit history.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from crm_dedupe.storage.db import Database, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

CONNECTION_COLUMNS = """
    id, account_id, access_token, refresh_token, expires_at, token_type,
    portal_id, hub_domain, account_name, active, last_used_at,
    created_at, updated_at
"""


class StateNonceConsumedError(Exception):
    """Raised when an authorization state nonce has already been used."""

    def __init__(self, nonce: str):
        self.nonce = nonce
        super().__init__(f"State nonce already consumed: {nonce}")


@dataclass
class Connection:
    """
    A stored, refreshable HubSpot credential pair for one local account.

    Attributes:
        id: Row id
        account_id: Owning local account
        access_token: Bearer token presented to HubSpot
        refresh_token: Token exchanged for a new pair on refresh
        expires_at: Absolute UTC expiry of the access token
        token_type: Credential type reported by HubSpot
        portal_id: HubSpot portal (hub) id
        hub_domain: HubSpot account domain
        account_name: Display name of the HubSpot account
        active: False once disconnected or irrecoverably expired
        last_used_at: Last time the credential was handed out
    """

    id: int
    account_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "bearer"
    portal_id: Optional[int] = None
    hub_domain: Optional[str] = None
    account_name: Optional[str] = None
    active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """Return True if the access token expires within ``margin`` of ``now``."""
        now = now or utcnow()
        return now >= self.expires_at - margin

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Connection":
        expires_at = from_db_time(row["expires_at"])
        if expires_at is None:
            raise ValueError(f"Connection {row['id']} has no expiry")
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=expires_at,
            token_type=row["token_type"],
            portal_id=row["portal_id"],
            hub_domain=row["hub_domain"],
            account_name=row["account_name"],
            active=bool(row["active"]),
            last_used_at=from_db_time(row["last_used_at"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )


class TokenStore:
    """
    Persistence for accounts, HubSpot connections and consumed state nonces.

    The store is passed explicitly to whoever needs credentials; there is no
    process-wide token cache.

    Usage:
        store = TokenStore(db)
        store.register_account("alice", "alice@example.com")
        conn = store.create_connection("alice", "at", "rt", expires_at)
        active = store.get_active_connection("alice")
    """

    def __init__(self, db: Database):
        self.db = db

    # =========================================================================
    # Accounts
    # =========================================================================

    def register_account(self, account_id: str, email: Optional[str] = None) -> bool:
        """
        Register a local account.

        Returns:
            True if the account was created, False if it already existed
        """
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO accounts (account_id, email, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id) DO NOTHING
                """,
                (account_id, email, to_db_time(utcnow())),
            )
            return cursor.rowcount > 0

    def account_exists(self, account_id: str) -> bool:
        with self.db.connection() as conn:
            cursor = conn.execute(
                "SELECT 1 FROM accounts WHERE account_id = ?", (account_id,)
            )
            return cursor.fetchone() is not None

    # =========================================================================
    # Connections
    # =========================================================================

    def create_connection(
        self,
        account_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        token_type: str = "bearer",
        account_info: Optional[dict[str, Any]] = None,
        state_nonce: Optional[str] = None,
    ) -> Connection:
        """
        Store a new active connection, deactivating every earlier one.

        Deactivation and insert happen in one transaction so no two active
        credentials exist for the account at any observable instant. When a
        state nonce is given it is consumed in the same transaction.

        Args:
            account_id: Owning local account
            access_token: New access token
            refresh_token: New refresh token
            expires_at: Absolute expiry of the access token
            token_type: Credential type
            account_info: Optional HubSpot account details
                          (portalId, uiDomain/hubDomain, accountName)
            state_nonce: Authorization state nonce to mark as used

        Returns:
            The stored Connection

        Raises:
            StateNonceConsumedError: If the nonce was already used; nothing
                                     is stored
        """
        info = account_info or {}
        now = to_db_time(utcnow())

        with self.db.connection() as conn:
            if state_nonce is not None:
                consumed = conn.execute(
                    """
                    INSERT INTO oauth_states (nonce, account_id, consumed_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(nonce) DO NOTHING
                    """,
                    (state_nonce, account_id, now),
                ).rowcount
                if not consumed:
                    raise StateNonceConsumedError(state_nonce)

            deactivated = conn.execute(
                """
                UPDATE crm_connections SET active = 0, updated_at = ?
                WHERE account_id = ? AND active = 1
                """,
                (now, account_id),
            ).rowcount
            cursor = conn.execute(
                """
                INSERT INTO crm_connections (
                    account_id, access_token, refresh_token, expires_at,
                    token_type, portal_id, hub_domain, account_name,
                    active, last_used_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)
                """,
                (
                    account_id,
                    access_token,
                    refresh_token,
                    to_db_time(expires_at),
                    token_type,
                    info.get("portalId"),
                    info.get("hubDomain") or info.get("uiDomain"),
                    info.get("accountName"),
                    now,
                    now,
                    now,
                ),
            )
            row = conn.execute(
                f"SELECT {CONNECTION_COLUMNS} FROM crm_connections WHERE id = ?",  # nosec B608
                (cursor.lastrowid,),
            ).fetchone()

        if deactivated:
            logger.debug(
                f"Deactivated {deactivated} earlier connection(s) for {account_id}"
            )
        return Connection.from_row(row)

    def get_active_connection(self, account_id: str) -> Optional[Connection]:
        """Return the active connection for an account, or None."""
        with self.db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT {CONNECTION_COLUMNS} FROM crm_connections
                WHERE account_id = ? AND active = 1
                ORDER BY id DESC LIMIT 1
                """,  # nosec B608
                (account_id,),
            ).fetchone()
        return Connection.from_row(row) if row else None

    def list_connections(self, account_id: str) -> list[Connection]:
        """Return every connection ever stored for an account, newest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {CONNECTION_COLUMNS} FROM crm_connections
                WHERE account_id = ?
                ORDER BY id DESC
                """,  # nosec B608
                (account_id,),
            ).fetchall()
        return [Connection.from_row(row) for row in rows]

    def count_active(self, account_id: str) -> int:
        with self.db.connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) FROM crm_connections WHERE account_id = ? AND active = 1",
                (account_id,),
            )
            result: int = cursor.fetchone()[0]
            return result

    def replace_tokens(
        self,
        connection_id: int,
        expected_refresh_token: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> bool:
        """
        Swap in a refreshed credential pair.

        The update only applies while the stored refresh token is still the
        one that was exchanged, so a rotated refresh token is never written
        over by a stale refresh.

        Returns:
            True if the row was updated
        """
        now = to_db_time(utcnow())
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE crm_connections
                SET access_token = ?, refresh_token = ?, expires_at = ?,
                    last_used_at = ?, updated_at = ?
                WHERE id = ? AND refresh_token = ? AND active = 1
                """,
                (
                    access_token,
                    refresh_token,
                    to_db_time(expires_at),
                    now,
                    now,
                    connection_id,
                    expected_refresh_token,
                ),
            )
            return cursor.rowcount > 0

    def touch(self, connection_id: int) -> None:
        """Stamp ``last_used_at`` on a connection."""
        with self.db.connection() as conn:
            conn.execute(
                "UPDATE crm_connections SET last_used_at = ? WHERE id = ?",
                (to_db_time(utcnow()), connection_id),
            )

    def deactivate(self, connection_id: int) -> bool:
        """Deactivate one connection. Returns True if it was active."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE crm_connections SET active = 0, updated_at = ?
                WHERE id = ? AND active = 1
                """,
                (to_db_time(utcnow()), connection_id),
            )
            return cursor.rowcount > 0

    def deactivate_account(self, account_id: str) -> int:
        """Deactivate all active connections of an account. Returns the count."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE crm_connections SET active = 0, updated_at = ?
                WHERE account_id = ? AND active = 1
                """,
                (to_db_time(utcnow()), account_id),
            )
            return cursor.rowcount

    # =========================================================================
    # Authorization state nonces
    # =========================================================================

    def is_state_nonce_consumed(self, nonce: str) -> bool:
        """Return True if a connection was already stored for this nonce."""
        with self.db.connection() as conn:
            cursor = conn.execute(
                "SELECT 1 FROM oauth_states WHERE nonce = ?", (nonce,)
            )
            return cursor.fetchone() is not None
