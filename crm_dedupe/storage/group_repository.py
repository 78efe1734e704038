"""
Group repository for duplicate groups, process runs and the merge audit trail.

Membership lists are stored as JSON. Every membership change goes through
``save_membership`` which is a compare-and-set on the group's ``version``,
so concurrent writers cannot both apply a change computed from the same
snapshot.
"""

import json
import logging
import sqlite3
from collections.abc import Iterable, Sequence
from typing import Any, Optional

from crm_dedupe.merge.errors import GroupNotFoundError, RunNotFoundError
from crm_dedupe.merge.models import (
    AuditEntry,
    CandidateRecord,
    DuplicateGroup,
    ProcessRun,
    RunPhase,
)
from crm_dedupe.storage.db import Database, from_db_time, to_db_time, utcnow

logger = logging.getLogger(__name__)

GROUP_COLUMNS = """
    id, run_key, position, original_members, members, merged,
    retained_record_id, version, merged_at, created_at, updated_at
"""


def _dump_members(members: Iterable[CandidateRecord]) -> str:
    return json.dumps([m.to_dict() for m in members], ensure_ascii=False)


def _load_members(raw: str) -> list[CandidateRecord]:
    return [CandidateRecord.from_dict(item) for item in json.loads(raw)]


def _group_from_row(row: sqlite3.Row) -> DuplicateGroup:
    return DuplicateGroup(
        id=row["id"],
        run_key=row["run_key"],
        position=row["position"],
        original_members=_load_members(row["original_members"]),
        members=_load_members(row["members"]),
        merged=bool(row["merged"]),
        retained_record_id=row["retained_record_id"],
        version=row["version"],
        merged_at=from_db_time(row["merged_at"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


class GroupRepository:
    """
    Persistence for process runs, duplicate groups and their audit trail.

    Usage:
        repo = GroupRepository(db)
        repo.create_run("import-1", "alice", "January import", RunPhase.IMPORTING)
        groups = repo.create_groups("import-1", clusters)
        page = repo.list_groups("import-1", offset=0, limit=20)
    """

    def __init__(self, db: Database):
        self.db = db

    # =========================================================================
    # Process Runs
    # =========================================================================

    def create_run(
        self, run_key: str, account_id: str, display_name: str, phase: RunPhase
    ) -> ProcessRun:
        """
        Create a process run.

        Raises:
            ValueError: If a run with this key already exists
        """
        now = to_db_time(utcnow())
        try:
            with self.db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO process_runs (
                        run_key, account_id, display_name, phase,
                        total_groups, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 0, ?, ?)
                    """,
                    (run_key, account_id, display_name, phase.value, now, now),
                )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Process run '{run_key}' already exists") from e
        return self.get_run(run_key)

    def find_run(self, run_key: str) -> Optional[ProcessRun]:
        """Return a run with live processed-group count, or None."""
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT r.run_key, r.account_id, r.display_name, r.phase,
                       r.total_groups, r.export_reference, r.created_at,
                       r.updated_at,
                       (SELECT COUNT(*) FROM duplicate_groups g
                        WHERE g.run_key = r.run_key AND g.merged = 1) AS processed
                FROM process_runs r
                WHERE r.run_key = ?
                """,
                (run_key,),
            ).fetchone()
        if row is None:
            return None
        return ProcessRun(
            run_key=row["run_key"],
            account_id=row["account_id"],
            display_name=row["display_name"],
            phase=RunPhase(row["phase"]),
            total_groups=row["total_groups"],
            processed_groups=row["processed"],
            export_reference=row["export_reference"],
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
        )

    def get_run(self, run_key: str) -> ProcessRun:
        """
        Return a run.

        Raises:
            RunNotFoundError: If the run does not exist
        """
        run = self.find_run(run_key)
        if run is None:
            raise RunNotFoundError(run_key)
        return run

    def list_runs(self, account_id: str) -> list[ProcessRun]:
        """Return all runs of an account, newest first."""
        with self.db.connection() as conn:
            keys = [
                row["run_key"]
                for row in conn.execute(
                    """
                    SELECT run_key FROM process_runs
                    WHERE account_id = ? ORDER BY created_at DESC, run_key
                    """,
                    (account_id,),
                ).fetchall()
            ]
        return [self.get_run(key) for key in keys]

    def update_run_phase(
        self,
        run_key: str,
        expected_phase: RunPhase,
        new_phase: RunPhase,
        export_reference: Optional[str] = None,
    ) -> bool:
        """
        Move a run from ``expected_phase`` to ``new_phase``.

        Returns:
            True if the run was in ``expected_phase`` and was updated
        """
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE process_runs
                SET phase = ?, export_reference = COALESCE(?, export_reference),
                    updated_at = ?
                WHERE run_key = ? AND phase = ?
                """,
                (
                    new_phase.value,
                    export_reference,
                    to_db_time(utcnow()),
                    run_key,
                    expected_phase.value,
                ),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Duplicate Groups
    # =========================================================================

    def create_groups(
        self, run_key: str, clusters: Sequence[Sequence[CandidateRecord]]
    ) -> list[DuplicateGroup]:
        """
        Bulk-insert the candidate clusters of a run, in the given order.

        The run's ``total_groups`` is updated in the same transaction.

        Returns:
            The created groups in creation order
        """
        now = to_db_time(utcnow())
        with self.db.connection() as conn:
            start = conn.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM duplicate_groups "
                "WHERE run_key = ?",
                (run_key,),
            ).fetchone()[0]
            for offset, cluster in enumerate(clusters):
                payload = _dump_members(cluster)
                conn.execute(
                    """
                    INSERT INTO duplicate_groups (
                        run_key, position, original_members, members,
                        merged, version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 0, 0, ?, ?)
                    """,
                    (run_key, start + offset, payload, payload, now, now),
                )
            conn.execute(
                """
                UPDATE process_runs
                SET total_groups = (
                        SELECT COUNT(*) FROM duplicate_groups WHERE run_key = ?
                    ),
                    updated_at = ?
                WHERE run_key = ?
                """,
                (run_key, now, run_key),
            )
            rows = conn.execute(
                f"""
                SELECT {GROUP_COLUMNS} FROM duplicate_groups
                WHERE run_key = ? AND position >= ?
                ORDER BY id
                """,  # nosec B608
                (run_key, start),
            ).fetchall()

        logger.debug(f"Stored {len(rows)} duplicate groups for run {run_key}")
        return [_group_from_row(row) for row in rows]

    def find_group(self, group_id: int) -> Optional[DuplicateGroup]:
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT {GROUP_COLUMNS} FROM duplicate_groups WHERE id = ?",  # nosec B608
                (group_id,),
            ).fetchone()
        return _group_from_row(row) if row else None

    def get_group(self, group_id: int) -> DuplicateGroup:
        """
        Return a group.

        Raises:
            GroupNotFoundError: If the group does not exist
        """
        group = self.find_group(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        return group

    def list_groups(self, run_key: str, offset: int, limit: int) -> list[DuplicateGroup]:
        """Return groups of a run in creation order."""
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {GROUP_COLUMNS} FROM duplicate_groups
                WHERE run_key = ?
                ORDER BY id
                LIMIT ? OFFSET ?
                """,  # nosec B608
                (run_key, limit, offset),
            ).fetchall()
        return [_group_from_row(row) for row in rows]

    def count_groups(self, run_key: str, merged: Optional[bool] = None) -> int:
        """Count a run's groups, optionally only merged or only unmerged ones."""
        sql = "SELECT COUNT(*) FROM duplicate_groups WHERE run_key = ?"
        params: list[Any] = [run_key]
        if merged is not None:
            sql += " AND merged = ?"
            params.append(1 if merged else 0)
        with self.db.connection() as conn:
            result: int = conn.execute(sql, params).fetchone()[0]
            return result

    def count_touched_groups(self, account_id: str) -> int:
        """
        Count groups of an account that have left the pending state.

        A group counts once any member was retired or it was resolved.
        """
        with self.db.connection() as conn:
            result: int = conn.execute(
                """
                SELECT COUNT(*) FROM duplicate_groups g
                JOIN process_runs r ON r.run_key = g.run_key
                WHERE r.account_id = ?
                  AND (g.merged = 1 OR g.members != g.original_members)
                """,
                (account_id,),
            ).fetchone()[0]
            return result

    def save_membership(
        self,
        group: DuplicateGroup,
        members: Sequence[CandidateRecord],
        merged: bool,
        retained_record_id: Optional[str],
        audit: AuditEntry,
    ) -> bool:
        """
        Replace a group's membership if it is unchanged since ``group`` was read.

        The audit row is written in the same transaction.

        Args:
            group: The snapshot the change was computed from
            members: New member list
            merged: New merged flag
            retained_record_id: New retained record id
            audit: Audit entry describing the change

        Returns:
            True if applied, False if another writer changed the group first
        """
        now = utcnow()
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE duplicate_groups
                SET members = ?, merged = ?, retained_record_id = ?,
                    merged_at = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
                    _dump_members(members),
                    1 if merged else 0,
                    retained_record_id,
                    to_db_time(now) if merged else None,
                    to_db_time(now),
                    group.id,
                    group.version,
                ),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                """
                INSERT INTO merge_audit (
                    group_id, action, keep_record_id, retire_record_id,
                    field_values, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    audit.group_id,
                    audit.action,
                    audit.keep_record_id,
                    audit.retire_record_id,
                    json.dumps(audit.field_values, ensure_ascii=False),
                    to_db_time(now),
                ),
            )
        return True

    # =========================================================================
    # Audit Trail
    # =========================================================================

    def list_audit(self, group_id: int) -> list[AuditEntry]:
        """Return a group's history, oldest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT group_id, action, keep_record_id, retire_record_id,
                       field_values, created_at
                FROM merge_audit WHERE group_id = ? ORDER BY id
                """,
                (group_id,),
            ).fetchall()
        return [
            AuditEntry(
                group_id=row["group_id"],
                action=row["action"],
                keep_record_id=row["keep_record_id"],
                retire_record_id=row["retire_record_id"],
                field_values=json.loads(row["field_values"] or "{}"),
                created_at=from_db_time(row["created_at"]),
            )
            for row in rows
        ]
