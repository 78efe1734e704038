"""
Tests for the storage module.

Tests the database schema, the token store and the group repository using
in-memory and temporary-file SQLite databases.
"""

import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from crm_dedupe.merge.errors import GroupNotFoundError, RunNotFoundError
from crm_dedupe.merge.models import AuditEntry, CandidateRecord, RunPhase
from crm_dedupe.storage.db import Database, from_db_time, to_db_time
from crm_dedupe.storage.token_store import (
    Connection,
    StateNonceConsumedError,
    TokenStore,
)

EXPIRES = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)


def records(*ids):
    return [CandidateRecord(record_id=i, fields={"email": f"{i}@example.com"}) for i in ids]


class TestDatabaseInitialization:
    """Tests for Database setup."""

    def test_initialize_creates_tables(self, db):
        """Test that all tables exist after initialize."""
        with db.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table'"
                )
            }
        assert {
            "accounts",
            "crm_connections",
            "oauth_states",
            "process_runs",
            "duplicate_groups",
            "merge_audit",
        } <= names

    def test_initialize_is_idempotent(self, db):
        """Test initialize can run twice."""
        db.initialize()

    def test_file_database_persists(self, tmp_path):
        """Test a file database keeps data across instances."""
        path = str(tmp_path / "dedupe.db")
        first = Database(path)
        first.initialize()
        with first.connection() as conn:
            conn.execute(
                "INSERT INTO accounts (account_id, created_at) VALUES ('a', 'now')"
            )

        second = Database(path)
        with second.connection() as conn:
            row = conn.execute("SELECT account_id FROM accounts").fetchone()
        assert row["account_id"] == "a"

    def test_connection_rolls_back_on_error(self, db):
        """Test a failing unit of work leaves nothing behind."""
        with pytest.raises(RuntimeError):
            with db.connection() as conn:
                conn.execute(
                    "INSERT INTO accounts (account_id, created_at) VALUES ('a', 'now')"
                )
                raise RuntimeError("boom")

        with db.connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
        assert count == 0


class TestTimestampHandling:
    """Tests for timestamp conversion helpers."""

    def test_round_trip_keeps_utc(self):
        """Test aware datetimes survive storage."""
        assert from_db_time(to_db_time(EXPIRES)) == EXPIRES

    def test_naive_datetime_taken_as_utc(self):
        """Test naive datetimes are treated as UTC."""
        naive = datetime(2024, 1, 20, 12, 0)
        assert from_db_time(to_db_time(naive)) == EXPIRES

    def test_none_passthrough(self):
        """Test None maps to None both ways."""
        assert to_db_time(None) is None
        assert from_db_time(None) is None


class TestAccounts:
    """Tests for account registration."""

    def test_register_new_account(self, store):
        """Test registering an account returns True."""
        assert store.register_account("alice", "alice@example.com") is True
        assert store.account_exists("alice")

    def test_register_existing_account(self, store):
        """Test registering twice returns False."""
        store.register_account("alice")
        assert store.register_account("alice") is False

    def test_unknown_account(self, store):
        """Test account_exists for an unknown account."""
        assert store.account_exists("nobody") is False


class TestConnections:
    """Tests for connection storage."""

    @pytest.fixture(autouse=True)
    def account(self, store):
        store.register_account("alice")

    def test_create_connection(self, store):
        """Test a new connection is active and readable."""
        conn = store.create_connection(
            "alice",
            "at-1",
            "rt-1",
            EXPIRES,
            account_info={"portalId": 123, "uiDomain": "app.hubspot.com", "accountName": "Acme"},
        )

        assert conn.active is True
        assert conn.portal_id == 123
        assert conn.hub_domain == "app.hubspot.com"
        assert conn.account_name == "Acme"
        assert conn.expires_at == EXPIRES

        active = store.get_active_connection("alice")
        assert active is not None
        assert active.id == conn.id
        assert active.access_token == "at-1"

    def test_new_connection_deactivates_old(self, store):
        """Test reconnecting leaves exactly one active connection."""
        first = store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        second = store.create_connection("alice", "at-2", "rt-2", EXPIRES)

        assert store.count_active("alice") == 1
        assert store.get_active_connection("alice").id == second.id

        history = store.list_connections("alice")
        assert [c.id for c in history] == [second.id, first.id]
        assert history[1].active is False

    def test_second_active_row_rejected_by_schema(self, store, db):
        """Test the unique index forbids two active rows."""
        store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        with pytest.raises(sqlite3.IntegrityError):
            with db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO crm_connections (
                        account_id, access_token, refresh_token, expires_at,
                        active, created_at, updated_at
                    ) VALUES ('alice', 'x', 'y', 'z', 1, 'n', 'n')
                    """
                )

    def test_no_active_connection(self, store):
        """Test None is returned when nothing is connected."""
        assert store.get_active_connection("alice") is None

    def test_row_without_expiry_rejected(self):
        """Test a connection row must carry an expiry."""
        with pytest.raises(ValueError, match="no expiry"):
            Connection.from_row({"id": 9, "expires_at": ""})

    def test_replace_tokens_with_matching_refresh_token(self, store):
        """Test a guarded refresh update applies."""
        conn = store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        later = EXPIRES + timedelta(hours=1)

        assert store.replace_tokens(conn.id, "rt-1", "at-2", "rt-2", later) is True

        active = store.get_active_connection("alice")
        assert active.access_token == "at-2"
        assert active.refresh_token == "rt-2"
        assert active.expires_at == later

    def test_replace_tokens_with_stale_refresh_token(self, store):
        """Test a refresh based on a rotated token is rejected."""
        conn = store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        store.replace_tokens(conn.id, "rt-1", "at-2", "rt-2", EXPIRES)

        assert store.replace_tokens(conn.id, "rt-1", "at-3", "rt-3", EXPIRES) is False
        assert store.get_active_connection("alice").refresh_token == "rt-2"

    def test_replace_tokens_on_inactive_connection(self, store):
        """Test a deactivated connection is never refreshed."""
        conn = store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        store.deactivate(conn.id)

        assert store.replace_tokens(conn.id, "rt-1", "at-2", "rt-2", EXPIRES) is False

    def test_touch_sets_last_used(self, store):
        """Test touch stamps last_used_at."""
        conn = store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        store.touch(conn.id)
        assert store.get_active_connection("alice").last_used_at is not None

    def test_deactivate_account(self, store):
        """Test deactivating an account is idempotent."""
        store.create_connection("alice", "at-1", "rt-1", EXPIRES)

        assert store.deactivate_account("alice") == 1
        assert store.deactivate_account("alice") == 0
        assert store.get_active_connection("alice") is None
        assert len(store.list_connections("alice")) == 1

    def test_expires_within(self, store):
        """Test the expiry window check."""
        conn = store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        margin = timedelta(minutes=5)

        assert not conn.expires_within(margin, now=EXPIRES - timedelta(minutes=6))
        assert conn.expires_within(margin, now=EXPIRES - timedelta(minutes=5))
        assert conn.expires_within(margin, now=EXPIRES + timedelta(minutes=1))


class TestStateNonces:
    """Tests for single-use authorization state nonces."""

    @pytest.fixture(autouse=True)
    def account(self, store):
        store.register_account("alice")

    def test_unused_nonce(self, store):
        assert store.is_state_nonce_consumed("n1") is False

    def test_storing_connection_consumes_nonce(self, store):
        """Test the nonce is marked used together with the new connection."""
        store.create_connection("alice", "at-1", "rt-1", EXPIRES, state_nonce="n1")

        assert store.is_state_nonce_consumed("n1") is True

    def test_reused_nonce_stores_nothing(self, store):
        """Test a second connection for the same nonce is rejected as a whole."""
        first = store.create_connection(
            "alice", "at-1", "rt-1", EXPIRES, state_nonce="n1"
        )

        with pytest.raises(StateNonceConsumedError):
            store.create_connection("alice", "at-2", "rt-2", EXPIRES, state_nonce="n1")

        assert store.get_active_connection("alice").id == first.id
        assert len(store.list_connections("alice")) == 1

    def test_connection_without_nonce(self, store):
        store.create_connection("alice", "at-1", "rt-1", EXPIRES)
        assert store.is_state_nonce_consumed("n1") is False


class TestConcurrentConnections:
    """Tests for the one-active-connection rule across threads."""

    def test_interleaved_connect_and_disconnect(self, tmp_path):
        """Test concurrent reconnects and disconnects never leave two active rows."""
        db = Database(str(tmp_path / "dedupe.db"))
        db.initialize()
        store = TokenStore(db)
        store.register_account("alice")
        errors = []
        active_counts = []

        def worker(index):
            try:
                for round_number in range(10):
                    if (index + round_number) % 3 == 0:
                        store.deactivate_account("alice")
                    else:
                        store.create_connection(
                            "alice",
                            f"at-{index}-{round_number}",
                            f"rt-{index}-{round_number}",
                            EXPIRES,
                            state_nonce=f"n-{index}-{round_number}",
                        )
                    active_counts.append(store.count_active("alice"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert max(active_counts) <= 1
        assert store.count_active("alice") <= 1
        assert len(store.list_connections("alice")) == 40


class TestProcessRuns:
    """Tests for process run persistence."""

    def test_create_and_get_run(self, repo):
        """Test a created run can be read back."""
        run = repo.create_run("r1", "alice", "January", RunPhase.IMPORTING)

        assert run.run_key == "r1"
        assert run.account_id == "alice"
        assert run.phase == RunPhase.IMPORTING
        assert run.total_groups == 0
        assert run.processed_groups == 0

    def test_duplicate_run_key(self, repo):
        """Test run keys are unique."""
        repo.create_run("r1", "alice", "January", RunPhase.IMPORTING)
        with pytest.raises(ValueError, match="already exists"):
            repo.create_run("r1", "alice", "Again", RunPhase.IMPORTING)

    def test_get_missing_run(self, repo):
        """Test a missing run raises RunNotFoundError."""
        assert repo.find_run("missing") is None
        with pytest.raises(RunNotFoundError):
            repo.get_run("missing")

    def test_update_run_phase_guarded(self, repo):
        """Test phase updates only apply from the expected phase."""
        repo.create_run("r1", "alice", "January", RunPhase.IMPORTING)

        assert repo.update_run_phase("r1", RunPhase.READY_TO_MERGE, RunPhase.FINISHED) is False
        assert repo.update_run_phase("r1", RunPhase.IMPORTING, RunPhase.READY_TO_MERGE) is True
        assert repo.get_run("r1").phase == RunPhase.READY_TO_MERGE

    def test_export_reference_stored(self, repo):
        """Test the export reference is saved with the final phase."""
        repo.create_run("r1", "alice", "January", RunPhase.READY_TO_MERGE)
        repo.update_run_phase(
            "r1", RunPhase.READY_TO_MERGE, RunPhase.FINISHED, "/tmp/export.json"
        )
        assert repo.get_run("r1").export_reference == "/tmp/export.json"

    def test_list_runs_by_account(self, repo):
        """Test runs are listed per account."""
        repo.create_run("r1", "alice", "A", RunPhase.IMPORTING)
        repo.create_run("r2", "bob", "B", RunPhase.IMPORTING)

        assert [r.run_key for r in repo.list_runs("alice")] == ["r1"]


class TestDuplicateGroups:
    """Tests for duplicate group persistence."""

    @pytest.fixture
    def groups(self, repo):
        repo.create_run("r1", "alice", "January", RunPhase.IMPORTING)
        return repo.create_groups(
            "r1", [records("1", "2"), records("3", "4", "5"), records("6", "7")]
        )

    def test_create_groups_in_order(self, groups, repo):
        """Test groups keep creation order and update the run total."""
        assert [g.member_ids for g in groups] == [["1", "2"], ["3", "4", "5"], ["6", "7"]]
        assert [g.position for g in groups] == [0, 1, 2]
        assert repo.get_run("r1").total_groups == 3

    def test_new_group_state(self, groups):
        """Test a fresh group is pending with version 0."""
        group = groups[1]
        assert group.merged is False
        assert group.retained_record_id is None
        assert group.version == 0
        assert group.original_members == group.members
        assert group.members[0].fields["email"] == "3@example.com"

    def test_list_groups_paging(self, groups, repo):
        """Test offset/limit paging."""
        page = repo.list_groups("r1", offset=1, limit=1)
        assert [g.id for g in page] == [groups[1].id]

    def test_count_groups(self, groups, repo):
        """Test counting all and unmerged groups."""
        assert repo.count_groups("r1") == 3
        assert repo.count_groups("r1", merged=False) == 3
        assert repo.count_groups("r1", merged=True) == 0

    def test_get_missing_group(self, repo):
        """Test a missing group raises GroupNotFoundError."""
        with pytest.raises(GroupNotFoundError):
            repo.get_group(999)

    def test_save_membership_applies_and_audits(self, groups, repo):
        """Test a membership change bumps the version and writes audit."""
        group = groups[0]
        audit = AuditEntry(
            group_id=group.id,
            action="merge",
            keep_record_id="1",
            retire_record_id="2",
            field_values={"phone": "555"},
        )

        assert repo.save_membership(group, group.members[:1], True, "1", audit) is True

        saved = repo.get_group(group.id)
        assert saved.member_ids == ["1"]
        assert saved.merged is True
        assert saved.retained_record_id == "1"
        assert saved.version == 1
        assert saved.merged_at is not None
        assert [m.record_id for m in saved.original_members] == ["1", "2"]

        history = repo.list_audit(group.id)
        assert len(history) == 1
        assert history[0].action == "merge"
        assert history[0].field_values == {"phone": "555"}

    def test_save_membership_with_stale_version(self, groups, repo):
        """Test a change computed from an old snapshot is rejected."""
        group = groups[0]
        audit = AuditEntry(group_id=group.id, action="remove", retire_record_id="2")
        repo.save_membership(group, group.members[:1], True, "1", audit)

        assert repo.save_membership(group, group.members[1:], True, "2", audit) is False
        assert repo.get_group(group.id).member_ids == ["1"]
        assert len(repo.list_audit(group.id)) == 1

    def test_processed_groups_counts_merged(self, groups, repo):
        """Test the run's processed count follows merged groups."""
        group = groups[0]
        audit = AuditEntry(group_id=group.id, action="remove", retire_record_id="2")
        repo.save_membership(group, group.members[:1], True, "1", audit)

        assert repo.get_run("r1").processed_groups == 1

    def test_count_touched_groups(self, groups, repo):
        """Test partially reduced and merged groups count as touched."""
        assert repo.count_touched_groups("alice") == 0

        partial = groups[1]
        audit = AuditEntry(group_id=partial.id, action="remove", retire_record_id="5")
        repo.save_membership(partial, partial.members[:2], False, None, audit)

        assert repo.count_touched_groups("alice") == 1
        assert repo.count_touched_groups("bob") == 0
