"""
Service boundary for crm_dedupe.

Wires the token store, connection manager, merge state machine and status
tracker together and exposes their operations as plain dictionaries, ready
to be printed by the CLI or serialized by a web layer.
"""

import logging
import sqlite3
from collections.abc import Iterable
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from crm_dedupe.api.hubspot_api import HubSpotAPI
from crm_dedupe.auth.connection_manager import ConnectionManager
from crm_dedupe.auth.errors import ConnectionLifecycleError
from crm_dedupe.auth.state import StateSigner
from crm_dedupe.config.loader import ConfigError
from crm_dedupe.config.settings import Settings
from crm_dedupe.export.manager import ExportManager
from crm_dedupe.merge.models import DuplicateGroup, MergeCommand, ProcessRun
from crm_dedupe.merge.plan import PlanGate
from crm_dedupe.merge.state_machine import ClusterInput, MergeStateMachine
from crm_dedupe.merge.status import ProcessStatusTracker
from crm_dedupe.storage.db import Database
from crm_dedupe.storage.group_repository import GroupRepository
from crm_dedupe.storage.token_store import TokenStore

logger = logging.getLogger(__name__)


def _run_to_dict(run: ProcessRun) -> dict[str, Any]:
    return {
        "run_key": run.run_key,
        "display_name": run.display_name,
        "phase": run.phase.value,
        "total_groups": run.total_groups,
        "merged_groups": run.processed_groups,
        "export_reference": run.export_reference,
    }


def _group_to_dict(group: DuplicateGroup) -> dict[str, Any]:
    data = group.to_dict()
    data["merges_remaining"] = group.merges_remaining
    return data


class DedupeService:
    """
    Boundary operations of the duplicate-merge tool.

    Usage:
        service = DedupeService.from_settings(settings)

        service.register_account("alice", "alice@example.com")
        url = service.authorize("alice")["url"]
        service.callback(code, state)

        service.ingest_run("alice", "import-1", "January import", clusters)
        service.merge_pair("alice", group_id, keep="101", retire="102")
        service.finish_run("alice", "import-1")
    """

    def __init__(
        self,
        db: Database,
        store: TokenStore,
        connections: ConnectionManager,
        machine: MergeStateMachine,
        tracker: ProcessStatusTracker,
        api: HubSpotAPI,
        default_page_size: int = 20,
    ):
        self.db = db
        self.store = store
        self.connections = connections
        self.machine = machine
        self.tracker = tracker
        self.api = api
        self.default_page_size = default_page_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "DedupeService":
        """
        Build a service from settings, initializing the database.

        Raises:
            ConfigError: If no secret for signing OAuth state is configured
        """
        if not settings.signing_secret:
            raise ConfigError(
                "No signing secret configured: set hubspot_client_secret or "
                "state_secret (or CRM_DEDUPE_CLIENT_SECRET / CRM_DEDUPE_STATE_SECRET)"
            )

        if settings.db_path != ":memory:":
            Path(settings.db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        db = Database(settings.db_path)
        db.initialize()

        api = HubSpotAPI(
            client_id=settings.hubspot_client_id,
            client_secret=settings.hubspot_client_secret,
            redirect_uri=settings.hubspot_redirect_uri,
            scopes=settings.hubspot_scopes,
            timeout=settings.api_timeout,
            max_retries=settings.api_max_retries,
            initial_retry_delay=settings.api_initial_retry_delay,
            max_retry_delay=settings.api_max_retry_delay,
            page_size=settings.api_page_size,
        )
        store = TokenStore(db)
        connections = ConnectionManager(
            store,
            api,
            StateSigner(settings.signing_secret, settings.state_max_age),
            refresh_margin=timedelta(seconds=settings.refresh_margin),
        )
        repo = GroupRepository(db)
        tracker = ProcessStatusTracker(repo)
        machine = MergeStateMachine(
            repo,
            connections,
            api,
            tracker,
            ExportManager(Path(settings.export_dir)),
            PlanGate(settings.merge_group_limit),
        )
        return cls(
            db,
            store,
            connections,
            machine,
            tracker,
            api,
            default_page_size=settings.default_page_size,
        )

    def close(self) -> None:
        self.db.close()

    # =========================================================================
    # Accounts and connections
    # =========================================================================

    def register_account(
        self, account_id: str, email: Optional[str] = None
    ) -> dict[str, Any]:
        if not account_id:
            raise ValueError("An account id is required")
        created = self.store.register_account(account_id, email)
        return {"account_id": account_id, "created": created}

    def authorize(self, account_id: str) -> dict[str, Any]:
        """Start the HubSpot consent flow; returns the URL to open."""
        request = self.connections.begin_authorization(account_id)
        return {"account_id": account_id, "url": request.url, "state": request.state}

    def callback(
        self, code: str, state: str, error: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Handle the OAuth redirect.

        Never raises: failures are reported as ``{"status": "error"}``.
        """
        if error:
            logger.warning(f"HubSpot authorization was not granted: {error}")
            return {"status": "error", "reason": f"Authorization denied: {error}"}

        try:
            connection = self.connections.complete_authorization(code, state)
        except ConnectionLifecycleError as e:
            logger.warning(f"OAuth callback rejected: {e}")
            return {"status": "error", "reason": str(e)}
        except sqlite3.Error as e:
            logger.error(f"OAuth callback could not store the connection: {e}")
            return {"status": "error", "reason": "Could not store the connection"}

        return {
            "status": "success",
            "account": {
                "account_id": connection.account_id,
                "portal_id": connection.portal_id,
                "hub_domain": connection.hub_domain,
                "account_name": connection.account_name,
            },
        }

    def connection_status(self, account_id: str) -> dict[str, Any]:
        return self.connections.get_status(account_id).to_dict()

    def disconnect(self, account_id: str) -> dict[str, Any]:
        return {"disconnected": self.connections.disconnect(account_id)}

    def connection_history(self, account_id: str) -> list[dict[str, Any]]:
        return [
            {
                "id": c.id,
                "active": c.active,
                "portal_id": c.portal_id,
                "account_name": c.account_name,
                "created_at": c.created_at.isoformat() if c.created_at else None,
            }
            for c in self.connections.connection_history(account_id)
        ]

    def fetch_contacts(self, account_id: str) -> list[dict[str, Any]]:
        """List the account's HubSpot contacts using a valid credential."""
        token = self.connections.get_valid_credential(account_id)
        return self.api.list_contacts(token)

    # =========================================================================
    # Runs and groups
    # =========================================================================

    def ingest_run(
        self,
        account_id: str,
        run_key: str,
        display_name: str,
        clusters: Iterable[ClusterInput],
    ) -> dict[str, Any]:
        run = self.machine.ingest_run(account_id, run_key, display_name, clusters)
        return _run_to_dict(run)

    def duplicate_groups(
        self,
        account_id: str,
        run_key: str,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> dict[str, Any]:
        result = self.machine.list_groups(
            account_id, run_key, page, page_size or self.default_page_size
        )
        return {
            "run_key": run_key,
            "page": result.page,
            "page_size": result.page_size,
            "total_groups": result.total_groups,
            "total_pages": result.total_pages,
            "groups": [_group_to_dict(g) for g in result.groups],
        }

    def merge_pair(
        self,
        account_id: str,
        group_id: int,
        keep: str,
        retire: str,
        field_values: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        command = MergeCommand(keep, retire, dict(field_values or {}))
        return _group_to_dict(self.machine.merge_pair(account_id, group_id, command))

    def remove_candidate(
        self, account_id: str, group_id: int, record_id: str
    ) -> dict[str, Any]:
        return _group_to_dict(
            self.machine.remove_candidate(account_id, group_id, record_id)
        )

    def reset_group(self, account_id: str, group_id: int) -> dict[str, Any]:
        return _group_to_dict(self.machine.reset_group(account_id, group_id))

    def group_history(self, account_id: str, group_id: int) -> list[dict[str, Any]]:
        return [
            {
                "action": entry.action,
                "keep_record_id": entry.keep_record_id,
                "retire_record_id": entry.retire_record_id,
                "field_values": entry.field_values,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in self.machine.group_history(account_id, group_id)
        ]

    def finish_run(self, account_id: str, run_key: str) -> dict[str, Any]:
        reference = self.machine.finish(account_id, run_key)
        return {"run_key": run_key, "export_reference": reference}

    def run_status(self, account_id: str, run_key: str) -> dict[str, Any]:
        return self.tracker.get_status(account_id, run_key).to_dict()

    def list_runs(self, account_id: str) -> list[dict[str, Any]]:
        return [status.to_dict() for status in self.tracker.list_runs(account_id)]
