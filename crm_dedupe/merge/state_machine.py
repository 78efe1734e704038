"""
Duplicate-group merge state machine.

Drives each duplicate group from pending through partially reduced to
merged, one explicit pairwise command at a time:

    pending --merge/remove--> partially_reduced --merge/remove--> merged
       ^                                                            |
       +------------------------- reset ----------------------------+

A group of N members needs N-1 commands; merges are never chained
automatically. All CRM calls happen before the local change is committed,
so a failed or timed-out call leaves the group exactly as it was and the
same command can be retried.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from typing import Any, Optional, Union

from crm_dedupe.api.hubspot_api import HubSpotAPI, HubSpotAPIError
from crm_dedupe.auth.connection_manager import ConnectionManager
from crm_dedupe.export.manager import ExportManager
from crm_dedupe.merge.errors import (
    GroupNotFoundError,
    GroupsPendingError,
    GroupTerminalError,
    InvalidPageError,
    MergeError,
    MergeFailedError,
    PhaseTransitionError,
    RecordNotInGroupError,
    SameRecordError,
)
from crm_dedupe.merge.models import (
    AuditEntry,
    CandidateRecord,
    DuplicateGroup,
    GroupPage,
    GroupState,
    MergeCommand,
    ProcessRun,
    RunPhase,
)
from crm_dedupe.merge.plan import PlanGate
from crm_dedupe.merge.status import ProcessStatusTracker
from crm_dedupe.storage.group_repository import GroupRepository
from crm_dedupe.utils.locks import KeyedLock

# Default number of groups per page
DEFAULT_PAGE_SIZE = 20

# Attempts at applying a reset when another process keeps changing the group
RESET_ATTEMPTS = 3

logger = logging.getLogger(__name__)

ClusterInput = Iterable[Union[CandidateRecord, Mapping[str, Any]]]


class MergeStateMachine:
    """
    Applies merge, remove and reset commands to duplicate groups.

    Every operation takes the acting account explicitly; groups and runs
    owned by another account are reported as not found.

    Attributes:
        repo: Group repository
        connections: Source of valid HubSpot credentials
        api: HubSpot client performing the merges
        tracker: Process status tracker for the runs
        exporter: Writes the export when a run finishes
        plan_gate: Limits how many groups an account may work on

    Usage:
        machine = MergeStateMachine(repo, manager, api, tracker, exporter)

        machine.ingest_run("alice", "import-1", "January import", clusters)
        page = machine.list_groups("alice", "import-1", page=1, page_size=20)
        machine.merge_pair("alice", group.id, MergeCommand("101", "102"))
        reference = machine.finish("alice", "import-1")
    """

    def __init__(
        self,
        repo: GroupRepository,
        connections: ConnectionManager,
        api: HubSpotAPI,
        tracker: ProcessStatusTracker,
        exporter: ExportManager,
        plan_gate: Optional[PlanGate] = None,
    ):
        self.repo = repo
        self.connections = connections
        self.api = api
        self.tracker = tracker
        self.exporter = exporter
        self.plan_gate = plan_gate or PlanGate()
        self._group_locks = KeyedLock()
        self._run_locks = KeyedLock()

    # =========================================================================
    # Lookup helpers
    # =========================================================================

    def _owned_group(
        self, account_id: str, group_id: int
    ) -> tuple[DuplicateGroup, ProcessRun]:
        group = self.repo.find_group(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)
        run = self.repo.find_run(group.run_key)
        if run is None or run.account_id != account_id:
            raise GroupNotFoundError(group_id)
        return group, run

    @staticmethod
    def _require_open(run: ProcessRun) -> None:
        if run.phase != RunPhase.READY_TO_MERGE:
            raise PhaseTransitionError(
                f"Run '{run.run_key}' is {run.phase.value}; groups can only be "
                "changed while it is ready_to_merge"
            )

    # =========================================================================
    # Runs and groups
    # =========================================================================

    def ingest_run(
        self,
        account_id: str,
        run_key: str,
        display_name: str,
        clusters: Iterable[ClusterInput],
    ) -> ProcessRun:
        """
        Create a run from candidate clusters and make it ready for merging.

        Args:
            account_id: Owning account
            run_key: Unique key of the new run
            display_name: Human-readable run name
            clusters: Candidate clusters, each a list of records or dicts

        Returns:
            The run, in the ready_to_merge phase

        Raises:
            ValueError: If a cluster has fewer than two distinct records
            PhaseTransitionError: If the run key is already taken
        """
        if not run_key:
            raise ValueError("A run key is required")

        prepared: list[list[CandidateRecord]] = []
        for index, cluster in enumerate(clusters):
            records = [
                r if isinstance(r, CandidateRecord) else CandidateRecord.from_dict(dict(r))
                for r in cluster
            ]
            ids = [r.record_id for r in records]
            if len(records) < 2 or len(set(ids)) != len(ids):
                raise ValueError(
                    f"Cluster {index} must contain at least two distinct records, "
                    f"got {ids}"
                )
            prepared.append(records)

        self.tracker.start_run(account_id, run_key, display_name)
        groups = self.repo.create_groups(run_key, prepared)
        self.tracker.mark_ready(run_key)

        logger.info(f"Ingested {len(groups)} duplicate groups into run {run_key}")
        return self.tracker.get_run(account_id, run_key)

    def list_groups(
        self,
        account_id: str,
        run_key: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> GroupPage:
        """
        Return one page of a run's groups in creation order.

        Raises:
            InvalidPageError: If page or page_size is not positive
            RunNotFoundError: If the run is missing or owned by another account
        """
        if page < 1 or page_size < 1:
            raise InvalidPageError(
                f"Page and page size must be positive (got page={page}, "
                f"page_size={page_size})"
            )

        self.tracker.get_run(account_id, run_key)
        total = self.repo.count_groups(run_key)
        groups = self.repo.list_groups(run_key, (page - 1) * page_size, page_size)
        return GroupPage(
            groups=groups, page=page, page_size=page_size, total_groups=total
        )

    def get_group(self, account_id: str, group_id: int) -> DuplicateGroup:
        """
        Return one group.

        Raises:
            GroupNotFoundError: If the group is missing or owned by another account
        """
        group, _run = self._owned_group(account_id, group_id)
        return group

    def group_history(self, account_id: str, group_id: int) -> list[AuditEntry]:
        """Return the merge/remove/reset history of a group, oldest first."""
        self._owned_group(account_id, group_id)
        return self.repo.list_audit(group_id)

    # =========================================================================
    # Commands
    # =========================================================================

    def merge_pair(
        self, account_id: str, group_id: int, command: MergeCommand
    ) -> DuplicateGroup:
        """
        Merge one record of a group into another, in HubSpot and locally.

        When ``field_values`` are given they are written to the kept record
        before the merge.

        Returns:
            The updated group

        Raises:
            GroupNotFoundError: If the group is missing or owned by another account
            RecordNotInGroupError: If either record is no longer a member
            SameRecordError: If keep and retire name the same record
            PlanLimitError: If the account may not start another group
            NotConnectedError: If the account has no HubSpot connection
            AuthExchangeError: If refreshing the HubSpot token timed out
            ReconnectRequiredError: If HubSpot refused to refresh the connection
            MergeFailedError: If HubSpot rejected or did not confirm the merge;
                              the group is unchanged
        """
        keep_id = command.keep_record_id
        retire_id = command.retire_record_id

        with self._group_locks.hold(group_id):
            group, run = self._owned_group(account_id, group_id)
            self._require_open(run)

            for record_id in (keep_id, retire_id):
                if not group.has_member(record_id):
                    raise RecordNotInGroupError(group_id, record_id)
            if keep_id == retire_id:
                raise SameRecordError(keep_id)

            if group.state == GroupState.PENDING:
                self.plan_gate.check(
                    account_id, self.repo.count_touched_groups(account_id)
                )

            token = self.connections.get_valid_credential(account_id)

            try:
                if command.field_values:
                    self.api.update_contact(token, keep_id, command.field_values)
                self.api.merge_contacts(token, keep_id, retire_id)
            except HubSpotAPIError as e:
                logger.warning(
                    f"Merge {retire_id} -> {keep_id} in group {group_id} failed: "
                    f"{e.reason}"
                )
                raise MergeFailedError(e.reason) from e

            remaining = [
                replace(m, fields={**m.fields, **command.field_values})
                if m.record_id == keep_id
                else m
                for m in group.members
                if m.record_id != retire_id
            ]
            merged = len(remaining) == 1
            audit = AuditEntry(
                group_id=group_id,
                action="merge",
                keep_record_id=keep_id,
                retire_record_id=retire_id,
                field_values=dict(command.field_values),
            )

            if not self.repo.save_membership(group, remaining, merged, keep_id, audit):
                logger.error(
                    f"Group {group_id} changed while merging {retire_id} -> {keep_id}"
                )
                raise RecordNotInGroupError(group_id, retire_id)

        logger.info(
            f"Merged {retire_id} into {keep_id} (group {group_id}, "
            f"{len(remaining)} member(s) left)"
        )
        return self.repo.get_group(group_id)

    def remove_candidate(
        self, account_id: str, group_id: int, record_id: str
    ) -> DuplicateGroup:
        """
        Drop a record from a group without touching HubSpot.

        When one member remains the group is resolved with that member as
        the retained record.

        Raises:
            GroupNotFoundError: If the group is missing or owned by another account
            RecordNotInGroupError: If the record is not a member
            GroupTerminalError: If the group is already down to one record
        """
        with self._group_locks.hold(group_id):
            group, run = self._owned_group(account_id, group_id)
            self._require_open(run)

            if not group.has_member(record_id):
                raise RecordNotInGroupError(group_id, record_id)
            if group.is_terminal:
                raise GroupTerminalError(group_id)

            remaining = [m for m in group.members if m.record_id != record_id]
            merged = len(remaining) == 1
            retained = remaining[0].record_id if merged else group.retained_record_id
            audit = AuditEntry(
                group_id=group_id, action="remove", retire_record_id=record_id
            )

            if not self.repo.save_membership(group, remaining, merged, retained, audit):
                raise RecordNotInGroupError(group_id, record_id)

        logger.info(f"Removed {record_id} from group {group_id}")
        return self.repo.get_group(group_id)

    def reset_group(self, account_id: str, group_id: int) -> DuplicateGroup:
        """
        Restore a group's original membership.

        Only local state is reset. Merges already performed in HubSpot are
        not undone. Allowed in every run phase, including finished runs.

        Raises:
            GroupNotFoundError: If the group is missing or owned by another account
        """
        with self._group_locks.hold(group_id):
            group, _run = self._owned_group(account_id, group_id)

            audit = AuditEntry(group_id=group_id, action="reset")
            for _attempt in range(RESET_ATTEMPTS):
                if self.repo.save_membership(
                    group, group.original_members, False, None, audit
                ):
                    break
                group = self.repo.get_group(group_id)
            else:
                raise MergeError(f"Group {group_id} is being modified concurrently")

        if group.state != GroupState.PENDING:
            logger.warning(
                f"Group {group_id} reset locally; merges already applied in "
                "HubSpot are not undone"
            )
        return self.repo.get_group(group_id)

    def finish(self, account_id: str, run_key: str) -> str:
        """
        Finish a run once every group is resolved.

        Writes the export, reports usage and moves the run to finished.
        Finishing an already finished run returns its stored reference.

        Returns:
            The export reference

        Raises:
            RunNotFoundError: If the run is missing or owned by another account
            GroupsPendingError: If any group is still unresolved
            PhaseTransitionError: If the run is still importing
        """
        with self._run_locks.hold(run_key):
            run = self.tracker.get_run(account_id, run_key)

            if run.phase == RunPhase.FINISHED:
                logger.debug(f"Run {run_key} already finished")
                return run.export_reference or ""
            if run.phase != RunPhase.READY_TO_MERGE:
                raise PhaseTransitionError(
                    f"Run '{run_key}' is {run.phase.value} and cannot be finished"
                )

            pending = self.repo.count_groups(run_key, merged=False)
            if pending:
                raise GroupsPendingError(run_key, pending)

            groups = self.repo.list_groups(run_key, 0, run.total_groups)
            reference = self.exporter.write_export(run, groups)
            self.plan_gate.report_usage(account_id, run_key, run.processed_groups)
            self.tracker.mark_finished(run_key, reference)

        logger.info(f"Finished run {run_key}: {reference}")
        return reference


def parse_clusters(data: Any) -> Sequence[list[dict[str, Any]]]:
    """
    Extract candidate clusters from loaded JSON/YAML.

    Accepts either a list of clusters or a mapping with a ``groups`` key,
    where each cluster is a list of records or a mapping with ``records``.

    Raises:
        ValueError: If the data does not have that shape
    """
    if isinstance(data, Mapping):
        data = data.get("groups")
    if not isinstance(data, list):
        raise ValueError("Expected a list of clusters or a mapping with 'groups'")

    clusters = []
    for index, cluster in enumerate(data):
        if isinstance(cluster, Mapping):
            cluster = cluster.get("records")
        if not isinstance(cluster, list) or not all(
            isinstance(r, Mapping) for r in cluster
        ):
            raise ValueError(f"Cluster {index} must be a list of records")
        clusters.append([dict(r) for r in cluster])
    return clusters
