"""
Process status tracking for import/merge runs.

Runs move strictly forward: importing -> ready_to_merge -> finished.
A new import of the same data uses a new run key.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from crm_dedupe.merge.errors import PhaseTransitionError, RunNotFoundError
from crm_dedupe.merge.models import PHASE_ORDER, ProcessRun, RunPhase
from crm_dedupe.storage.group_repository import GroupRepository

logger = logging.getLogger(__name__)


@dataclass
class RunStatus:
    """Progress snapshot of a process run."""

    run_key: str
    display_name: str
    phase: RunPhase
    total_groups: int
    merged_groups: int
    export_reference: Optional[str] = None

    @property
    def pending_groups(self) -> int:
        return max(self.total_groups - self.merged_groups, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_key": self.run_key,
            "display_name": self.display_name,
            "phase": self.phase.value,
            "total_groups": self.total_groups,
            "merged_groups": self.merged_groups,
            "pending_groups": self.pending_groups,
            "export_reference": self.export_reference,
        }


class ProcessStatusTracker:
    """
    Persists and reports the phase of process runs.

    Usage:
        tracker = ProcessStatusTracker(repo)
        tracker.start_run("alice", "import-1", "January import")
        tracker.mark_ready("import-1")
        status = tracker.get_status("alice", "import-1")
    """

    def __init__(self, repo: GroupRepository):
        self.repo = repo

    def start_run(self, account_id: str, run_key: str, display_name: str) -> ProcessRun:
        """
        Create a run in the importing phase.

        Raises:
            PhaseTransitionError: If the run key is already taken
        """
        try:
            run = self.repo.create_run(
                run_key, account_id, display_name, RunPhase.IMPORTING
            )
        except ValueError as e:
            raise PhaseTransitionError(
                f"Run '{run_key}' already exists; use a new run key to re-import"
            ) from e
        logger.info(f"Started run {run_key} for {account_id}")
        return run

    def _advance(
        self,
        run_key: str,
        new_phase: RunPhase,
        export_reference: Optional[str] = None,
    ) -> None:
        expected = PHASE_ORDER[PHASE_ORDER.index(new_phase) - 1]
        if not self.repo.update_run_phase(run_key, expected, new_phase, export_reference):
            run = self.repo.get_run(run_key)
            raise PhaseTransitionError(
                f"Run '{run_key}' cannot move from {run.phase.value} to "
                f"{new_phase.value}"
            )
        logger.info(f"Run {run_key} moved to {new_phase.value}")

    def mark_ready(self, run_key: str) -> None:
        """Move a run from importing to ready_to_merge."""
        self._advance(run_key, RunPhase.READY_TO_MERGE)

    def mark_finished(self, run_key: str, export_reference: str) -> None:
        """Move a run from ready_to_merge to finished."""
        self._advance(run_key, RunPhase.FINISHED, export_reference)

    def get_run(self, account_id: str, run_key: str) -> ProcessRun:
        """
        Return a run owned by the account.

        Raises:
            RunNotFoundError: If the run is missing or owned by another account
        """
        run = self.repo.find_run(run_key)
        if run is None or run.account_id != account_id:
            raise RunNotFoundError(run_key)
        return run

    def get_status(self, account_id: str, run_key: str) -> RunStatus:
        """Return a run's progress. Pure read."""
        run = self.get_run(account_id, run_key)
        return RunStatus(
            run_key=run.run_key,
            display_name=run.display_name,
            phase=run.phase,
            total_groups=run.total_groups,
            merged_groups=run.processed_groups,
            export_reference=run.export_reference,
        )

    def list_runs(self, account_id: str) -> list[RunStatus]:
        """Return the status of every run of the account, newest first."""
        runs = self.repo.list_runs(account_id)
        return [self.get_status(account_id, run.run_key) for run in runs]
