"""
crm_dedupe.merge - Duplicate-group merge module

State machine, status tracking and plan gate for resolving duplicate
HubSpot contacts one pairwise merge at a time.
"""

from crm_dedupe.merge.errors import (
    GroupNotFoundError,
    GroupsPendingError,
    GroupTerminalError,
    InvalidPageError,
    MergeError,
    MergeFailedError,
    PhaseTransitionError,
    PlanLimitError,
    RecordNotInGroupError,
    RunNotFoundError,
    SameRecordError,
)
from crm_dedupe.merge.models import (
    CandidateRecord,
    DuplicateGroup,
    GroupPage,
    GroupState,
    MergeCommand,
    ProcessRun,
    RunPhase,
)

__all__ = [
    "CandidateRecord",
    "DuplicateGroup",
    "GroupNotFoundError",
    "GroupPage",
    "GroupState",
    "GroupTerminalError",
    "GroupsPendingError",
    "InvalidPageError",
    "MergeCommand",
    "MergeError",
    "MergeFailedError",
    "PhaseTransitionError",
    "PlanLimitError",
    "ProcessRun",
    "RecordNotInGroupError",
    "RunNotFoundError",
    "RunPhase",
    "SameRecordError",
]
