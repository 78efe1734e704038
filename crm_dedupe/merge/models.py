"""
Data model for duplicate groups and process runs.

Provides:
- CandidateRecord: one HubSpot contact proposed as a duplicate
- DuplicateGroup: a cluster of candidates being reduced to one record
- MergeCommand: a single pairwise merge request
- ProcessRun: one import/merge session
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class GroupState(str, Enum):
    """Resolution state of a duplicate group."""

    PENDING = "pending"  # untouched, two or more members
    PARTIALLY_REDUCED = "partially_reduced"  # some members retired, more than one left
    MERGED = "merged"  # one member left, terminal


class RunPhase(str, Enum):
    """Phases of a process run, in order."""

    IMPORTING = "importing"
    READY_TO_MERGE = "ready_to_merge"
    FINISHED = "finished"


# Allowed forward transitions between run phases
PHASE_ORDER = [RunPhase.IMPORTING, RunPhase.READY_TO_MERGE, RunPhase.FINISHED]


@dataclass(frozen=True)
class CandidateRecord:
    """
    A HubSpot contact proposed as a member of a duplicate group.

    Attributes:
        record_id: HubSpot object id of the contact
        last_modified: ISO-8601 last-modified timestamp, if known
        fields: Display fields (email, firstname, lastname, phone, company)
    """

    record_id: str
    last_modified: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CandidateRecord:
        """
        Build a record from a plain dictionary.

        Accepts either ``record_id`` or HubSpot's ``id``; display fields may be
        given under ``fields`` or HubSpot's ``properties``.
        """
        record_id = data.get("record_id", data.get("id"))
        if record_id in (None, ""):
            raise ValueError(f"Candidate record has no id: {data!r}")
        fields_ = data.get("fields", data.get("properties")) or {}
        last_modified = data.get("last_modified") or fields_.get("lastmodifieddate")
        return cls(
            record_id=str(record_id),
            last_modified=last_modified,
            fields=dict(fields_),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "last_modified": self.last_modified,
            "fields": dict(self.fields),
        }

    @property
    def display_name(self) -> str:
        parts = [self.fields.get("firstname"), self.fields.get("lastname")]
        name = " ".join(p for p in parts if p)
        return name or self.fields.get("email") or self.record_id


@dataclass
class DuplicateGroup:
    """
    A cluster of candidate records believed to be the same person.

    ``members`` only shrinks, except on reset which restores
    ``original_members``.
    """

    id: int
    run_key: str
    position: int
    original_members: list[CandidateRecord]
    members: list[CandidateRecord]
    merged: bool = False
    retained_record_id: Optional[str] = None
    version: int = 0
    merged_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def member_ids(self) -> list[str]:
        return [m.record_id for m in self.members]

    def has_member(self, record_id: str) -> bool:
        return record_id in self.member_ids

    @property
    def is_terminal(self) -> bool:
        return self.merged or len(self.members) <= 1

    @property
    def state(self) -> GroupState:
        if self.is_terminal:
            return GroupState.MERGED
        if len(self.members) < len(self.original_members):
            return GroupState.PARTIALLY_REDUCED
        return GroupState.PENDING

    @property
    def merges_remaining(self) -> int:
        """Pairwise merges still needed to reach a single record."""
        return max(len(self.members) - 1, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_key": self.run_key,
            "state": self.state.value,
            "merged": self.merged,
            "retained_record_id": self.retained_record_id,
            "members": [m.to_dict() for m in self.members],
            "original_members": [m.to_dict() for m in self.original_members],
        }


@dataclass(frozen=True)
class MergeCommand:
    """
    One pairwise merge: fold ``retire_record_id`` into ``keep_record_id``.

    Attributes:
        keep_record_id: Record that survives
        retire_record_id: Record that is merged away
        field_values: HubSpot property values applied to the kept record
    """

    keep_record_id: str
    retire_record_id: str
    field_values: dict[str, Any] = field(default_factory=dict)


@dataclass
class GroupPage:
    """One page of duplicate groups."""

    groups: list[DuplicateGroup]
    page: int
    page_size: int
    total_groups: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_groups / self.page_size) if self.total_groups else 0


@dataclass
class ProcessRun:
    """
    One end-to-end import/resolve session.

    ``processed_groups`` is filled from live group data when the run is read.
    """

    run_key: str
    account_id: str
    display_name: str
    phase: RunPhase
    total_groups: int = 0
    processed_groups: int = 0
    export_reference: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class AuditEntry:
    """One row of a group's merge/remove/reset history."""

    group_id: int
    action: str
    keep_record_id: Optional[str] = None
    retire_record_id: Optional[str] = None
    field_values: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
