"""
Errors raised by duplicate-group operations.

Stale-view errors (RecordNotInGroupError, SameRecordError,
GroupNotFoundError) mean the caller should reload the group list rather
than retry. MergeFailedError leaves the group untouched, so the identical
command may be retried. GroupsPendingError is a precondition failure, not
a fatal one.
"""


class MergeError(Exception):
    """Base class for duplicate-group operation failures."""

    pass


class GroupNotFoundError(MergeError):
    """Raised when a group does not exist or belongs to another account."""

    def __init__(self, group_id: int):
        super().__init__(f"Duplicate group {group_id} not found")
        self.group_id = group_id


class RunNotFoundError(MergeError):
    """Raised when a process run does not exist or belongs to another account."""

    def __init__(self, run_key: str):
        super().__init__(f"Process run '{run_key}' not found")
        self.run_key = run_key


class RecordNotInGroupError(MergeError):
    """Raised when a referenced record is no longer a member of the group."""

    def __init__(self, group_id: int, record_id: str):
        super().__init__(f"Record {record_id} is not a member of group {group_id}")
        self.group_id = group_id
        self.record_id = record_id


class SameRecordError(MergeError):
    """Raised when a merge names the same record as kept and retired."""

    def __init__(self, record_id: str):
        super().__init__(f"Cannot merge record {record_id} into itself")
        self.record_id = record_id


class GroupTerminalError(MergeError):
    """Raised when a group is already reduced to a single record."""

    def __init__(self, group_id: int):
        super().__init__(f"Group {group_id} is already resolved to one record")
        self.group_id = group_id


class MergeFailedError(MergeError):
    """Raised when HubSpot rejects or does not confirm a merge."""

    def __init__(self, reason: str):
        super().__init__(f"Merge failed: {reason}")
        self.reason = reason


class GroupsPendingError(MergeError):
    """Raised when a run cannot finish because groups are still unresolved."""

    def __init__(self, run_key: str, pending: int):
        super().__init__(
            f"Run '{run_key}' still has {pending} unresolved duplicate group(s)"
        )
        self.run_key = run_key
        self.pending = pending


class InvalidPageError(MergeError):
    """Raised for a non-positive page number or page size."""

    pass


class PhaseTransitionError(MergeError):
    """Raised when a run would move out of phase order."""

    pass


class PlanLimitError(MergeError):
    """Raised when the account's plan does not permit processing another group."""

    def __init__(self, account_id: str, limit: int):
        super().__init__(
            f"Account {account_id} has reached its plan limit of {limit} merge groups"
        )
        self.account_id = account_id
        self.limit = limit
