"""
Plan gate for merge work.

Accounts may be limited in how many duplicate groups they can work on.
The gate is consulted when a group first leaves the pending state and is
told about usage when a run finishes.
"""

import logging
from typing import Optional

from crm_dedupe.merge.errors import PlanLimitError

logger = logging.getLogger(__name__)


class PlanGate:
    """
    Enforces the per-account limit on touched duplicate groups.

    Attributes:
        merge_group_limit: Maximum groups an account may work on, or None
                           for no limit
    """

    def __init__(self, merge_group_limit: Optional[int] = None):
        self.merge_group_limit = merge_group_limit

    def check(self, account_id: str, groups_in_use: int) -> None:
        """
        Ensure the account may start work on one more group.

        Args:
            account_id: Account about to touch a pending group
            groups_in_use: Groups the account has already touched

        Raises:
            PlanLimitError: If one more group would exceed the limit
        """
        if self.merge_group_limit is None:
            return
        if groups_in_use + 1 > self.merge_group_limit:
            logger.warning(
                f"Account {account_id} hit its plan limit of "
                f"{self.merge_group_limit} merge groups"
            )
            raise PlanLimitError(account_id, self.merge_group_limit)

    def report_usage(self, account_id: str, run_key: str, merged_groups: int) -> None:
        """Record the groups resolved by a finished run."""
        logger.info(
            f"Usage for {account_id}: run {run_key} resolved {merged_groups} group(s)"
        )
