"""
Explicit per-user session context.

Carries the user's identity into every ledger and orchestrator call. The
cached balance is for display only; no decrement is ever decided from it.
"""

from dataclasses import dataclass
from typing import Optional

from .pricing import PlanTier


@dataclass
class Session:
    """Identity and last-observed wallet state of one interactive user."""
    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    cached_balance: Optional[int] = None
    cached_plan: Optional[PlanTier] = None

    def __post_init__(self):
        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

    def remember(self, balance: int, plan: Optional[PlanTier] = None) -> None:
        self.cached_balance = balance
        if plan is not None:
            self.cached_plan = plan

    def invalidate(self) -> None:
        """Forget the cached balance after any mutation."""
        self.cached_balance = None
