"""
Data models for storage layer.

Defines wallet, ledger and payment entities as stored in the account store.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from cinegen.core.pricing import PlanTier


class TransactionKind(Enum):
    """Reason for a balance change."""
    CONSUMPTION = "consumption"
    TOP_UP = "top_up"
    PLAN_UPGRADE = "plan_upgrade"
    REFUND = "refund"
    GRANT = "grant"


class IntentStatus(Enum):
    """State of an outstanding external charge."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class ReservationStatus(Enum):
    HELD = "held"
    CONFIRMED = "confirmed"
    RELEASED = "released"


@dataclass(frozen=True)
class WalletAccount:
    """Per-user prepaid token balance."""
    user_id: str
    balance: int
    plan_tier: PlanTier
    customer_id: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    plan_upgraded_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerTransaction:
    """Immutable audit record of one committed balance change.

    ``amount_delta`` is the applied change, which for credits may be smaller
    than the nominal amount once the plan ceiling clips it.
    """
    id: int
    user_id: str
    timestamp: datetime
    kind: TransactionKind
    amount_delta: int
    balance_before: int
    balance_after: int
    description: str = ""
    unit_ref: Optional[str] = None
    external_payment_ref: Optional[str] = None
    charge_id: Optional[str] = None


@dataclass(frozen=True)
class PendingPaymentIntent:
    """An external charge awaiting its provider outcome."""
    external_id: str
    user_id: str
    requested_kind: TransactionKind
    requested_amount: int
    charge_amount: int
    status: IntentStatus
    requested_plan: Optional[PlanTier] = None
    description: str = ""
    charge_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class Reservation:
    """Tokens held out of a balance for one paid unit of work."""
    id: str
    user_id: str
    amount: int
    unit_ref: Optional[str]
    status: ReservationStatus
    balance_before: int
    balance_after: int


@dataclass(frozen=True)
class PaymentEventRecord:
    """A verified provider event as received, with its processing state."""
    event_id: str
    event_type: str
    customer_id: Optional[str]
    processed: bool
    error_message: Optional[str] = None
    retry_count: int = 0
