"""
Token ledger.

Gates paid work against a prepaid balance. Every decrement is a single
conditional update in the account store; balances observed by the client
are only ever a cache.

Paid units follow reserve-then-confirm:
1. check_and_reserve - hold the cost out of the balance, or report why not
2. commit_debit - confirm the hold once the unit was produced
3. release - return the hold if the unit failed
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from cinegen.config.loader import TimeoutConfig
from cinegen.storage.models import TransactionKind, WalletAccount
from cinegen.storage.repository import AccountRepository
from .errors import LedgerError
from .pricing import DEFAULT_PRICING_TABLE, PlanTier, PricingTable
from .session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of an advisory balance check."""
    ok: bool
    cost: int
    balance: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of check_and_reserve; ``reason`` is set when ``ok`` is False."""
    ok: bool
    cost: int
    reservation_id: Optional[str] = None
    balance: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class DebitResult:
    success: bool
    balance_before: int = 0
    balance_after: int = 0
    transaction_id: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CreditResult:
    """Outcome of a credit; ``applied`` may be below ``requested`` at the ceiling."""
    requested: int
    applied: int
    balance_before: int
    balance_after: int
    kind: TransactionKind

    @property
    def clipped(self) -> bool:
        return self.applied < self.requested


def _insufficient_reason(cost: int, balance: int) -> str:
    return f"Insufficient tokens. Required: {cost}, available: {balance}"


def _unit_description(unit_ref: Optional[str]) -> str:
    return f"Image generation for {unit_ref}" if unit_ref else "Image generation"


class TokenLedger:
    """Validate, reserve, debit and credit a user's token balance."""

    def __init__(
        self,
        repository: AccountRepository,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        timeouts: Optional[TimeoutConfig] = None
    ):
        self.repository = repository
        self.pricing = pricing
        self.timeouts = timeouts or TimeoutConfig()

    async def load_wallet(self, session: Session) -> WalletAccount:
        """Read the wallet with a hard timeout and refresh the session cache.

        Raises:
            asyncio.TimeoutError: If the store didn't answer in time
            LedgerError: If the user has no wallet
        """
        wallet = await asyncio.wait_for(
            asyncio.to_thread(self.repository.get_wallet, session.user_id),
            timeout=self.timeouts.profile_load
        )
        if wallet is None:
            raise LedgerError(f"No wallet for user {session.user_id}")
        session.remember(wallet.balance, wallet.plan_tier)
        return wallet

    async def open_wallet(self, session: Session) -> WalletAccount:
        """Return the user's wallet, creating it on the free tier if needed."""
        wallet = await asyncio.to_thread(self.repository.get_wallet, session.user_id)
        if wallet is None:
            free = self.pricing.get_plan(PlanTier.FREE)
            wallet = await asyncio.to_thread(
                self.repository.create_wallet,
                session.user_id,
                PlanTier.FREE,
                free.grant_tokens,
                session.email,
                session.display_name
            )
            logger.info("Opened wallet for %s with %d tokens", session.user_id, wallet.balance)
        session.remember(wallet.balance, wallet.plan_tier)
        return wallet

    def ceiling_for(self, tier: PlanTier) -> int:
        return self.pricing.ceiling_for(tier)

    async def validate(self, session: Session, cost: int) -> ValidationResult:
        """Check the stored balance covers ``cost``.

        Advisory only: nothing is held, so a concurrent debit may still win.
        Use check_and_reserve before paid work.
        """
        wallet = await asyncio.to_thread(self.repository.get_wallet, session.user_id)
        if wallet is None:
            return ValidationResult(ok=False, cost=cost, reason="Could not load the user's wallet")

        session.remember(wallet.balance, wallet.plan_tier)
        if wallet.balance < cost:
            return ValidationResult(
                ok=False,
                cost=cost,
                balance=wallet.balance,
                reason=_insufficient_reason(cost, wallet.balance)
            )
        return ValidationResult(ok=True, cost=cost, balance=wallet.balance)

    async def check_and_reserve(
        self,
        session: Session,
        cost: int,
        unit_ref: Optional[str] = None
    ) -> ReservationResult:
        """Atomically hold ``cost`` tokens for one paid unit of work."""
        try:
            reservation = await asyncio.to_thread(
                self.repository.reserve,
                session.user_id,
                cost,
                unit_ref,
                _unit_description(unit_ref)
            )
        except LedgerError as e:
            return ReservationResult(ok=False, cost=cost, reason=str(e))
        finally:
            session.invalidate()

        if reservation is None:
            wallet = await asyncio.to_thread(self.repository.get_wallet, session.user_id)
            balance = wallet.balance if wallet else 0
            return ReservationResult(
                ok=False,
                cost=cost,
                balance=balance,
                reason=_insufficient_reason(cost, balance)
            )

        return ReservationResult(
            ok=True,
            cost=cost,
            reservation_id=reservation.id,
            balance=reservation.balance_after
        )

    async def commit_debit(
        self,
        session: Session,
        cost: int,
        unit_ref: Optional[str] = None,
        reservation_id: Optional[str] = None
    ) -> DebitResult:
        """Record the consumption for one completed paid unit.

        With a reservation the held tokens are confirmed; confirming twice
        records nothing new. Without one this is a plain atomic debit.
        """
        description = _unit_description(unit_ref)
        if reservation_id is None:
            return await self.debit(session, cost, unit_ref, description)

        try:
            transaction = await asyncio.to_thread(
                self.repository.confirm_reservation, reservation_id
            )
        finally:
            session.invalidate()

        if transaction is None:
            return DebitResult(success=False, error=f"Reservation {reservation_id} was released")
        if -transaction.amount_delta != cost:
            logger.warning(
                "Reservation %s held %d tokens, commit asked for %d",
                reservation_id, -transaction.amount_delta, cost
            )

        logger.info(
            "Tokens deducted for %s: %d -> %d",
            unit_ref or reservation_id, transaction.balance_before, transaction.balance_after
        )
        return DebitResult(
            success=True,
            balance_before=transaction.balance_before,
            balance_after=transaction.balance_after,
            transaction_id=transaction.id
        )

    async def debit(
        self,
        session: Session,
        cost: int,
        unit_ref: Optional[str] = None,
        description: str = "Image generation"
    ) -> DebitResult:
        """Atomically decrement the balance by ``cost``.

        Fails without touching the balance when it is below ``cost``.
        """
        try:
            transaction = await asyncio.to_thread(
                self.repository.debit, session.user_id, cost, description, unit_ref
            )
        except LedgerError as e:
            return DebitResult(success=False, error=str(e))
        finally:
            session.invalidate()

        if transaction is None:
            wallet = await asyncio.to_thread(self.repository.get_wallet, session.user_id)
            balance = wallet.balance if wallet else 0
            return DebitResult(
                success=False,
                balance_before=balance,
                balance_after=balance,
                error=_insufficient_reason(cost, balance)
            )

        return DebitResult(
            success=True,
            balance_before=transaction.balance_before,
            balance_after=transaction.balance_after,
            transaction_id=transaction.id
        )

    async def release(self, session: Session, reservation_id: str) -> bool:
        """Return held tokens for a unit that was not produced."""
        wallet = await asyncio.to_thread(self.repository.get_wallet, session.user_id)
        if wallet is None:
            raise LedgerError(f"No wallet for user {session.user_id}")
        try:
            refund = await asyncio.to_thread(
                self.repository.release_reservation,
                reservation_id,
                self.ceiling_for(wallet.plan_tier)
            )
        finally:
            session.invalidate()
        return refund is not None

    async def credit(
        self,
        user_id: str,
        amount: int,
        ceiling: int,
        kind: TransactionKind = TransactionKind.TOP_UP,
        description: str = "",
        external_payment_ref: Optional[str] = None
    ) -> CreditResult:
        """Add ``amount`` tokens, clipped so the balance never exceeds ``ceiling``.

        The transaction records the applied delta, not the nominal amount.
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")

        transaction = await asyncio.to_thread(
            self.repository.credit,
            user_id,
            amount,
            ceiling,
            kind,
            description,
            external_payment_ref
        )
        if transaction.amount_delta < amount:
            logger.info(
                "Credit for %s clipped at ceiling %d: %d of %d tokens applied",
                user_id, ceiling, transaction.amount_delta, amount
            )
        return CreditResult(
            requested=amount,
            applied=transaction.amount_delta,
            balance_before=transaction.balance_before,
            balance_after=transaction.balance_after,
            kind=kind
        )
