"""
Repository pattern for data access.

Handles wallet balances, the ledger of balance changes, pending payments
and received provider events. Every balance mutation is a single write
transaction; debits are conditional updates so the balance can never be
driven below zero by concurrent callers.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

from cinegen.core.errors import DuplicateEventError, LedgerError
from cinegen.core.pricing import PlanTier, clip_credit
from .db import get_connection, write_transaction
from .models import (
    IntentStatus,
    LedgerTransaction,
    PaymentEventRecord,
    PendingPaymentIntent,
    Reservation,
    ReservationStatus,
    TransactionKind,
    WalletAccount
)

logger = logging.getLogger(__name__)

_TRANSACTION_COLUMNS = """
    id, user_id, timestamp, kind, amount_delta, balance_before,
    balance_after, description, unit_ref, external_payment_ref, charge_id
"""

_INTENT_COLUMNS = """
    external_id, user_id, requested_kind, requested_amount, charge_amount,
    status, requested_plan, description, charge_id, failure_reason
"""


def initialize_schema(db_path: str = "cinegen.db") -> None:
    """Create the account store tables if they don't exist.

    ``ledger_transaction`` is append-only; the CHECK constraint on
    ``wallet_account.balance`` is the last line of defence for non-negativity.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS wallet_account (
                user_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL CHECK (balance >= 0),
                plan_tier TEXT NOT NULL,
                customer_id TEXT,
                email TEXT,
                display_name TEXT,
                plan_upgraded_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ledger_transaction (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES wallet_account(user_id),
                timestamp TEXT NOT NULL,
                kind TEXT NOT NULL,
                amount_delta INTEGER NOT NULL,
                balance_before INTEGER NOT NULL,
                balance_after INTEGER NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                unit_ref TEXT,
                external_payment_ref TEXT,
                charge_id TEXT
            );

            CREATE TABLE IF NOT EXISTS reservation (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES wallet_account(user_id),
                amount INTEGER NOT NULL CHECK (amount > 0),
                unit_ref TEXT,
                status TEXT NOT NULL,
                balance_before INTEGER NOT NULL,
                balance_after INTEGER NOT NULL,
                transaction_id INTEGER REFERENCES ledger_transaction(id),
                created_at TEXT NOT NULL,
                resolved_at TEXT
            );

            CREATE TABLE IF NOT EXISTS payment_intent (
                external_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES wallet_account(user_id),
                requested_kind TEXT NOT NULL,
                requested_amount INTEGER NOT NULL,
                charge_amount INTEGER NOT NULL,
                status TEXT NOT NULL,
                requested_plan TEXT,
                description TEXT NOT NULL DEFAULT '',
                charge_id TEXT,
                failure_reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS payment_event (
                event_id TEXT PRIMARY KEY,
                event_type TEXT NOT NULL,
                customer_id TEXT,
                payload TEXT NOT NULL,
                processed INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT,
                error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                received_at TEXT NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


class AccountRepository:
    """Repository for wallets, ledger transactions and payment records.

    Each method opens its own connection, so one instance can be shared by
    the interactive debit path and the webhook credit path.
    """

    def __init__(self, db_path: str = "cinegen.db"):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    # Wallets

    def create_wallet(
        self,
        user_id: str,
        plan_tier: PlanTier,
        grant_tokens: int,
        email: Optional[str] = None,
        display_name: Optional[str] = None
    ) -> WalletAccount:
        """Create a wallet and record its initial grant.

        Raises:
            LedgerError: If the wallet already exists
        """
        now = datetime.now().isoformat()
        try:
            with write_transaction(self.db_path) as conn:
                conn.execute("""
                    INSERT INTO wallet_account
                    (user_id, balance, plan_tier, email, display_name, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (user_id, grant_tokens, plan_tier.value, email, display_name, now))
                if grant_tokens > 0:
                    self._insert_transaction(
                        conn, user_id, TransactionKind.GRANT, grant_tokens,
                        0, grant_tokens, "Initial free grant"
                    )
        except sqlite3.IntegrityError:
            raise LedgerError(f"Wallet already exists for user {user_id}")

        return self.get_wallet(user_id)

    def get_wallet(self, user_id: str) -> Optional[WalletAccount]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT user_id, balance, plan_tier, customer_id, email,
                       display_name, plan_upgraded_at
                FROM wallet_account WHERE user_id = ?
            """, (user_id,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return WalletAccount(
            user_id=row[0],
            balance=row[1],
            plan_tier=PlanTier(row[2]),
            customer_id=row[3],
            email=row[4],
            display_name=row[5],
            plan_upgraded_at=datetime.fromisoformat(row[6]) if row[6] else None
        )

    def set_customer_id(self, user_id: str, customer_id: str) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE wallet_account SET customer_id = ? WHERE user_id = ?",
                (customer_id, user_id)
            )

    # Debits

    def debit(
        self,
        user_id: str,
        amount: int,
        description: str = "",
        unit_ref: Optional[str] = None
    ) -> Optional[LedgerTransaction]:
        """Atomically decrement a balance and record a consumption.

        The decrement is one conditional UPDATE, so the check and the write
        cannot be separated by another writer.

        Returns:
            The consumption transaction, or None if the balance is too low

        Raises:
            LedgerError: If the wallet doesn't exist
        """
        _require_positive(amount)
        with write_transaction(self.db_path) as conn:
            before_after = self._conditional_decrement(conn, user_id, amount)
            if before_after is None:
                return None
            before, after = before_after
            return self._insert_transaction(
                conn, user_id, TransactionKind.CONSUMPTION, -amount,
                before, after, description, unit_ref=unit_ref
            )

    def reserve(
        self,
        user_id: str,
        amount: int,
        unit_ref: Optional[str] = None,
        description: str = ""
    ) -> Optional[Reservation]:
        """Hold ``amount`` tokens out of the balance for one unit of work.

        The consumption transaction is recorded together with the decrement,
        so the ledger always matches the balance. Confirming the reservation
        makes that consumption final; releasing it records a compensating
        refund.

        Returns:
            The held reservation, or None if the balance is too low

        Raises:
            LedgerError: If the wallet doesn't exist
        """
        _require_positive(amount)
        reservation_id = uuid.uuid4().hex
        with write_transaction(self.db_path) as conn:
            before_after = self._conditional_decrement(conn, user_id, amount)
            if before_after is None:
                return None
            before, after = before_after
            transaction = self._insert_transaction(
                conn, user_id, TransactionKind.CONSUMPTION, -amount,
                before, after, description, unit_ref=unit_ref
            )
            conn.execute("""
                INSERT INTO reservation
                (id, user_id, amount, unit_ref, status, balance_before, balance_after,
                 transaction_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                reservation_id, user_id, amount, unit_ref,
                ReservationStatus.HELD.value, before, after, transaction.id,
                datetime.now().isoformat()
            ))

        return Reservation(
            id=reservation_id,
            user_id=user_id,
            amount=amount,
            unit_ref=unit_ref,
            status=ReservationStatus.HELD,
            balance_before=before,
            balance_after=after
        )

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        conn = get_connection(self.db_path)
        try:
            return self._fetch_reservation(conn, reservation_id)
        finally:
            conn.close()

    def confirm_reservation(self, reservation_id: str) -> Optional[LedgerTransaction]:
        """Make a held reservation's consumption final.

        Confirming an already confirmed reservation changes nothing.

        Returns:
            The consumption recorded at reservation time, or None if the
            reservation was released

        Raises:
            LedgerError: If the reservation doesn't exist
        """
        with write_transaction(self.db_path) as conn:
            reservation = self._fetch_reservation(conn, reservation_id)
            if reservation is None:
                raise LedgerError(f"Unknown reservation {reservation_id}")

            if reservation.status == ReservationStatus.RELEASED:
                return None

            if reservation.status == ReservationStatus.HELD:
                conn.execute("""
                    UPDATE reservation SET status = ?, resolved_at = ?
                    WHERE id = ? AND status = ?
                """, (
                    ReservationStatus.CONFIRMED.value, datetime.now().isoformat(),
                    reservation_id, ReservationStatus.HELD.value
                ))

            row = conn.execute(f"""
                SELECT {_TRANSACTION_COLUMNS} FROM ledger_transaction
                WHERE id = (SELECT transaction_id FROM reservation WHERE id = ?)
            """, (reservation_id,)).fetchone()
            return _row_to_transaction(row)

    def release_reservation(
        self,
        reservation_id: str,
        ceiling: int,
        description: str = ""
    ) -> Optional[LedgerTransaction]:
        """Return held tokens to the balance, never beyond ``ceiling``.

        The return is recorded as a refund of the applied (possibly clipped)
        amount.

        Returns:
            The refund transaction, or None if the reservation was not held
        """
        with write_transaction(self.db_path) as conn:
            reservation = self._fetch_reservation(conn, reservation_id)
            if reservation is None or reservation.status != ReservationStatus.HELD:
                return None

            conn.execute("""
                UPDATE reservation SET status = ?, resolved_at = ?
                WHERE id = ?
            """, (ReservationStatus.RELEASED.value, datetime.now().isoformat(), reservation_id))
            return self._credit_in_transaction(
                conn, reservation.user_id, reservation.amount, ceiling,
                TransactionKind.REFUND,
                description or f"Reservation released for {reservation.unit_ref or reservation_id}",
                unit_ref=reservation.unit_ref
            )

    # Credits

    def credit(
        self,
        user_id: str,
        amount: int,
        ceiling: int,
        kind: TransactionKind,
        description: str = "",
        external_payment_ref: Optional[str] = None,
        charge_id: Optional[str] = None,
        plan_tier: Optional[PlanTier] = None
    ) -> LedgerTransaction:
        """Add tokens to a balance, clipped to ``ceiling``.

        Raises:
            LedgerError: If the wallet doesn't exist
        """
        with write_transaction(self.db_path) as conn:
            return self._credit_in_transaction(
                conn, user_id, amount, ceiling, kind, description,
                external_payment_ref, charge_id, plan_tier
            )

    def list_transactions(self, user_id: str, limit: int = 100) -> List[LedgerTransaction]:
        """Get a user's ledger, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_TRANSACTION_COLUMNS} FROM ledger_transaction
                WHERE user_id = ?
                ORDER BY id DESC LIMIT ?
            """, (user_id, limit))
            return [_row_to_transaction(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # Payment intents

    def create_payment_intent(self, intent: PendingPaymentIntent) -> None:
        now = datetime.now().isoformat()
        with write_transaction(self.db_path) as conn:
            conn.execute(f"""
                INSERT INTO payment_intent ({_INTENT_COLUMNS}, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                intent.external_id,
                intent.user_id,
                intent.requested_kind.value,
                intent.requested_amount,
                intent.charge_amount,
                intent.status.value,
                intent.requested_plan.value if intent.requested_plan else None,
                intent.description,
                intent.charge_id,
                intent.failure_reason,
                now,
                now
            ))

    def get_payment_intent(self, external_id: str) -> Optional[PendingPaymentIntent]:
        conn = get_connection(self.db_path)
        try:
            return self._fetch_intent(conn, external_id)
        finally:
            conn.close()

    # Provider events

    def record_event(
        self,
        event_id: str,
        event_type: str,
        customer_id: Optional[str],
        payload: str
    ) -> PaymentEventRecord:
        """Store a received event unless it was already stored.

        Returns:
            The stored record, which for a redelivery reflects prior processing
        """
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                INSERT OR IGNORE INTO payment_event
                (event_id, event_type, customer_id, payload, received_at)
                VALUES (?, ?, ?, ?, ?)
            """, (event_id, event_type, customer_id, payload, datetime.now().isoformat()))
            return self._fetch_event(conn, event_id)

    def get_event(self, event_id: str) -> Optional[PaymentEventRecord]:
        conn = get_connection(self.db_path)
        try:
            return self._fetch_event(conn, event_id)
        finally:
            conn.close()

    def mark_event_processed(self, event_id: str) -> None:
        with write_transaction(self.db_path) as conn:
            self._mark_processed(conn, event_id)

    def mark_event_failed(self, event_id: str, error_message: str) -> None:
        with write_transaction(self.db_path) as conn:
            conn.execute("""
                UPDATE payment_event
                SET error_message = ?, retry_count = retry_count + 1
                WHERE event_id = ?
            """, (error_message, event_id))

    def apply_payment_success(
        self,
        event_id: str,
        intent_id: str,
        user_id: str,
        amount: int,
        ceiling: int,
        kind: TransactionKind,
        description: str = "",
        charge_id: Optional[str] = None,
        plan_tier: Optional[PlanTier] = None
    ) -> Optional[LedgerTransaction]:
        """Credit a successful payment and mark its event processed, atomically.

        Returns:
            The credit transaction, or None if the intent was already resolved

        Raises:
            DuplicateEventError: If another delivery already applied the event
        """
        with write_transaction(self.db_path) as conn:
            self._claim_event(conn, event_id)
            intent = self._fetch_intent(conn, intent_id)
            if intent is not None and intent.status != IntentStatus.PENDING:
                logger.info(
                    "Payment intent %s already %s, skipping credit",
                    intent_id, intent.status.value
                )
                return None

            transaction = self._credit_in_transaction(
                conn, user_id, amount, ceiling, kind, description,
                intent_id, charge_id, plan_tier
            )
            if intent is not None:
                self._update_intent(conn, intent_id, IntentStatus.SUCCEEDED, charge_id=charge_id)
            return transaction

    def apply_payment_failure(self, event_id: str, intent_id: str, reason: str) -> bool:
        """Annotate a pending intent as failed; the balance is untouched.

        Returns:
            True if a pending intent was annotated
        """
        with write_transaction(self.db_path) as conn:
            self._claim_event(conn, event_id)
            intent = self._fetch_intent(conn, intent_id)
            annotated = intent is not None and intent.status == IntentStatus.PENDING
            if annotated:
                self._update_intent(conn, intent_id, IntentStatus.FAILED, failure_reason=reason)
            return annotated

    def apply_refund(
        self,
        event_id: str,
        user_id: str,
        tokens: int,
        ceiling: int,
        charge_id: str,
        intent_id: Optional[str] = None,
        description: str = ""
    ) -> LedgerTransaction:
        """Grant compensating tokens for a refunded charge, atomically.

        Raises:
            DuplicateEventError: If another delivery already applied the event
        """
        with write_transaction(self.db_path) as conn:
            self._claim_event(conn, event_id)
            transaction = self._credit_in_transaction(
                conn, user_id, tokens, ceiling, TransactionKind.REFUND,
                description, intent_id, charge_id
            )
            if intent_id is not None:
                intent = self._fetch_intent(conn, intent_id)
                if intent is not None and intent.status == IntentStatus.SUCCEEDED:
                    self._update_intent(conn, intent_id, IntentStatus.REFUNDED)
            return transaction

    # Helpers

    def _conditional_decrement(self, conn: sqlite3.Connection, user_id: str, amount: int):
        cursor = conn.execute("""
            UPDATE wallet_account SET balance = balance - ?
            WHERE user_id = ? AND balance >= ?
        """, (amount, user_id, amount))

        if cursor.rowcount == 0:
            exists = conn.execute(
                "SELECT 1 FROM wallet_account WHERE user_id = ?", (user_id,)
            ).fetchone()
            if exists is None:
                raise LedgerError(f"No wallet for user {user_id}")
            return None

        after = conn.execute(
            "SELECT balance FROM wallet_account WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
        return after + amount, after

    def _credit_in_transaction(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        ceiling: int,
        kind: TransactionKind,
        description: str,
        external_payment_ref: Optional[str] = None,
        charge_id: Optional[str] = None,
        plan_tier: Optional[PlanTier] = None,
        unit_ref: Optional[str] = None
    ) -> LedgerTransaction:
        if amount < 0:
            raise ValueError("credit amount must be >= 0")

        row = conn.execute(
            "SELECT balance FROM wallet_account WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise LedgerError(f"No wallet for user {user_id}")

        before = row[0]
        applied = clip_credit(before, amount, ceiling)
        after = before + applied

        if plan_tier is not None:
            conn.execute("""
                UPDATE wallet_account
                SET balance = ?, plan_tier = ?, plan_upgraded_at = ?
                WHERE user_id = ?
            """, (after, plan_tier.value, datetime.now().isoformat(), user_id))
        else:
            conn.execute(
                "UPDATE wallet_account SET balance = ? WHERE user_id = ?",
                (after, user_id)
            )

        return self._insert_transaction(
            conn, user_id, kind, applied, before, after, description,
            unit_ref=unit_ref,
            external_payment_ref=external_payment_ref,
            charge_id=charge_id
        )

    def _insert_transaction(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        kind: TransactionKind,
        amount_delta: int,
        balance_before: int,
        balance_after: int,
        description: str = "",
        unit_ref: Optional[str] = None,
        external_payment_ref: Optional[str] = None,
        charge_id: Optional[str] = None
    ) -> LedgerTransaction:
        timestamp = datetime.now()
        cursor = conn.execute("""
            INSERT INTO ledger_transaction
            (user_id, timestamp, kind, amount_delta, balance_before, balance_after,
             description, unit_ref, external_payment_ref, charge_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            user_id, timestamp.isoformat(), kind.value, amount_delta,
            balance_before, balance_after, description, unit_ref,
            external_payment_ref, charge_id
        ))
        return LedgerTransaction(
            id=cursor.lastrowid,
            user_id=user_id,
            timestamp=timestamp,
            kind=kind,
            amount_delta=amount_delta,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            unit_ref=unit_ref,
            external_payment_ref=external_payment_ref,
            charge_id=charge_id
        )

    def _fetch_reservation(self, conn: sqlite3.Connection, reservation_id: str) -> Optional[Reservation]:
        row = conn.execute("""
            SELECT id, user_id, amount, unit_ref, status, balance_before, balance_after
            FROM reservation WHERE id = ?
        """, (reservation_id,)).fetchone()
        if row is None:
            return None
        return Reservation(
            id=row[0],
            user_id=row[1],
            amount=row[2],
            unit_ref=row[3],
            status=ReservationStatus(row[4]),
            balance_before=row[5],
            balance_after=row[6]
        )

    def _fetch_intent(self, conn: sqlite3.Connection, external_id: str) -> Optional[PendingPaymentIntent]:
        row = conn.execute(
            f"SELECT {_INTENT_COLUMNS} FROM payment_intent WHERE external_id = ?",
            (external_id,)
        ).fetchone()
        if row is None:
            return None
        return PendingPaymentIntent(
            external_id=row[0],
            user_id=row[1],
            requested_kind=TransactionKind(row[2]),
            requested_amount=row[3],
            charge_amount=row[4],
            status=IntentStatus(row[5]),
            requested_plan=PlanTier(row[6]) if row[6] else None,
            description=row[7],
            charge_id=row[8],
            failure_reason=row[9]
        )

    def _update_intent(
        self,
        conn: sqlite3.Connection,
        external_id: str,
        status: IntentStatus,
        charge_id: Optional[str] = None,
        failure_reason: Optional[str] = None
    ) -> None:
        conn.execute("""
            UPDATE payment_intent
            SET status = ?,
                charge_id = COALESCE(?, charge_id),
                failure_reason = COALESCE(?, failure_reason),
                updated_at = ?
            WHERE external_id = ?
        """, (status.value, charge_id, failure_reason, datetime.now().isoformat(), external_id))

    def _fetch_event(self, conn: sqlite3.Connection, event_id: str) -> Optional[PaymentEventRecord]:
        row = conn.execute("""
            SELECT event_id, event_type, customer_id, processed, error_message, retry_count
            FROM payment_event WHERE event_id = ?
        """, (event_id,)).fetchone()
        if row is None:
            return None
        return PaymentEventRecord(
            event_id=row[0],
            event_type=row[1],
            customer_id=row[2],
            processed=bool(row[3]),
            error_message=row[4],
            retry_count=row[5]
        )

    def _mark_processed(self, conn: sqlite3.Connection, event_id: str) -> None:
        conn.execute("""
            UPDATE payment_event SET processed = 1, processed_at = ?, error_message = NULL
            WHERE event_id = ?
        """, (datetime.now().isoformat(), event_id))

    def _claim_event(self, conn: sqlite3.Connection, event_id: str) -> None:
        """Mark an unprocessed event processed inside the caller's write lock.

        The effects applied after a successful claim commit or roll back
        together with it, so only one delivery of an event can apply them.
        """
        cursor = conn.execute("""
            UPDATE payment_event SET processed = 1, processed_at = ?, error_message = NULL
            WHERE event_id = ? AND processed = 0
        """, (datetime.now().isoformat(), event_id))
        if cursor.rowcount == 0:
            if self._fetch_event(conn, event_id) is None:
                raise LedgerError(f"Unknown payment event {event_id}")
            raise DuplicateEventError(event_id)


def _row_to_transaction(row) -> LedgerTransaction:
    return LedgerTransaction(
        id=row[0],
        user_id=row[1],
        timestamp=datetime.fromisoformat(row[2]),
        kind=TransactionKind(row[3]),
        amount_delta=row[4],
        balance_before=row[5],
        balance_after=row[6],
        description=row[7],
        unit_ref=row[8],
        external_payment_ref=row[9],
        charge_id=row[10]
    )


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError("amount must be > 0")
