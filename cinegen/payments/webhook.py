"""
Stripe webhook reconciliation.

Applies verified provider events to the token ledger:

- payment_intent.succeeded: credit the plan grant or top-up, clipped to the
  plan ceiling
- payment_intent.payment_failed: annotate the pending payment, no balance change
- charge.refunded: grant compensating tokens at a fixed conversion rate

Each event id is applied at most once. A redelivered event that already
succeeded is ignored; one that failed before is processed again.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import stripe

from cinegen.core.errors import DuplicateEventError, LedgerError, ReconciliationError
from cinegen.core.pricing import DEFAULT_PRICING_TABLE, PricingTable, parse_plan_tier
from cinegen.storage.models import TransactionKind
from cinegen.storage.repository import AccountRepository

logger = logging.getLogger(__name__)

DEFAULT_TOPUP_TOKENS = 1000
SIGNATURE_TOLERANCE = 300


class WebhookOutcome(Enum):
    APPLIED = "applied"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    event_id: Optional[str] = None
    message: str = ""

    @property
    def status_code(self) -> int:
        """HTTP status to answer the provider with."""
        return 400 if self.outcome == WebhookOutcome.REJECTED else 200


class PaymentReconciler:
    """Verifies and applies payment provider events."""

    def __init__(
        self,
        repository: AccountRepository,
        webhook_secret: Optional[str],
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        tolerance: int = SIGNATURE_TOLERANCE
    ):
        if not webhook_secret or not webhook_secret.strip():
            raise ValueError("webhook_secret is required and cannot be empty")

        self.repository = repository
        self.webhook_secret = webhook_secret
        self.pricing = pricing
        self.tolerance = tolerance

    def on_payment_event(self, raw_payload: Union[str, bytes], signature: Optional[str]) -> WebhookResult:
        """Verify a raw webhook delivery and reconcile it.

        Nothing in the payload is trusted before the signature checks out.

        Raises:
            ReconciliationError: If a verified event failed while being applied
        """
        payload = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature or "", self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            return WebhookResult(WebhookOutcome.REJECTED, message="Invalid signature")

        try:
            event = json.loads(payload)
        except ValueError:
            logger.warning("Webhook payload is not valid JSON")
            return WebhookResult(WebhookOutcome.REJECTED, message="Invalid payload")

        return self.reconcile_payment(event, payload)

    def reconcile_payment(self, event: Dict[str, Any], raw_payload: Optional[str] = None) -> WebhookResult:
        """Apply one verified event to the ledger, at most once per event id.

        Raises:
            ReconciliationError: If applying the event failed; the failure is
                recorded on the event with an incremented retry counter
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            return WebhookResult(WebhookOutcome.REJECTED, message="Event id and type are required")

        obj = (event.get("data") or {}).get("object") or {}
        record = self.repository.record_event(
            event_id,
            event_type,
            obj.get("customer"),
            raw_payload if raw_payload is not None else json.dumps(event)
        )
        if record.processed:
            logger.info("Ignoring duplicate delivery of event %s", event_id)
            return WebhookResult(WebhookOutcome.DUPLICATE, event_id)

        handlers = {
            "payment_intent.succeeded": self._handle_payment_succeeded,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "charge.refunded": self._handle_refund,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type: %s", event_type)
            self.repository.mark_event_processed(event_id)
            return WebhookResult(WebhookOutcome.IGNORED, event_id, f"Unhandled event type {event_type}")

        try:
            applied = handler(event_id, obj)
        except DuplicateEventError:
            logger.info("Event %s was applied by a concurrent delivery", event_id)
            return WebhookResult(WebhookOutcome.DUPLICATE, event_id)
        except Exception as e:
            logger.exception("Webhook processing error for event %s", event_id)
            self.repository.mark_event_failed(event_id, str(e))
            raise ReconciliationError(f"Processing error: {e}", event_id) from e

        outcome = WebhookOutcome.APPLIED if applied else WebhookOutcome.IGNORED
        return WebhookResult(outcome, event_id)

    def _handle_payment_succeeded(self, event_id: str, intent: Dict[str, Any]) -> bool:
        metadata = intent.get("metadata") or {}
        user_id = metadata.get("userId")
        if not user_id:
            raise ValueError("No userId in payment intent metadata")

        wallet = self.repository.get_wallet(user_id)
        if wallet is None:
            raise LedgerError(f"User not found: {user_id}")

        plan_name = metadata.get("plan")
        if plan_name:
            plan = parse_plan_tier(plan_name)
            kind = TransactionKind.PLAN_UPGRADE
            tokens = self.pricing.get_plan(plan).grant_tokens
            ceiling = self.pricing.ceiling_for(plan)
        else:
            plan = None
            kind = TransactionKind.TOP_UP
            tokens = int(metadata.get("tokensAmount") or DEFAULT_TOPUP_TOKENS)
            ceiling = self.pricing.ceiling_for(wallet.plan_tier)

        transaction = self.repository.apply_payment_success(
            event_id=event_id,
            intent_id=intent["id"],
            user_id=user_id,
            amount=tokens,
            ceiling=ceiling,
            kind=kind,
            description=f"{intent.get('description') or kind.value} (COMPLETED)",
            charge_id=_charge_id(intent),
            plan_tier=plan
        )
        if transaction is None:
            return False

        logger.info(
            "Payment succeeded for user %s: +%d tokens (%d -> %d)",
            user_id, transaction.amount_delta, transaction.balance_before, transaction.balance_after
        )
        return True

    def _handle_payment_failed(self, event_id: str, intent: Dict[str, Any]) -> bool:
        user_id = (intent.get("metadata") or {}).get("userId")
        if not user_id:
            self.repository.mark_event_processed(event_id)
            return False

        error = intent.get("last_payment_error") or {}
        reason = error.get("message") or "Payment failed"
        annotated = self.repository.apply_payment_failure(event_id, intent["id"], reason)
        logger.info("Payment failed for user %s: %s", user_id, reason)
        return annotated

    def _handle_refund(self, event_id: str, charge: Dict[str, Any]) -> bool:
        user_id = (charge.get("metadata") or {}).get("userId")
        amount_refunded = charge.get("amount_refunded") or 0
        if not amount_refunded or not user_id:
            self.repository.mark_event_processed(event_id)
            return False

        wallet = self.repository.get_wallet(user_id)
        if wallet is None:
            raise LedgerError(f"User not found for refund: {user_id}")

        tokens = self.pricing.refund_tokens(amount_refunded)
        transaction = self.repository.apply_refund(
            event_id=event_id,
            user_id=user_id,
            tokens=tokens,
            ceiling=self.pricing.ceiling_for(wallet.plan_tier),
            charge_id=charge["id"],
            intent_id=charge.get("payment_intent"),
            description=f"Refund processed: {tokens} tokens returned"
        )
        logger.info("Refund processed for user %s: +%d tokens", user_id, transaction.amount_delta)
        return True


def _charge_id(intent: Dict[str, Any]) -> Optional[str]:
    latest = intent.get("latest_charge")
    if isinstance(latest, str):
        return latest
    charges = (intent.get("charges") or {}).get("data") or []
    return charges[0].get("id") if charges else None
