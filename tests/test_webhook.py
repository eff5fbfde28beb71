"""
Unit tests for webhook reconciliation.

Payloads are signed the way Stripe signs them and applied to a real
database.
"""

import hashlib
import hmac
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from cinegen.core.errors import DuplicateEventError, ReconciliationError
from cinegen.core.pricing import PlanTier
from cinegen.payments.webhook import PaymentReconciler, WebhookOutcome
from cinegen.storage.models import IntentStatus, PendingPaymentIntent, TransactionKind

SECRET = "whsec_test"


def sign(payload: str, secret: str = SECRET, timestamp=None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event(event_id, event_type, obj):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})


def succeeded_intent(intent_id="pi_1", **metadata):
    return {
        "id": intent_id,
        "object": "payment_intent",
        "customer": "cus_1",
        "description": "Token top-up",
        "latest_charge": "ch_1",
        "metadata": {"userId": "user_1", **metadata},
    }


@pytest.fixture
def reconciler(repository):
    return PaymentReconciler(repository, SECRET)


def deliver(reconciler, payload):
    return reconciler.on_payment_event(payload, sign(payload))


class TestSignatureVerification:
    def test_missing_secret(self, repository):
        with pytest.raises(ValueError, match="webhook_secret is required"):
            PaymentReconciler(repository, "")

    def test_bad_signature_rejected(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 0)
        payload = event("evt_1", "payment_intent.succeeded", succeeded_intent())

        result = reconciler.on_payment_event(payload, sign(payload, secret="whsec_wrong"))

        assert result.outcome == WebhookOutcome.REJECTED
        assert result.status_code == 400
        assert repository.get_wallet("user_1").balance == 0
        assert repository.get_event("evt_1") is None

    def test_missing_signature_rejected(self, reconciler):
        payload = event("evt_1", "payment_intent.succeeded", succeeded_intent())
        assert reconciler.on_payment_event(payload, None).outcome == WebhookOutcome.REJECTED

    def test_stale_timestamp_rejected(self, reconciler):
        payload = event("evt_1", "payment_intent.succeeded", succeeded_intent())
        header = sign(payload, timestamp=int(time.time()) - 3600)
        assert reconciler.on_payment_event(payload, header).outcome == WebhookOutcome.REJECTED

    def test_bytes_payload_accepted(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 0)
        payload = event("evt_1", "customer.created", {"id": "cus_1"})

        result = reconciler.on_payment_event(payload.encode("utf-8"), sign(payload))
        assert result.outcome == WebhookOutcome.IGNORED
        assert result.status_code == 200


class TestPaymentSucceeded:
    """Test crediting of successful payments."""

    def test_topup_credits_once(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 2000)
        payload = event("evt_1", "payment_intent.succeeded", succeeded_intent(tokensAmount="1000"))

        first = deliver(reconciler, payload)
        second = deliver(reconciler, payload)

        assert first.outcome == WebhookOutcome.APPLIED
        assert second.outcome == WebhookOutcome.DUPLICATE
        assert repository.get_wallet("user_1").balance == 3000
        top_ups = [
            t for t in repository.list_transactions("user_1")
            if t.kind == TransactionKind.TOP_UP
        ]
        assert len(top_ups) == 1
        assert top_ups[0].charge_id == "ch_1"
        assert top_ups[0].external_payment_ref == "pi_1"

    def test_topup_clipped_at_ceiling(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 9500)
        deliver(reconciler, event("evt_1", "payment_intent.succeeded", succeeded_intent(tokensAmount="1000")))

        assert repository.get_wallet("user_1").balance == 10000
        assert repository.list_transactions("user_1")[0].amount_delta == 500

    def test_plan_upgrade_uses_new_ceiling(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.FREE, 100)
        repository.create_payment_intent(PendingPaymentIntent(
            external_id="pi_1",
            user_id="user_1",
            requested_kind=TransactionKind.PLAN_UPGRADE,
            requested_amount=30000,
            charge_amount=980000,
            status=IntentStatus.PENDING,
            requested_plan=PlanTier.PRO_PREMIUM
        ))

        result = deliver(reconciler, event(
            "evt_1", "payment_intent.succeeded", succeeded_intent(plan="pro_premium")
        ))

        assert result.outcome == WebhookOutcome.APPLIED
        wallet = repository.get_wallet("user_1")
        assert wallet.plan_tier == PlanTier.PRO_PREMIUM
        assert wallet.balance == 30100
        assert repository.get_payment_intent("pi_1").status == IntentStatus.SUCCEEDED

    def test_second_event_for_resolved_intent_ignored(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 0)
        repository.create_payment_intent(PendingPaymentIntent(
            external_id="pi_1",
            user_id="user_1",
            requested_kind=TransactionKind.TOP_UP,
            requested_amount=1000,
            charge_amount=100000,
            status=IntentStatus.PENDING
        ))

        deliver(reconciler, event("evt_1", "payment_intent.succeeded", succeeded_intent(tokensAmount="1000")))
        result = deliver(reconciler, event("evt_2", "payment_intent.succeeded", succeeded_intent(tokensAmount="1000")))

        assert result.outcome == WebhookOutcome.IGNORED
        assert repository.get_wallet("user_1").balance == 1000

    def test_missing_user_id_records_failure(self, reconciler, repository):
        intent = succeeded_intent()
        intent["metadata"] = {}
        payload = event("evt_1", "payment_intent.succeeded", intent)

        with pytest.raises(ReconciliationError) as excinfo:
            deliver(reconciler, payload)

        assert excinfo.value.event_id == "evt_1"
        record = repository.get_event("evt_1")
        assert not record.processed
        assert record.retry_count == 1
        assert "No userId" in record.error_message

    def test_failed_event_is_reprocessed_on_redelivery(self, reconciler, repository):
        payload = event("evt_1", "payment_intent.succeeded", succeeded_intent(tokensAmount="1000"))
        with pytest.raises(ReconciliationError):
            deliver(reconciler, payload)

        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 0)
        result = deliver(reconciler, payload)

        assert result.outcome == WebhookOutcome.APPLIED
        assert repository.get_wallet("user_1").balance == 1000
        assert repository.get_event("evt_1").processed


class TestPaymentFailedAndRefunds:
    def test_failure_annotates_intent(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 40)
        repository.create_payment_intent(PendingPaymentIntent(
            external_id="pi_1",
            user_id="user_1",
            requested_kind=TransactionKind.TOP_UP,
            requested_amount=1000,
            charge_amount=100000,
            status=IntentStatus.PENDING
        ))
        intent = succeeded_intent()
        intent["last_payment_error"] = {"message": "Your card was declined."}

        result = deliver(reconciler, event("evt_1", "payment_intent.payment_failed", intent))

        assert result.outcome == WebhookOutcome.APPLIED
        assert repository.get_wallet("user_1").balance == 40
        stored = repository.get_payment_intent("pi_1")
        assert stored.status == IntentStatus.FAILED
        assert stored.failure_reason == "Your card was declined."

    def test_refund_grants_tokens(self, reconciler, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 100)
        charge = {
            "id": "ch_1",
            "amount_refunded": 250000,
            "payment_intent": "pi_1",
            "metadata": {"userId": "user_1"},
        }

        result = deliver(reconciler, event("evt_1", "charge.refunded", charge))

        assert result.outcome == WebhookOutcome.APPLIED
        assert repository.get_wallet("user_1").balance == 2100
        refund = repository.list_transactions("user_1")[0]
        assert refund.kind == TransactionKind.REFUND
        assert refund.charge_id == "ch_1"

    def test_refund_without_user_ignored(self, reconciler, repository):
        charge = {"id": "ch_1", "amount_refunded": 100000, "metadata": {}}
        result = deliver(reconciler, event("evt_1", "charge.refunded", charge))

        assert result.outcome == WebhookOutcome.IGNORED
        assert repository.get_event("evt_1").processed

    def test_unhandled_event_type(self, reconciler, repository):
        result = deliver(reconciler, event("evt_9", "invoice.paid", {"id": "in_1"}))

        assert result.outcome == WebhookOutcome.IGNORED
        assert repository.get_event("evt_9").processed


class TestConcurrentRedelivery:
    """Test deliveries of one event racing past the duplicate check."""

    def test_refund_applied_once(self, reconciler, repository, monkeypatch):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 0)
        charge = {
            "id": "ch_1",
            "amount_refunded": 100000,
            "payment_intent": "pi_1",
            "metadata": {"userId": "user_1"},
        }
        payload = event("evt_1", "charge.refunded", charge)

        barrier = threading.Barrier(2, timeout=10)
        record_event = repository.record_event

        def record_then_wait(*args, **kwargs):
            record = record_event(*args, **kwargs)
            barrier.wait()
            return record

        monkeypatch.setattr(repository, "record_event", record_then_wait)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: deliver(reconciler, payload), range(2)))

        assert sorted(r.outcome.value for r in results) == ["applied", "duplicate"]
        assert repository.get_wallet("user_1").balance == 1000
        refunds = [
            t for t in repository.list_transactions("user_1")
            if t.kind == TransactionKind.REFUND
        ]
        assert len(refunds) == 1
        record = repository.get_event("evt_1")
        assert record.processed
        assert record.retry_count == 0

    def test_apply_on_processed_event_raises(self, repository):
        repository.create_wallet("user_1", PlanTier.PRO_STANDARD, 0)
        repository.record_event("evt_1", "charge.refunded", None, "{}")
        repository.apply_refund("evt_1", "user_1", 1000, 10000, "ch_1")

        with pytest.raises(DuplicateEventError):
            repository.apply_refund("evt_1", "user_1", 1000, 10000, "ch_1")

        assert repository.get_wallet("user_1").balance == 1000
