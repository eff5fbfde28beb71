"""
Stripe payment gateway.

Creates the provider customer and payment intent for a plan upgrade or a
token top-up and records the charge as a pending payment. Tokens are only
credited later, when the provider confirms the payment.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import stripe

from cinegen.core.errors import PaymentError
from cinegen.core.pricing import DEFAULT_PRICING_TABLE, PlanTier, PricingTable
from cinegen.core.session import Session
from cinegen.storage.models import IntentStatus, PendingPaymentIntent, TransactionKind
from cinegen.storage.repository import AccountRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    """What the client needs to confirm the charge."""
    payment_intent_id: str
    client_secret: Optional[str]
    amount: int
    tokens: int
    description: str


class PaymentGateway:
    """Creates charges through Stripe and records them as pending."""

    def __init__(
        self,
        repository: AccountRepository,
        api_key: Optional[str],
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        currency: str = "jpy"
    ):
        """Initialize the gateway.

        Raises:
            ValueError: If api_key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        self.repository = repository
        self.api_key = api_key
        self.pricing = pricing
        self.currency = currency

    def ensure_customer(self, session: Session) -> str:
        """Return the user's provider customer id, creating it on first use.

        Raises:
            PaymentError: If the user has no wallet or Stripe rejects the call
        """
        wallet = self.repository.get_wallet(session.user_id)
        if wallet is None:
            raise PaymentError(f"User not found: {session.user_id}")
        if wallet.customer_id:
            return wallet.customer_id

        try:
            customer = stripe.Customer.create(
                email=session.email or wallet.email,
                name=session.display_name or wallet.display_name or "User",
                metadata={"userId": session.user_id},
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error("Error creating Stripe customer: %s", e)
            raise PaymentError(str(e))

        self.repository.set_customer_id(session.user_id, customer.id)
        return customer.id

    def create_payment_intent(
        self,
        customer_id: str,
        amount: int,
        description: str,
        metadata: Dict[str, str]
    ):
        """Create a Stripe payment intent.

        Raises:
            PaymentError: If Stripe rejects the call
        """
        try:
            return stripe.PaymentIntent.create(
                customer=customer_id,
                amount=amount,
                currency=self.currency,
                description=description,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error("Error creating payment intent: %s", e)
            raise PaymentError(str(e))

    def create_checkout(
        self,
        session: Session,
        kind: TransactionKind,
        plan: Optional[PlanTier] = None
    ) -> CheckoutResult:
        """Start a plan upgrade or top-up charge.

        Raises:
            ValueError: If the kind/plan combination is invalid
            PaymentError: If the user can't be charged for it
        """
        wallet = self.repository.get_wallet(session.user_id)
        if wallet is None:
            raise PaymentError(f"User not found: {session.user_id}")

        metadata = {"userId": session.user_id}

        if kind == TransactionKind.PLAN_UPGRADE:
            if plan is None or plan == PlanTier.FREE:
                raise ValueError("A paid plan is required for an upgrade")
            pricing = self.pricing.get_plan(plan)
            amount = pricing.price
            tokens = pricing.grant_tokens
            description = f"{plan.value} upgrade - {tokens:,} tokens"
            metadata["plan"] = plan.value
        elif kind == TransactionKind.TOP_UP:
            pricing = self.pricing.get_plan(wallet.plan_tier)
            if pricing.topup_tokens is None:
                raise PaymentError("Top-ups require a paid plan")
            amount = self.pricing.topup_price
            tokens = pricing.topup_tokens
            description = f"Token top-up - {tokens:,} tokens"
            metadata["tokensAmount"] = str(tokens)
        else:
            raise ValueError(f"Cannot charge for {kind.value}")

        customer_id = self.ensure_customer(session)
        intent = self.create_payment_intent(customer_id, amount, description, metadata)

        self.repository.create_payment_intent(PendingPaymentIntent(
            external_id=intent.id,
            user_id=session.user_id,
            requested_kind=kind,
            requested_amount=tokens,
            charge_amount=amount,
            status=IntentStatus.PENDING,
            requested_plan=plan if kind == TransactionKind.PLAN_UPGRADE else None,
            description=description
        ))
        logger.info("Created payment intent %s for %s: %s", intent.id, session.user_id, description)

        return CheckoutResult(
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=amount,
            tokens=tokens,
            description=description
        )
