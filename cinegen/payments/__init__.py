"""
Payment provider integration for Cinegen.

Creates charges for plan upgrades and top-ups and reconciles the provider's
asynchronous events against the token ledger.
"""

from .gateway import CheckoutResult, PaymentGateway
from .webhook import PaymentReconciler, WebhookOutcome, WebhookResult

__all__ = [
    "CheckoutResult",
    "PaymentGateway",
    "PaymentReconciler",
    "WebhookOutcome",
    "WebhookResult",
]
