"""
Cinegen - storyboard generation core.

Batched storyboard generation against a rate-limited generation service,
gated by a prepaid token ledger reconciled against payment provider events.
"""

__version__ = "0.1.0"
