"""
Exception hierarchy for Cinegen.

Insufficient funds has no exception class; ledger operations report it
through typed results.
"""

from typing import Optional


class CinegenError(Exception):
    """Base class for all Cinegen errors."""


class GenerationError(CinegenError):
    """A call to the generation service could not produce a result."""


class ServiceBusyError(GenerationError):
    """The generation service stayed overloaded for the whole retry budget."""

    def __init__(self, message: str = "The generation service is busy. Please try again later."):
        super().__init__(message)


class MalformedResponseError(GenerationError):
    """Structured output could not be parsed into the expected shape."""

    def __init__(
        self,
        message: str = "The response could not be parsed. Please retry.",
        raw_text: Optional[str] = None
    ):
        super().__init__(message)
        self.raw_text = raw_text


class BatchJobError(GenerationError):
    """A sequential batch failed and the whole job was aborted."""

    def __init__(self, message: str, batch=None):
        super().__init__(message)
        self.batch = batch


class LedgerError(CinegenError):
    """The account store rejected or could not perform a ledger operation."""


class DuplicateEventError(LedgerError):
    """A payment event was already applied by an earlier delivery."""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} was already processed")
        self.event_id = event_id


class PaymentError(CinegenError):
    """The payment provider rejected a request."""


class ReconciliationError(PaymentError):
    """A verified payment event failed while being applied to the ledger."""

    def __init__(self, message: str, event_id: str):
        super().__init__(message)
        self.event_id = event_id
