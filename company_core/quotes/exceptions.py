from django.core.exceptions import ValidationError


class QuoteStateError(ValidationError):
    """Raised when a quote transition is not legal from its current status."""


class PaymentProviderError(Exception):
    """The payment processor call failed or timed out. Safe to retry."""

    retryable = True

    def __init__(self, message, *, provider_code=None):
        super().__init__(message)
        self.provider_code = provider_code


class PaymentNotSettledError(Exception):
    """Confirmation was requested for an authorization that has not succeeded yet."""

    retryable = True

    def __init__(self, reference, status):
        super().__init__(f"Payment {reference} is not settled (status={status}).")
        self.reference = reference
        self.status = status


class OrphanedPaymentError(Exception):
    """A settled payment cannot be tied to a known project or quote.

    Never auto-repaired; an operator has to reconcile it by hand.
    """

    retryable = False

    def __init__(self, reference, reason, metadata=None):
        super().__init__(f"Payment {reference} cannot be reconciled: {reason}")
        self.reference = reference
        self.reason = reason
        self.metadata = dict(metadata or {})


class DuplicateConfirmationResolved(Exception):
    """Internal signal: the payment reference was already recorded by another call."""

    def __init__(self, reference):
        super().__init__(f"Payment {reference} was already processed.")
        self.reference = reference
