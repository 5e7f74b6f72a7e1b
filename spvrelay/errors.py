from __future__ import annotations


class ValidationError(Exception):
    pass


class NotInitialized(ValidationError):
    pass


class InsufficientFee(ValidationError):
    pass


class InvalidHeader(ValidationError):
    pass


class DuplicateHeader(ValidationError):
    pass


class UnknownParent(ValidationError):
    pass


class InvalidHeight(ValidationError):
    pass


class ProofOfWorkNotMet(ValidationError):
    pass


class PayoutError(RuntimeError):
    """Raised by a payer when a fee transfer cannot complete."""
