"""Errors raised by the round session, signature pad and record sink wrapper.

None of these is fatal: each one is local to the call that raised it and the
caller can retry the originating user action.
"""

from __future__ import annotations


class RoundError(Exception):
    """Base class for round workflow errors."""


class RoundValidationError(RoundError, ValueError):
    """Operation rejected synchronously because its preconditions do not hold."""


class InvalidPhaseError(RoundValidationError):
    """Operation is not allowed in the session's current phase."""

    def __init__(self, operation: str, phase: str) -> None:
        super().__init__(f"{operation} is not allowed while the round is {phase}")
        self.operation = operation
        self.phase = phase


class SignatureConfirmationRequired(RoundError):
    """Round has no signature and the user has not confirmed finishing unsigned."""


class EmptySignatureError(RoundError):
    """Signature surface has no ink to clear or export."""


class RoundPersistenceError(RoundError, RuntimeError):
    """Round log sink rejected the completed record; the session is still running."""


class SessionConflictError(RoundError):
    """Another open session already exists for the same task."""
