"""
Error hierarchy for the dispatch core.
"""

from typing import Any


class DialgateError(Exception):
    """Base class for all dispatch core errors."""


class ConfigurationError(DialgateError, ValueError):
    """Raised when configuration is invalid. Always fatal at startup."""


class AttemptInitiationError(DialgateError):
    """Raised by an AttemptInitiator when an attempt could not be started.

    Treated as a transient failure: the target goes back through the retry
    backoff path.
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_response: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.provider_response = provider_response or {}


class PersistenceError(DialgateError):
    """Raised by a state store when a load or save fails."""

    def __init__(self, message: str, collection: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.collection = collection


class UnknownTargetError(DialgateError, KeyError):
    """Raised when an operation names a target the component does not track."""

    def __init__(self, target_key: str) -> None:
        super().__init__(target_key)
        self.target_key = target_key

    def __str__(self) -> str:
        return f"Unknown target: {self.target_key}"
