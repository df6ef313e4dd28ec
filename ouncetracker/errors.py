"""Exception types shared across the worker."""

from __future__ import annotations


class OunceTrackerError(RuntimeError):
    """Base class for worker errors."""


class ResourceTimeout(OunceTrackerError):
    """Raised when a bounded browser operation exceeds its time limit."""

    def __init__(self, operation: str, timeout_s: float) -> None:
        super().__init__(f"{operation} timed out after {timeout_s:.1f}s")
        self.operation = operation
        self.timeout_s = timeout_s


class ExtractionFailure(OunceTrackerError):
    """Raised when a strategy produced a value that cannot be recorded."""

    def __init__(self, dealer_id: str, product_name: str, reason: str) -> None:
        super().__init__(f"{dealer_id} / {product_name}: {reason}")
        self.dealer_id = dealer_id
        self.product_name = product_name
        self.reason = reason


class PersistenceFailure(OunceTrackerError):
    """Raised when a listing write fails at the storage layer."""


class ConfigurationFault(OunceTrackerError):
    """Raised for missing credentials or identifiers unknown to storage."""
