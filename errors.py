from typing import Optional


class LedgerError(Exception):
    pass


class ValidationError(LedgerError, ValueError):
    pass


class NotFoundError(LedgerError, ValueError):
    pass


class ConflictError(LedgerError):
    """Storage rejected a duplicate (template, month) instance."""


class StorageError(LedgerError, RuntimeError):
    pass


class ReconciliationError(StorageError):
    """A required step of a template mutation failed and was rolled back."""

    def __init__(self, step: str, message: Optional[str] = None) -> None:
        self.step = step
        super().__init__(message or f"Recurring expense step failed: {step}")
