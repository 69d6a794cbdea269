"""
Error kinds raised by the reconciliation engine.
"""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base exception for engine errors."""
    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInput(ReconciliationError):
    """Malformed record (empty id, non-finite amount, ...). Nothing is applied."""


class SourceUnavailable(ReconciliationError):
    """A fetch collaborator failed."""
    def __init__(self, message: str, source: Optional[str] = None, details: Any = None):
        super().__init__(message, details)
        self.source = source


class ConfigurationConflict(ReconciliationError):
    """Configuration value out of its allowed range."""


class ConcurrencyConflict(ReconciliationError):
    """Two pipeline runs target the same scope."""
    def __init__(self, message: str, scope: Any = None):
        super().__init__(message)
        self.scope = scope
