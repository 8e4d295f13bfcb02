"""
Ledger Error Taxonomy

Every failure the engine surfaces to its callers is one of these. All
financial checks raise before any mutation, so catching one of these means
nothing was committed.
"""


class LedgerError(Exception):
    """Base exception for all ledger engine errors."""


class ValidationError(LedgerError):
    """Malformed or out-of-range input. Never retried."""


class InsufficientFunds(LedgerError):
    """A withdrawal or payment exceeds the available savings balance."""
    
    def __init__(self, message: str, available=None, requested=None):
        super().__init__(message)
        self.available = available
        self.requested = requested


class ConflictError(LedgerError):
    """The entity is in a state that does not allow the operation."""


class NotFound(LedgerError):
    """A referenced member, loan or transaction does not exist."""


class PersistenceError(LedgerError):
    """The storage backend failed while reading or committing."""
