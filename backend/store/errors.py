"""Store error hierarchy."""


class StoreError(Exception):
    """A read, write or subscription against the remote store failed."""


class TransactionAborted(StoreError):
    """Raised by a transaction function to leave the stored value untouched."""


class TransactionConflict(StoreError):
    """A transaction lost every retry against concurrent writers."""
