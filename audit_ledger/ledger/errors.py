"""Exception types for the audit ledger."""


class LedgerError(Exception):
    """Base class for ledger failures."""


class OutOfOrderAppendError(LedgerError):
    """Raised when an append claims a timestamp earlier than the chain tail.

    Such events must go through the offline merge so the affected suffix is
    repaired.
    """


class WindowNotClosedError(LedgerError):
    """Raised when an export is requested for a day that has not ended."""


class ArchiveExportError(LedgerError):
    """Raised when an archive export cannot be completed."""
