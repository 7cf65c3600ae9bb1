"""
Exceptions raised by the store layer and the reconciliation sweep.

Every sweep exception can carry the partially filled report so callers can
still emit the machine-readable summary after a failure.
"""

from typing import List, Optional


class SweepError(Exception):
    """Base exception for sweep operations."""

    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class StoreConnectionError(SweepError):
    """Store unreachable or authentication failed. Raised before any read."""
    pass


class StoreReadError(SweepError):
    """A collection scan failed; nothing read so far is trusted."""

    def __init__(self, message: str, collection: Optional[str] = None, report=None):
        super().__init__(message, report)
        self.collection = collection


class StoreWriteError(SweepError):
    """One or more per-id deletions failed."""

    def __init__(self, message: str, failures: Optional[List] = None, report=None):
        super().__init__(message, report)
        self.failures = failures or []


class VerificationMismatch(SweepError):
    """Orphans remain after deletion."""

    def __init__(self, message: str, remaining: int = 0, report=None):
        super().__init__(message, report)
        self.remaining = remaining


class SweepAborted(SweepError):
    """The sweep deadline passed or cancellation was requested."""
    pass


class RecordMappingError(SweepError):
    """A source document could not be mapped to a Record."""
    pass


class ExportError(SweepError):
    """Writing or reading an orphan export failed."""
    pass
