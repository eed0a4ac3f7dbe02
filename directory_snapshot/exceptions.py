"""Application-level exception types.

Convention:
- ``DirectorySyncError`` is the single "sync failed" error surfaced by
  ``sync()``. Callers that only care whether a refresh worked catch this.
- The subclasses name the failing collaborator so callers and logs can tell
  a remote outage from a database outage. All of them are recoverable by
  retrying later; the snapshot on disk is always the last committed one.
- Read paths do not wrap errors: a store failure during a query propagates
  as the underlying SQLAlchemy exception.
"""

from __future__ import annotations


class DirectorySyncError(Exception):
    """Raised when a snapshot synchronization does not complete."""


class SourceUnavailableError(DirectorySyncError):
    """The hierarchy source could not be fetched (network, auth, timeout, bad payload).

    Raised before any write, so the previous snapshot is untouched.
    """


class GraphAuthError(SourceUnavailableError):
    """Microsoft Graph rejected the client-credentials token request."""


class StoreUnavailableError(DirectorySyncError):
    """The relational store could not be reached during bootstrap or a write."""


class TransactionFailureError(DirectorySyncError):
    """The reconciliation transaction failed and was rolled back."""
