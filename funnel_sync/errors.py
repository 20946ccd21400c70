"""
Exception hierarchy for the funnel sync pipeline.

Recovery policy per error type:
  - TransportError / MetaAdsAPIError: the affected account is skipped, the cycle continues
  - DataShapeError: the offending field is treated as zero, the record is kept
  - PersistenceError: logged per funnel row, later rows are still written
  - OrchestrationError: ends the cycle early (account listing failed or was empty)
"""


class FunnelSyncError(Exception):
    """Base class for all funnel sync errors."""
    pass


class TransportError(FunnelSyncError):
    """Network or API failure while talking to a remote service."""
    pass


class MetaAdsAPIError(TransportError):
    """Custom exception for Meta Graph API errors."""

    def __init__(self, message: str, status: int | None = None, payload=None):
        super().__init__(message)
        self.status = status
        self.payload = payload


class DataShapeError(FunnelSyncError, ValueError):
    """A fetched record carried a missing or malformed field."""
    pass


class PersistenceError(FunnelSyncError):
    """The store rejected a write."""
    pass


class OrchestrationError(FunnelSyncError):
    """The cycle could not start: no accounts could be listed."""
    pass
