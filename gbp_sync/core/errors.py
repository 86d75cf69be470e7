"""Failure taxonomy for profile synchronisation."""

from typing import Optional


class SyncError(RuntimeError):
    """Base class for failures surfaced by a sync invocation."""


class ReauthorizationRequired(SyncError):
    """The refresh credential is missing or was rejected; the user must reconnect."""

    def __init__(self, message: str, account_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.account_id = account_id


class OAuthNotConfigured(SyncError):
    """Client credentials for the token endpoint are not stored."""


class BusinessNotFound(SyncError):
    """No business record exists for the requested id."""


class BusinessNotConnected(SyncError):
    """The business record is not linked to a profile location."""


class PersistenceFailure(SyncError):
    """Writing the computed snapshot failed, so the sync is not complete."""


class SnapshotNotFound(SyncError):
    """No synced profile data is stored for the business yet."""


class AuthorizationFailed(SyncError):
    """The authorization code could not be exchanged or the accounts could not be listed."""


class ResourceFetchFailed(SyncError):
    """One resource kind could not be fetched. Recovered by the aggregator."""

    def __init__(self, kind: str, reason: str) -> None:
        super().__init__(f"{kind}: {reason}")
        self.kind = kind
        self.reason = reason


class NormalizationAnomaly(SyncError):
    """A raw payload did not match any extraction rule. Recovered by the normalizer."""
