"""Exception taxonomy for the sync pipeline."""


class HealthSyncError(Exception):
    """Base class for every error raised by the sync pipeline."""
    pass


class ConfigurationError(HealthSyncError):
    """Raised when a provider's OAuth app settings are missing."""
    pass


class AuthExchangeError(HealthSyncError):
    """Raised when the authorization-code exchange fails or is rejected."""
    pass


class NoCredentialError(HealthSyncError):
    """Raised when no credential is stored for the provider."""
    pass


class RefreshError(HealthSyncError):
    """Raised when a refresh-token exchange fails. The user must re-authorize."""
    pass


class FetchError(HealthSyncError):
    """Raised on a non-recoverable failure talking to a provider data API."""
    pass


class ReconcileError(HealthSyncError):
    """Raised when the measurement store rejects an insert or delete."""
    pass


class SyncError(HealthSyncError):
    """Raised at the orchestrator boundary; the original failure is __cause__."""

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider
