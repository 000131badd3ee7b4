from typing import Optional


class SyncError(Exception):
    """Base exception for the sync engine."""
    pass


class TransportError(SyncError):
    """Raised for network or protocol failures against a remote backend."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotAuthorized(SyncError):
    """Raised when a write needs a credential that is not configured. Never retried."""
    pass


class IntegrityError(SyncError):
    """Raised when a downloaded payload fails size or header verification."""
    pass


class ConfigurationError(SyncError):
    """Raised when required configuration fields are absent."""
    pass


class MalformedPayload(SyncError):
    """Raised when a remote JSON document cannot be parsed."""
    pass
