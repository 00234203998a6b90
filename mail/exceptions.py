"""
Error taxonomy shared by provider adapters, the index store and the sync orchestrator.

Only Fatal errors and exhausted Transient retries are surfaced on an account's
sync status; the rest are recovered inside the orchestrator.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for every sync-related failure."""


class AuthExpired(SyncError):
    """Provider rejected the credential; refresh once, then retry."""


class RateLimited(SyncError):
    """Provider asked us to back off. retry_after is in seconds when the provider hinted one."""

    def __init__(self, message: str = "Rate limited by provider", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class Transient(SyncError):
    """Network hiccup or 5xx; retry with bounded attempts and backoff."""


class NotFound(SyncError):
    """Record or folder is gone; skip it and continue."""


class Fatal(SyncError):
    """Irrecoverable error; the account is marked failed until retried or re-enabled."""


class DataIntegrityViolation(SyncError):
    """A write was rejected at the index boundary (unresolved owner, malformed identity)."""

    def __init__(self, message: str, provider_message_id: Optional[str] = None):
        super().__init__(message)
        self.provider_message_id = provider_message_id
