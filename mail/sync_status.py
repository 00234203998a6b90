"""Cache-backed leases for sync execution: per-account lock, global slots, dispatch markers."""
import uuid
from typing import Optional

from django.conf import settings
from django.core.cache import cache

SYNC_LOCK_KEY = "mail:sync_lock:{account_id}"
SYNC_SLOT_KEY = "mail:sync_slot:{slot}"
DISPATCH_MARKER_KEY = "mail:sync_dispatched:{account_id}"
DISPATCH_MARKER_TIMEOUT = 120


def lease_seconds() -> int:
    return int(getattr(settings, "EMAIL_SYNC_LOCK_LEASE_SECONDS", 300))


def max_concurrent() -> int:
    return int(getattr(settings, "EMAIL_SYNC_MAX_CONCURRENT", 8))


def acquire_sync_lock(account_id: int, timeout_seconds: Optional[int] = None) -> Optional[str]:
    """
    Acquire an account-scoped lease for sync execution.
    Returns the lease token, or None if another worker already holds it.
    The lease expires on its own if the worker dies.
    """
    token = uuid.uuid4().hex
    acquired = cache.add(
        SYNC_LOCK_KEY.format(account_id=account_id),
        token,
        timeout=timeout_seconds or lease_seconds(),
    )
    return token if acquired else None


def renew_sync_lock(account_id: int, token: str, timeout_seconds: Optional[int] = None) -> bool:
    key = SYNC_LOCK_KEY.format(account_id=account_id)
    if cache.get(key) != token:
        return False
    return bool(cache.touch(key, timeout_seconds or lease_seconds()))


def release_sync_lock(account_id: int, token: str) -> None:
    # Only the holder may release; an expired lease may already belong to someone else
    key = SYNC_LOCK_KEY.format(account_id=account_id)
    if cache.get(key) == token:
        cache.delete(key)


def is_sync_locked(account_id: int) -> bool:
    return cache.get(SYNC_LOCK_KEY.format(account_id=account_id)) is not None


def acquire_slot(timeout_seconds: Optional[int] = None) -> Optional[str]:
    """Take one of EMAIL_SYNC_MAX_CONCURRENT global slots. Returns the slot key or None."""
    for slot in range(max_concurrent()):
        key = SYNC_SLOT_KEY.format(slot=slot)
        if cache.add(key, "1", timeout=timeout_seconds or lease_seconds()):
            return key
    return None


def renew_slot(slot_key: str, timeout_seconds: Optional[int] = None) -> None:
    cache.touch(slot_key, timeout_seconds or lease_seconds())


def release_slot(slot_key: Optional[str]) -> None:
    if slot_key:
        cache.delete(slot_key)


def free_slot_count() -> int:
    keys = [SYNC_SLOT_KEY.format(slot=slot) for slot in range(max_concurrent())]
    taken = cache.get_many(keys)
    return len(keys) - len(taken)


def mark_dispatched(account_id: int, timeout_seconds: int = DISPATCH_MARKER_TIMEOUT) -> bool:
    """True for the first dispatch inside the window; False if the account is already queued."""
    return bool(
        cache.add(
            DISPATCH_MARKER_KEY.format(account_id=account_id),
            "1",
            timeout=timeout_seconds,
        )
    )


def clear_dispatched(account_id: int) -> None:
    cache.delete(DISPATCH_MARKER_KEY.format(account_id=account_id))
