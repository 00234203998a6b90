"""
Quota/Throttle Guard: per-cycle caps on new rows, the kill switch and emergency stop.

Global concurrency slots live in mail.sync_status next to the account lock.
"""
import logging
from typing import Dict, Optional

from django.conf import settings
from django.db import transaction

from accounts.models import Account
from mail.models import Direction, SyncControl, SyncState, SyncStatus

logger = logging.getLogger(__name__)


def cycle_caps(provider: Optional[str] = None) -> Dict[str, int]:
    caps = {
        Direction.INBOUND: int(getattr(settings, "EMAIL_SYNC_MAX_RECEIVED_PER_CYCLE", 5000)),
        Direction.OUTBOUND: int(getattr(settings, "EMAIL_SYNC_MAX_SENT_PER_CYCLE", 5000)),
    }
    overrides = (getattr(settings, "EMAIL_SYNC_PROVIDER_CAPS", {}) or {}).get(provider or "", {})
    for direction, value in overrides.items():
        if direction in caps:
            caps[direction] = int(value)
    return caps


class CycleBudget:
    """New-row budget for one sync cycle, tracked independently per direction."""

    def __init__(self, caps: Dict[str, int]):
        self.caps = dict(caps)
        self.used = {direction: 0 for direction in self.caps}

    @classmethod
    def for_account(cls, account: Account) -> "CycleBudget":
        return cls(cycle_caps(account.provider))

    def remaining(self, direction: str) -> int:
        return max(0, self.caps.get(direction, 0) - self.used.get(direction, 0))

    def consume(self, direction: str, n: int) -> None:
        if n > self.remaining(direction):
            raise ValueError(
                f"Cycle cap exceeded for {direction}: {n} requested, {self.remaining(direction)} left"
            )
        self.used[direction] = self.used.get(direction, 0) + n


def is_kill_switch_on() -> bool:
    # Always read through to the database so every worker sees a flip immediately
    return SyncControl.objects.filter(pk=SyncControl.SINGLETON_ID, kill_switch=True).exists()


def set_kill_switch(on: bool, changed_by: str = "") -> SyncControl:
    control = SyncControl.load()
    control.kill_switch = bool(on)
    control.changed_by = changed_by or ""
    control.save()
    logger.warning("Sync kill switch set to %s by %s", control.kill_switch, changed_by or "unknown")
    return control


def emergency_stop(changed_by: str = "") -> int:
    """Disable sync on every account in one statement and ask running cycles to stop."""
    with transaction.atomic():
        disabled = Account.objects.update(sync_enabled=False)
        SyncState.objects.filter(state=SyncStatus.RUNNING).update(stop_requested=True)
    logger.warning("Emergency stop by %s: sync disabled on %s accounts", changed_by or "unknown", disabled)
    return disabled
