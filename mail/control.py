"""Administrative control surface shared by the REST API and management commands."""
import logging
from typing import Optional

from django.db import transaction

from accounts.models import Account
from mail import quota
from mail.content_cache import ContentCache
from mail.index_store import IndexStore
from mail.models import SyncControl, SyncMode, SyncState, SyncStatus
from mail.sync_status import clear_dispatched, is_sync_locked

logger = logging.getLogger(__name__)


def start_sync(account_id: int, mode: str = SyncMode.INCREMENTAL, run_inline: bool = False):
    """
    Trigger a sync cycle. Queued on the worker pool by default; run_inline runs
    the orchestrator in the calling process and returns its outcome dict.
    """
    from mail.tasks import sync_account_emails

    if mode not in SyncMode.values:
        raise ValueError(f"Unknown sync mode: {mode}")
    account = Account.objects.get(pk=account_id)
    if run_inline:
        return sync_account_emails(account.pk, mode)
    task_result = sync_account_emails.delay(account.pk, mode)
    logger.info("Queued %s sync for account %s task_id=%s", mode, account.pk, task_result.id)
    return {"account_id": account.pk, "mode": mode, "task_id": task_result.id}


def stop_sync(account_id: int) -> bool:
    """Ask a running cycle to stop after its current page. Returns False when nothing is running."""
    updated = SyncState.objects.filter(account_id=account_id, state=SyncStatus.RUNNING).update(
        stop_requested=True
    )
    clear_dispatched(account_id)
    logger.info("Stop requested for account %s (running=%s)", account_id, bool(updated))
    return bool(updated)


def set_kill_switch(on: bool, changed_by: str = "") -> SyncControl:
    return quota.set_kill_switch(on, changed_by=changed_by)


def emergency_stop(changed_by: str = "") -> int:
    return quota.emergency_stop(changed_by=changed_by)


def get_sync_status(account_id: int) -> dict:
    account = Account.objects.get(pk=account_id)
    state = SyncState.objects.filter(account=account).first()
    index_store = IndexStore()
    return {
        "account_id": account.pk,
        "email": account.email,
        "provider": account.provider,
        "sync_enabled": account.sync_enabled,
        "state": state.state if state else SyncStatus.IDLE,
        "last_sync_at": state.last_sync_at if state else None,
        "last_attempt_at": state.last_attempt_at if state else None,
        "next_attempt_at": state.next_attempt_at if state else None,
        "last_error": state.last_error if state else "",
        "consecutive_error_count": state.consecutive_error_count if state else 0,
        "stop_requested": state.stop_requested if state else False,
        "lock_held": is_sync_locked(account.pk),
        "kill_switch": quota.is_kill_switch_on(),
        "message_count": index_store.count(account.pk),
        "cached_bodies": ContentCache().stats(account.pk)["entries"],
    }


def disconnect_mailbox(account_id: int, changed_by: Optional[str] = None) -> dict:
    """Remove a mailbox and, through cascading deletes, its sync state, index rows and cached bodies."""
    with transaction.atomic():
        account = Account.objects.select_for_update().get(pk=account_id)
        email = account.email
        account.delete()
    clear_dispatched(account_id)
    logger.warning("Disconnected mailbox %s (account %s) by %s", email, account_id, changed_by or "unknown")
    return {"account_id": account_id, "email": email, "deleted": True}
