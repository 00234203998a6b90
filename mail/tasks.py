import logging

from celery import shared_task
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from accounts.models import Account
from mail.content_cache import ContentCache
from mail.models import SyncMode
from mail.quota import is_kill_switch_on
from mail.services import SyncOrchestrator
from mail.sync_status import clear_dispatched, free_slot_count, mark_dispatched

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


def due_accounts(now=None):
    """
    Accounts due for a cycle, most overdue first: active, connected, sync enabled,
    past their polling interval (never below the floor) and not in retry backoff.
    """
    now = now or timezone.now()
    if is_kill_switch_on():
        return Account.objects.none()
    floor = int(getattr(settings, "EMAIL_SYNC_MIN_POLL_INTERVAL_SECONDS", 60))
    qs = Account.objects.filter(is_active=True, is_connected=True, sync_enabled=True).filter(
        Q(sync_state__next_attempt_at__isnull=True) | Q(sync_state__next_attempt_at__lte=now)
    )
    never_synced = list(qs.filter(sync_state__last_sync_at__isnull=True).order_by("pk"))

    synced = []
    for account in qs.filter(sync_state__last_sync_at__isnull=False).select_related("sync_state"):
        interval = max(account.polling_interval_seconds, floor)
        overdue = (now - account.sync_state.last_sync_at).total_seconds() - interval
        if overdue > 0:
            synced.append((overdue, account))
    synced.sort(key=lambda item: item[0], reverse=True)
    return never_synced + [account for _, account in synced]


@shared_task
def sync_account_emails(account_id: int, mode: str = SyncMode.INCREMENTAL):
    """Run one sync cycle for an account."""
    logger.info("sync_account_emails starting for account_id=%s mode=%s", account_id, mode)
    try:
        outcome = SyncOrchestrator().run(account_id, mode=mode)
    except Exception as e:
        logger.exception("sync_account_emails failed account_id=%s", account_id)
        return {"account_id": account_id, "error": str(e)}
    finally:
        clear_dispatched(account_id)
    logger.info(
        "sync_account_emails finished account_id=%s state=%s created=%s updated=%s",
        account_id,
        outcome.state,
        dict(outcome.created),
        dict(outcome.updated),
    )
    return outcome.as_dict()


@shared_task
def sync_due_accounts():
    """Scheduler tick: dispatch due accounts, at most one per free concurrency slot."""
    if is_kill_switch_on():
        logger.info("sync_due_accounts: kill switch on, nothing dispatched")
        return {"dispatched": [], "kill_switch": True}

    free = free_slot_count()
    dispatched = []
    for account in due_accounts():
        if len(dispatched) >= free:
            break
        if not mark_dispatched(account.pk):
            continue
        task_result = sync_account_emails.delay(account.pk)
        dispatched.append({"account_id": account.pk, "task_id": task_result.id})

    sync_audit.info(
        "sync_due_accounts dispatched",
        extra={"free_slots": free, "dispatched_count": len(dispatched)},
    )
    return {"dispatched": dispatched, "kill_switch": False}


@shared_task
def sweep_content_cache():
    deleted = ContentCache().sweep()
    return {"deleted": deleted}
