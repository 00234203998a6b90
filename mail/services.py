import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, List, Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from accounts.models import Account
from accounts.services import OwnerDirectory, TokenProvider
from mail.exceptions import (
    AuthExpired,
    DataIntegrityViolation,
    Fatal,
    NotFound,
    RateLimited,
    SyncError,
    Transient,
)
from mail.index_store import IndexStore
from mail.models import SyncMode, SyncRun, SyncState, SyncStatus
from mail.providers import MessagePage, ProviderAdapter, direction_for, get_adapter
from mail.quota import CycleBudget, is_kill_switch_on
from mail.sync_status import (
    acquire_slot,
    acquire_sync_lock,
    release_slot,
    release_sync_lock,
    renew_slot,
    renew_sync_lock,
)

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

# Outcome for triggers that never entered Running (lock held, no slot, account disabled)
SKIPPED = "skipped"


def retry_delay(consecutive_errors: int) -> timedelta:
    """Exponential backoff for the next scheduled attempt, capped at EMAIL_SYNC_RETRY_MAX_SECONDS."""
    base = int(getattr(settings, "EMAIL_SYNC_RETRY_BASE_SECONDS", 60))
    cap = int(getattr(settings, "EMAIL_SYNC_RETRY_MAX_SECONDS", 3600))
    n = max(1, consecutive_errors)
    return timedelta(seconds=min(base * 2 ** (n - 1), cap))


@dataclass
class SyncOutcome:
    account_id: int
    mode: str = SyncMode.INCREMENTAL
    state: str = SyncStatus.IDLE
    created: Counter = field(default_factory=Counter)
    updated: Counter = field(default_factory=Counter)
    pages: int = 0
    rejected: List[str] = field(default_factory=list)
    deferred_by_quota: bool = False
    error: str = ""

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "mode": self.mode,
            "state": self.state,
            "created": dict(self.created),
            "updated": dict(self.updated),
            "pages": self.pages,
            "rejected": list(self.rejected),
            "deferred_by_quota": self.deferred_by_quota,
            "error": self.error,
        }


class _StopRequested(Exception):
    pass


class _LeaseLost(Exception):
    """The account lock expired and may now belong to another worker."""


@dataclass
class _Cycle:
    account: Account
    state: SyncState
    budget: CycleBudget
    outcome: SyncOutcome
    lock_token: str
    slot_key: str
    adapter: Optional[ProviderAdapter] = None
    owner_id: Optional[int] = None
    refreshed: bool = False


class SyncOrchestrator:
    """
    Drives one sync cycle for one account: lock, fetch pages per folder in cursor
    order, upsert each page and advance the cursor atomically, then record the
    resulting state on SyncState.
    """

    def __init__(
        self,
        adapter_factory: Callable[[Account], ProviderAdapter] = get_adapter,
        token_provider: Optional[TokenProvider] = None,
        owner_directory: Optional[OwnerDirectory] = None,
        index_store: Optional[IndexStore] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.adapter_factory = adapter_factory
        self.token_provider = token_provider or TokenProvider()
        self.owner_directory = owner_directory or OwnerDirectory()
        self.index_store = index_store or IndexStore()
        self.sleep = sleep

    @property
    def page_size(self) -> int:
        return int(getattr(settings, "EMAIL_SYNC_PAGE_SIZE", 100))

    @property
    def folders(self) -> List[str]:
        return list(getattr(settings, "EMAIL_SYNC_FOLDERS", ["inbox", "sent"]))

    def run(self, account_id: int, mode: str = SyncMode.INCREMENTAL) -> SyncOutcome:
        outcome = SyncOutcome(account_id=account_id, mode=mode)

        if is_kill_switch_on():
            sync_audit.info("sync cycle refused: kill switch on", extra={"account_id": account_id})
            return outcome

        account = Account.objects.filter(pk=account_id).first()
        if account is None:
            outcome.state = SKIPPED
            outcome.error = "Account not found"
            return outcome
        if not (account.is_active and account.is_connected and account.sync_enabled):
            outcome.state = SKIPPED
            outcome.error = "Account is inactive, disconnected or has sync disabled"
            sync_audit.info(
                "sync cycle skipped: account not eligible",
                extra={
                    "account_id": account_id,
                    "is_active": account.is_active,
                    "is_connected": account.is_connected,
                    "sync_enabled": account.sync_enabled,
                },
            )
            return outcome

        lock_token = acquire_sync_lock(account_id)
        if not lock_token:
            outcome.state = SKIPPED
            outcome.error = "Sync already running for this account"
            logger.info("sync skipped account_id=%s reason=lock-held", account_id)
            return outcome

        slot_key = acquire_slot()
        if not slot_key:
            release_sync_lock(account_id, lock_token)
            outcome.state = SKIPPED
            outcome.error = "No free sync slot"
            logger.info("sync skipped account_id=%s reason=no-free-slot", account_id)
            return outcome

        try:
            return self._run_locked(account, mode, outcome, lock_token, slot_key)
        finally:
            release_slot(slot_key)
            release_sync_lock(account_id, lock_token)

    def _run_locked(self, account: Account, mode: str, outcome: SyncOutcome, lock_token: str, slot_key: str) -> SyncOutcome:
        started_at = timezone.now()
        # A pending stop_requested is left alone so a stop issued before Running still applies
        with transaction.atomic():
            state, _ = SyncState.objects.get_or_create(account=account)
            state.state = SyncStatus.RUNNING
            state.last_attempt_at = started_at
            update_fields = ["state", "last_attempt_at", "updated_at"]
            if mode == SyncMode.FULL:
                state.cursor = {}
                update_fields.append("cursor")
            state.save(update_fields=update_fields)
            run = SyncRun.objects.create(
                account=account, mode=mode, outcome=SyncStatus.RUNNING, started_at=started_at
            )

        cycle = _Cycle(
            account=account,
            state=state,
            budget=CycleBudget.for_account(account),
            outcome=outcome,
            lock_token=lock_token,
            slot_key=slot_key,
        )

        try:
            cycle.owner_id = self.owner_directory.resolve_owner(account.pk)
            if cycle.owner_id is None:
                logger.warning("Owner unresolved for account %s; index writes will be rejected", account.pk)
            cycle.adapter = self.adapter_factory(account)
            sync_audit.info(
                "sync cycle starting",
                extra={
                    "account_id": account.pk,
                    "mode": mode,
                    "folders": self.folders,
                    "caps": cycle.budget.caps,
                },
            )
            for folder in self.folders:
                self._sync_folder(cycle, folder)
        except _LeaseLost:
            self._abandon(cycle, run)
        except _StopRequested:
            self._finish(cycle, run, SyncStatus.IDLE)
        except RateLimited as e:
            self._finish_rate_limited(cycle, run, e)
        except SyncError as e:
            self._finish_failed(cycle, run, str(e))
        except Exception as e:
            logger.exception("sync cycle crashed account_id=%s", account.pk)
            self._finish_failed(cycle, run, str(e))
            raise
        else:
            self._finish(cycle, run, SyncStatus.COMPLETED)
        finally:
            if cycle.adapter is not None:
                cycle.adapter.close()
        return outcome

    def _check_stop(self, cycle: _Cycle) -> None:
        if is_kill_switch_on():
            sync_audit.info("sync cycle stopping: kill switch on", extra={"account_id": cycle.account.pk})
            raise _StopRequested()
        if Account.objects.filter(pk=cycle.account.pk, sync_enabled=False).exists():
            sync_audit.info("sync cycle stopping: sync disabled", extra={"account_id": cycle.account.pk})
            raise _StopRequested()
        if SyncState.objects.filter(pk=cycle.state.pk, stop_requested=True).exists():
            sync_audit.info("sync cycle stopping: stop requested", extra={"account_id": cycle.account.pk})
            raise _StopRequested()

    def _renew_leases(self, cycle: _Cycle) -> None:
        if not renew_sync_lock(cycle.account.pk, cycle.lock_token):
            raise _LeaseLost()
        renew_slot(cycle.slot_key)

    def _sync_folder(self, cycle: _Cycle, folder: str) -> None:
        direction = direction_for(folder)
        while True:
            self._check_stop(cycle)
            self._renew_leases(cycle)
            remaining = cycle.budget.remaining(direction)
            if remaining <= 0:
                cycle.outcome.deferred_by_quota = True
                sync_audit.info(
                    "sync folder deferred: cycle cap reached",
                    extra={"account_id": cycle.account.pk, "folder": folder, "direction": direction},
                )
                return

            cursor = (cycle.state.cursor or {}).get(folder)
            limit = min(self.page_size, remaining)
            try:
                page = self._fetch_page(cycle, folder, cursor, limit)
            except NotFound as e:
                logger.warning("Folder %s unavailable for account %s: %s", folder, cycle.account.pk, e)
                return
            cycle.outcome.pages += 1

            # The fetch may have outlived the lease; never write under a lock we no longer hold
            self._renew_leases(cycle)
            advanced = self._commit_page(cycle, folder, direction, page)

            if not advanced or not page.has_more:
                return
            if page.next_cursor == cursor and not page.summaries:
                logger.warning("Provider returned a non-advancing page for account %s folder %s", cycle.account.pk, folder)
                return

    def _fetch_page(self, cycle: _Cycle, folder: str, cursor, limit: int) -> MessagePage:
        max_attempts = int(getattr(settings, "EMAIL_SYNC_TRANSIENT_MAX_ATTEMPTS", 3))
        backoff = float(getattr(settings, "EMAIL_SYNC_TRANSIENT_BACKOFF_SECONDS", 2))
        attempt = 0
        while True:
            try:
                try:
                    page = cycle.adapter.list_messages(folder, cursor, limit)
                    # A later expiry in a long cycle gets its own refresh
                    cycle.refreshed = False
                    return page
                except AuthExpired as e:
                    if cycle.refreshed:
                        raise Fatal(f"Credential rejected after refresh: {e}")
                    cycle.refreshed = True
                    logger.info("Refreshing credential for account %s after: %s", cycle.account.pk, e)
                    self.token_provider.refresh(cycle.account.pk)
                    cycle.adapter.reconnect()
            except Transient as e:
                attempt += 1
                if attempt >= max_attempts:
                    raise
                delay = backoff * 2 ** (attempt - 1)
                sync_audit.warning(
                    "sync page transient failure, retrying",
                    extra={
                        "account_id": cycle.account.pk,
                        "folder": folder,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error": str(e),
                    },
                )
                self.sleep(delay)

    def _commit_page(self, cycle: _Cycle, folder: str, direction: str, page: MessagePage) -> bool:
        """
        Upsert the page and advance the folder cursor in one transaction. Returns
        False when the cursor was left in place (cap truncation or rejected owner).
        """
        account_id = cycle.account.pk
        existing = self.index_store.existing_ids(
            account_id, [s.provider_message_id for s in page.summaries]
        )
        remaining = cycle.budget.remaining(direction)
        accepted = []
        new_ids = set()
        truncated = False
        for summary in page.summaries:
            message_id = summary.provider_message_id
            if message_id not in existing and message_id not in new_ids:
                if len(new_ids) >= remaining:
                    truncated = True
                    continue
                new_ids.add(message_id)
            accepted.append(summary)

        try:
            with transaction.atomic():
                result = self.index_store.upsert_page(account_id, cycle.owner_id, accepted)
                if not truncated:
                    cursor_map = dict(cycle.state.cursor or {})
                    cursor_map[folder] = page.next_cursor
                    SyncState.objects.filter(pk=cycle.state.pk).update(
                        cursor=cursor_map, updated_at=timezone.now()
                    )
        except DataIntegrityViolation as e:
            rejected = [s.provider_message_id for s in page.summaries]
            cycle.outcome.rejected.extend(rejected)
            logger.error(
                "Page rejected for account %s folder %s (%s messages): %s",
                account_id,
                folder,
                len(rejected),
                e,
            )
            return False

        if not truncated:
            cycle.state.cursor = cursor_map
        cycle.budget.consume(direction, result.total_created)
        cycle.outcome.created.update(result.created)
        cycle.outcome.updated.update(result.updated)
        cycle.outcome.rejected.extend(result.rejected)
        if truncated:
            cycle.outcome.deferred_by_quota = True

        sync_audit.info(
            "sync page committed",
            extra={
                "account_id": account_id,
                "folder": folder,
                "page_size": len(page.summaries),
                "created_count": result.total_created,
                "updated_count": sum(result.updated.values()),
                "rejected": len(result.rejected),
                "cursor_advanced": not truncated,
                "has_more": page.has_more,
            },
        )
        return not truncated

    def _abandon(self, cycle: _Cycle, run: SyncRun) -> None:
        """Lease lost mid-cycle. SyncState now belongs to whoever holds the lock, so leave it."""
        cycle.outcome.state = SyncStatus.IDLE
        cycle.outcome.error = "Sync lease lost"
        logger.warning("sync lease lost account_id=%s; abandoning cycle", cycle.account.pk)
        self._record_run(cycle, run, SyncStatus.IDLE, error=cycle.outcome.error)

    def _finish(self, cycle: _Cycle, run: SyncRun, final_state: str) -> None:
        now = timezone.now()
        fields = {"state": final_state, "stop_requested": False, "updated_at": now}
        if final_state == SyncStatus.COMPLETED:
            fields.update(
                last_sync_at=now,
                consecutive_error_count=0,
                last_error="",
                next_attempt_at=None,
            )
        SyncState.objects.filter(pk=cycle.state.pk).update(**fields)
        cycle.outcome.state = final_state
        self._record_run(cycle, run, final_state)

    def _finish_rate_limited(self, cycle: _Cycle, run: SyncRun, error: RateLimited) -> None:
        now = timezone.now()
        if error.retry_after is not None:
            delay = timedelta(seconds=error.retry_after)
        else:
            delay = retry_delay(cycle.state.consecutive_error_count + 1)
        # Not surfaced as last_error and the account stays enabled
        SyncState.objects.filter(pk=cycle.state.pk).update(
            state=SyncStatus.RATE_LIMITED,
            next_attempt_at=now + delay,
            stop_requested=False,
            updated_at=now,
        )
        cycle.outcome.state = SyncStatus.RATE_LIMITED
        sync_audit.info(
            "sync cycle rate limited",
            extra={
                "account_id": cycle.account.pk,
                "retry_after_seconds": delay.total_seconds(),
                "error": str(error),
            },
        )
        self._record_run(cycle, run, SyncStatus.RATE_LIMITED, error=str(error))

    def _finish_failed(self, cycle: _Cycle, run: SyncRun, message: str) -> None:
        now = timezone.now()
        error_count = cycle.state.consecutive_error_count + 1
        SyncState.objects.filter(pk=cycle.state.pk).update(
            state=SyncStatus.FAILED,
            last_error=message,
            consecutive_error_count=error_count,
            next_attempt_at=now + retry_delay(error_count),
            stop_requested=False,
            updated_at=now,
        )
        cycle.outcome.state = SyncStatus.FAILED
        cycle.outcome.error = message
        logger.warning("sync failed account_id=%s errors=%s error=%s", cycle.account.pk, error_count, message)
        self._record_run(cycle, run, SyncStatus.FAILED, error=message)

    def _record_run(self, cycle: _Cycle, run: SyncRun, final_state: str, error: str = "") -> None:
        outcome = cycle.outcome
        run.outcome = final_state
        run.finished_at = timezone.now()
        run.pages_fetched = outcome.pages
        run.created_counts = dict(outcome.created)
        run.updated_counts = dict(outcome.updated)
        run.rejected_message_ids = list(outcome.rejected)
        run.deferred_by_quota = outcome.deferred_by_quota
        run.error = error
        run.save()
        sync_audit.info(
            "sync cycle finished",
            extra={
                "account_id": cycle.account.pk,
                "state": final_state,
                "pages": outcome.pages,
                "created_by_direction": dict(outcome.created),
                "updated_by_direction": dict(outcome.updated),
                "rejected_count": len(outcome.rejected),
                "deferred_by_quota": outcome.deferred_by_quota,
            },
        )
