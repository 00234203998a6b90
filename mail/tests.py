"""
Tests for the sync pipeline: index store, content cache, orchestrator, scheduler,
control surface and provider normalisation. Providers are replaced by an
in-memory mailbox, so nothing here talks to Gmail, Graph or an IMAP server.
"""
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest import mock

import httplib2
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone
from googleapiclient.errors import HttpError
from rest_framework.test import APIClient

from accounts.models import Account, Provider
from mail import control
from mail.content_cache import ContentCache
from mail.exceptions import (
    AuthExpired,
    DataIntegrityViolation,
    Fatal,
    NotFound,
    RateLimited,
    Transient,
)
from mail.index_store import IndexStore
from mail.models import (
    ContentCacheEntry,
    Direction,
    MessageIndexEntry,
    SyncMode,
    SyncRun,
    SyncState,
    SyncControl,
    SyncStatus,
)
from mail.providers import (
    BodyVariants,
    Capabilities,
    GmailAdapter,
    GraphAdapter,
    ImapAdapter,
    MessagePage,
    MessageSummary,
    ProviderAdapter,
    parse_mime,
    raise_for_http_status,
)
from mail.quota import CycleBudget, emergency_stop, is_kill_switch_on, set_kill_switch
from mail.services import SKIPPED, SyncOrchestrator
from mail import sync_status
from mail.sync_status import SYNC_LOCK_KEY, acquire_sync_lock, release_sync_lock
from mail.tasks import due_accounts, sweep_content_cache, sync_due_accounts

User = get_user_model()

SYNC_SETTINGS = dict(
    EMAIL_SYNC_PAGE_SIZE=50,
    EMAIL_SYNC_FOLDERS=["inbox", "sent"],
    EMAIL_SYNC_MAX_RECEIVED_PER_CYCLE=5000,
    EMAIL_SYNC_MAX_SENT_PER_CYCLE=5000,
    EMAIL_SYNC_PROVIDER_CAPS={},
    EMAIL_SYNC_MAX_CONCURRENT=8,
    EMAIL_SYNC_TRANSIENT_MAX_ATTEMPTS=3,
    EMAIL_SYNC_TRANSIENT_BACKOFF_SECONDS=0,
    EMAIL_SYNC_RETRY_BASE_SECONDS=60,
    EMAIL_SYNC_RETRY_MAX_SECONDS=3600,
    EMAIL_SYNC_MIN_POLL_INTERVAL_SECONDS=60,
)


def make_summaries(prefix, count, folder="inbox"):
    direction = Direction.INBOUND if folder == "inbox" else Direction.OUTBOUND
    base = datetime(2024, 1, 1, tzinfo=dt_timezone.utc)
    return [
        MessageSummary(
            provider_message_id=f"{prefix}-{i}",
            folder=folder,
            direction=direction,
            subject=f"Subject {i}",
            sender_email=f"sender{i}@example.com",
            received_at=base + timedelta(minutes=i),
        )
        for i in range(count)
    ]


class FakeMailbox(ProviderAdapter):
    """In-memory provider. Cursor is {"offset": n}; errors maps call number -> exception."""

    def __init__(self, account, messages=None, errors=None, page_override=None, on_call=None):
        super().__init__(account)
        self.messages = messages or {}
        self.errors = dict(errors or {})
        self.page_override = page_override
        self.on_call = on_call
        self.calls = []
        self.last_cursor = None
        self.closed = False
        self.reconnects = 0

    def list_messages(self, folder, cursor, limit):
        self.calls.append((folder, cursor, limit))
        if self.on_call:
            self.on_call(len(self.calls))
        error = self.errors.pop(len(self.calls), None)
        if error is not None:
            raise error
        items = self.messages.get(folder, [])
        offset = (cursor or {}).get("offset", 0)
        batch = items[offset:offset + (self.page_override or limit)]
        end = offset + len(batch)
        self.last_cursor = {"offset": end}
        return MessagePage(batch, self.last_cursor, end < len(items))

    def fetch_body(self, provider_message_id, folder=None):
        return BodyVariants(html="<p>hello</p>", text="hello")

    def capabilities(self):
        return Capabilities(supports_delta=True, supports_push=False)

    def reconnect(self):
        self.reconnects += 1

    def close(self):
        self.closed = True


class SyncTestMixin:
    def setUp(self):
        cache.clear()
        self.user = User.objects.create_user(username="owner", password="pw")
        self.account = Account.objects.create(
            provider=Provider.GMAIL,
            email="owner@example.com",
            owner=self.user,
            is_connected=True,
        )
        self.mailbox = {
            "inbox": make_summaries("in", 100, "inbox"),
            "sent": make_summaries("out", 20, "sent"),
        }

    def orchestrator(self, adapter, token_provider=None):
        self.sleep = mock.Mock()
        return SyncOrchestrator(
            adapter_factory=lambda account: adapter,
            token_provider=token_provider or mock.Mock(),
            sleep=self.sleep,
        )

    def sync_state(self):
        return SyncState.objects.get(account=self.account)


class IndexStoreTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="owner", password="pw")
        self.account = Account.objects.create(
            provider=Provider.IMAP, email="box@example.com", owner=self.user
        )
        self.store = IndexStore()

    def test_upsert_is_idempotent(self):
        summary = make_summaries("m", 1)[0]
        first = self.store.upsert(self.account.pk, self.user.pk, summary)
        summary.subject = "Edited"
        summary.is_read = True
        second = self.store.upsert(self.account.pk, self.user.pk, summary)

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(MessageIndexEntry.objects.count(), 1)
        entry = MessageIndexEntry.objects.get()
        self.assertEqual(entry.subject, "Edited")
        self.assertTrue(entry.is_read)

    def test_upsert_without_owner_is_rejected(self):
        summary = make_summaries("m", 1)[0]
        with self.assertRaises(DataIntegrityViolation):
            self.store.upsert(self.account.pk, None, summary)
        with self.assertRaises(DataIntegrityViolation):
            self.store.upsert_page(self.account.pk, None, [summary])
        self.assertEqual(MessageIndexEntry.objects.count(), 0)

    def test_upsert_page_skips_malformed_records(self):
        summaries = make_summaries("m", 3)
        summaries[1].provider_message_id = ""
        summaries[2].direction = "sideways"
        result = self.store.upsert_page(self.account.pk, self.user.pk, summaries)

        self.assertEqual(result.created[Direction.INBOUND], 1)
        self.assertEqual(len(result.rejected), 2)
        self.assertEqual(MessageIndexEntry.objects.count(), 1)

    def test_recent_and_existing_ids(self):
        self.store.upsert_page(self.account.pk, self.user.pk, make_summaries("m", 5))
        recent = self.store.recent(self.account.pk, limit=2)
        self.assertEqual([e.provider_message_id for e in recent], ["m-4", "m-3"])
        page_two = self.store.recent(self.account.pk, limit=2, offset=2)
        self.assertEqual([e.provider_message_id for e in page_two], ["m-2", "m-1"])
        self.assertEqual(self.store.existing_ids(self.account.pk, ["m-1", "nope"]), {"m-1"})
        self.assertTrue(self.store.exists(self.account.pk, "m-0"))
        self.assertEqual(self.store.count(self.account.pk), 5)

    def test_search_mark_read_and_stats(self):
        self.store.upsert_page(self.account.pk, self.user.pk, make_summaries("m", 3))
        results = self.store.search(self.user.pk, "sender1@")
        self.assertEqual([e.provider_message_id for e in results], ["m-1"])

        self.assertTrue(self.store.mark_read(self.account.pk, "m-1"))
        self.assertTrue(self.store.mark_replied(self.account.pk, "m-2"))
        self.assertFalse(self.store.mark_read(self.account.pk, "missing"))

        stats = self.store.stats(account_id=self.account.pk)
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["unread"], 2)
        self.assertEqual(stats["replied"], 1)
        self.assertEqual(stats["cached_bodies"], 0)


class ContentCacheTests(TestCase):
    def setUp(self):
        self.account = Account.objects.create(provider=Provider.IMAP, email="box@example.com")
        self.cache = ContentCache()

    def _entry(self, message_id, idle, access_count, now):
        return ContentCacheEntry.objects.create(
            account=self.account,
            provider_message_id=message_id,
            body_text="body",
            cached_at=now - idle,
            last_accessed=now - idle,
            access_count=access_count,
        )

    def test_get_miss_then_hit_stamps_access(self):
        self.assertIsNone(self.cache.get(self.account.pk, "m-1"))
        self.cache.put(self.account.pk, "m-1", BodyVariants(text="hello"))
        entry = self.cache.get(self.account.pk, "m-1")
        self.assertEqual(entry.body_text, "hello")
        self.assertEqual(entry.access_count, 1)
        entry = self.cache.get(self.account.pk, "m-1")
        self.assertEqual(entry.access_count, 2)

    def test_put_replaces_and_resets_access_count(self):
        self.cache.put(self.account.pk, "m-1", BodyVariants(text="one"))
        self.cache.get(self.account.pk, "m-1")
        entry = self.cache.put(self.account.pk, "m-1", BodyVariants(text="two"))
        self.assertEqual(entry.access_count, 0)
        self.assertEqual(ContentCacheEntry.objects.count(), 1)
        self.assertEqual(ContentCacheEntry.objects.get().body_text, "two")

    @override_settings(
        CONTENT_CACHE_SHORT_TTL_HOURS=48,
        CONTENT_CACHE_LONG_TTL_DAYS=7,
        CONTENT_CACHE_LOW_USE_THRESHOLD=3,
    )
    def test_sweep_bands(self):
        now = timezone.now()
        self._entry("fresh-unused", timedelta(hours=1), 0, now)
        self._entry("idle-low-use", timedelta(days=3), 1, now)
        self._entry("idle-popular", timedelta(days=3), 5, now)
        self._entry("stale-popular", timedelta(days=8), 10, now)

        deleted = self.cache.sweep(now=now)

        self.assertEqual(deleted, 2)
        remaining = set(ContentCacheEntry.objects.values_list("provider_message_id", flat=True))
        self.assertEqual(remaining, {"fresh-unused", "idle-popular"})

    def test_read_through_fills_on_miss_only(self):
        adapter = mock.Mock()
        adapter.fetch_body.return_value = BodyVariants(html="<p>x</p>", text="x")

        first = self.cache.read_through(self.account, "m-1", adapter=adapter)
        second = self.cache.read_through(self.account, "m-1", adapter=adapter)
        self.assertEqual(adapter.fetch_body.call_count, 1)
        self.assertEqual(first.pk, second.pk)
        self.assertEqual(second.access_count, 1)

        self.cache.read_through(self.account, "m-1", adapter=adapter, force_refresh=True)
        self.assertEqual(adapter.fetch_body.call_count, 2)

    def test_read_through_propagates_provider_errors(self):
        adapter = mock.Mock()
        adapter.fetch_body.side_effect = NotFound("gone")
        with self.assertRaises(NotFound):
            self.cache.read_through(self.account, "m-1", adapter=adapter)
        self.assertEqual(ContentCacheEntry.objects.count(), 0)


class CycleBudgetTests(TestCase):
    def test_directions_are_independent(self):
        budget = CycleBudget({Direction.INBOUND: 10, Direction.OUTBOUND: 5})
        budget.consume(Direction.INBOUND, 10)
        self.assertEqual(budget.remaining(Direction.INBOUND), 0)
        self.assertEqual(budget.remaining(Direction.OUTBOUND), 5)
        with self.assertRaises(ValueError):
            budget.consume(Direction.OUTBOUND, 6)

    @override_settings(EMAIL_SYNC_PROVIDER_CAPS={"imap": {"inbound": 7}})
    def test_provider_override(self):
        account = Account(provider=Provider.IMAP, email="x@example.com")
        budget = CycleBudget.for_account(account)
        self.assertEqual(budget.remaining(Direction.INBOUND), 7)


@override_settings(**SYNC_SETTINGS)
class SyncOrchestratorTests(SyncTestMixin, TestCase):
    def test_initial_sync_indexes_both_folders(self):
        adapter = FakeMailbox(self.account, self.mailbox)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(MessageIndexEntry.objects.filter(account=self.account).count(), 120)
        self.assertEqual(outcome.created[Direction.INBOUND], 100)
        self.assertEqual(outcome.created[Direction.OUTBOUND], 20)
        self.assertEqual(ContentCacheEntry.objects.count(), 0)

        state = self.sync_state()
        self.assertEqual(state.state, SyncStatus.COMPLETED)
        self.assertEqual(state.cursor, {"inbox": {"offset": 100}, "sent": {"offset": 20}})
        self.assertIsNotNone(state.last_sync_at)
        self.assertEqual(state.consecutive_error_count, 0)
        self.assertTrue(adapter.closed)

        run = SyncRun.objects.get(account=self.account)
        self.assertEqual(run.outcome, SyncStatus.COMPLETED)
        self.assertEqual(run.pages_fetched, 3)

    def test_repeat_sync_creates_nothing(self):
        self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(self.account.pk)
        outcome = self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(
            self.account.pk, mode=SyncMode.FULL
        )
        self.assertEqual(sum(outcome.created.values()), 0)
        self.assertEqual(sum(outcome.updated.values()), 120)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)

    def test_full_resync_resets_cursor(self):
        SyncState.objects.create(account=self.account, cursor={"inbox": {"offset": 100}})
        adapter = FakeMailbox(self.account, self.mailbox)
        self.orchestrator(adapter).run(self.account.pk, mode=SyncMode.FULL)
        self.assertEqual(adapter.calls[0], ("inbox", None, 50))

    @override_settings(EMAIL_SYNC_MAX_RECEIVED_PER_CYCLE=30)
    def test_cycle_cap_limits_requests_and_defers_rest(self):
        adapter = FakeMailbox(self.account, self.mailbox)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(adapter.calls[0], ("inbox", None, 30))
        self.assertEqual(outcome.created[Direction.INBOUND], 30)
        self.assertEqual(outcome.created[Direction.OUTBOUND], 20)
        self.assertTrue(outcome.deferred_by_quota)
        self.assertEqual(self.sync_state().cursor["inbox"], {"offset": 30})

        outcome = self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(self.account.pk)
        self.assertEqual(outcome.created[Direction.INBOUND], 30)
        self.assertEqual(MessageIndexEntry.objects.filter(direction=Direction.INBOUND).count(), 60)

    @override_settings(EMAIL_SYNC_MAX_RECEIVED_PER_CYCLE=30)
    def test_cycle_cap_holds_for_oversized_pages(self):
        adapter = FakeMailbox(self.account, self.mailbox, page_override=50)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.created[Direction.INBOUND], 30)
        self.assertTrue(outcome.deferred_by_quota)
        # Truncated page: cursor stays put so the excess is fetched next cycle
        self.assertNotIn("inbox", self.sync_state().cursor)

        adapter = FakeMailbox(self.account, self.mailbox, page_override=50)
        outcome = self.orchestrator(adapter).run(self.account.pk)
        self.assertEqual(outcome.created[Direction.INBOUND], 30)
        self.assertEqual(outcome.updated[Direction.INBOUND], 30)
        self.assertEqual(MessageIndexEntry.objects.filter(direction=Direction.INBOUND).count(), 60)
        self.assertEqual(self.sync_state().cursor["inbox"], {"offset": 50})

    def test_crash_mid_cycle_resumes_without_duplicates(self):
        adapter = FakeMailbox(self.account, self.mailbox, errors={2: RuntimeError("worker crashed")})
        with self.assertRaises(RuntimeError):
            self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(MessageIndexEntry.objects.count(), 50)
        self.assertEqual(self.sync_state().cursor["inbox"], {"offset": 50})

        adapter = FakeMailbox(self.account, self.mailbox)
        outcome = self.orchestrator(adapter).run(self.account.pk)
        self.assertEqual(adapter.calls[0], ("inbox", {"offset": 50}, 50))
        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)
        self.assertEqual(
            MessageIndexEntry.objects.values("provider_message_id").distinct().count(), 120
        )

    def test_rate_limited_on_second_page(self):
        adapter = FakeMailbox(
            self.account, self.mailbox, errors={2: RateLimited("slow down", retry_after=120)}
        )
        before = timezone.now()
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.RATE_LIMITED)
        state = self.sync_state()
        self.assertEqual(state.state, SyncStatus.RATE_LIMITED)
        self.assertEqual(state.last_error, "")
        self.assertEqual(state.cursor, {"inbox": {"offset": 50}})
        self.assertGreaterEqual(state.next_attempt_at, before + timedelta(seconds=119))
        self.assertLessEqual(state.next_attempt_at, timezone.now() + timedelta(seconds=121))
        self.assertEqual(MessageIndexEntry.objects.count(), 50)
        self.account.refresh_from_db()
        self.assertTrue(self.account.sync_enabled)
        self.assertTrue(self.account.is_active)

        retry = FakeMailbox(self.account, self.mailbox)
        outcome = self.orchestrator(retry).run(self.account.pk)
        self.assertEqual(retry.calls[0], ("inbox", {"offset": 50}, 50))
        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)

    def test_kill_switch_prevents_running(self):
        set_kill_switch(True, changed_by="test")
        adapter = FakeMailbox(self.account, self.mailbox)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.IDLE)
        self.assertEqual(adapter.calls, [])
        self.assertFalse(SyncState.objects.filter(account=self.account).exists())

    def test_kill_switch_between_pages_stops_cycle(self):
        def flip(call_number):
            if call_number == 1:
                set_kill_switch(True, changed_by="test")

        adapter = FakeMailbox(self.account, self.mailbox, on_call=flip)
        outcome = self.orchestrator(adapter).run(self.account.pk)
        self.assertEqual(outcome.state, SyncStatus.IDLE)
        self.assertEqual(len(adapter.calls), 1)
        self.assertEqual(MessageIndexEntry.objects.count(), 50)

    def test_stop_requested_between_pages(self):
        def request_stop(call_number):
            if call_number == 1:
                control.stop_sync(self.account.pk)

        adapter = FakeMailbox(self.account, self.mailbox, on_call=request_stop)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.IDLE)
        state = self.sync_state()
        self.assertEqual(state.state, SyncStatus.IDLE)
        self.assertFalse(state.stop_requested)
        self.assertEqual(state.cursor, {"inbox": {"offset": 50}})

    def test_concurrent_trigger_is_skipped(self):
        token = acquire_sync_lock(self.account.pk)
        factory = mock.Mock()
        outcome = SyncOrchestrator(adapter_factory=factory).run(self.account.pk)
        self.assertEqual(outcome.state, SKIPPED)
        factory.assert_not_called()

        release_sync_lock(self.account.pk, token)
        outcome = self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(self.account.pk)
        self.assertEqual(outcome.state, SyncStatus.COMPLETED)

    def test_disabled_account_is_skipped(self):
        Account.objects.filter(pk=self.account.pk).update(sync_enabled=False)
        adapter = FakeMailbox(self.account, self.mailbox)
        outcome = self.orchestrator(adapter).run(self.account.pk)
        self.assertEqual(outcome.state, SKIPPED)
        self.assertEqual(adapter.calls, [])

    def test_auth_expired_refreshes_once_and_retries_page(self):
        token_provider = mock.Mock()
        adapter = FakeMailbox(self.account, self.mailbox, errors={1: AuthExpired("401")})
        outcome = self.orchestrator(adapter, token_provider).run(self.account.pk)

        token_provider.refresh.assert_called_once_with(self.account.pk)
        self.assertEqual(adapter.reconnects, 1)
        self.assertEqual(adapter.calls[0], adapter.calls[1])
        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)

    def test_auth_expired_after_refresh_is_fatal(self):
        token_provider = mock.Mock()
        adapter = FakeMailbox(
            self.account, self.mailbox, errors={1: AuthExpired("401"), 2: AuthExpired("401 again")}
        )
        outcome = self.orchestrator(adapter, token_provider).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.FAILED)
        self.assertEqual(token_provider.refresh.call_count, 1)
        state = self.sync_state()
        self.assertIn("after refresh", state.last_error)
        self.assertEqual(state.consecutive_error_count, 1)

    def test_transient_retries_then_fails(self):
        adapter = FakeMailbox(
            self.account,
            self.mailbox,
            errors={1: Transient("502"), 2: Transient("502"), 3: Transient("502 still")},
        )
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(len(adapter.calls), 3)
        self.assertEqual(self.sleep.call_count, 2)
        self.assertEqual(outcome.state, SyncStatus.FAILED)
        self.assertEqual(self.sync_state().last_error, "502 still")

    def test_transient_recovers_within_attempts(self):
        adapter = FakeMailbox(self.account, self.mailbox, errors={1: Transient("timeout")})
        outcome = self.orchestrator(adapter).run(self.account.pk)
        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)

    def test_fatal_records_error_and_backs_off(self):
        before = timezone.now()
        adapter = FakeMailbox(self.account, self.mailbox, errors={1: Fatal("mailbox deleted")})
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.FAILED)
        state = self.sync_state()
        self.assertEqual(state.last_error, "mailbox deleted")
        self.assertEqual(state.consecutive_error_count, 1)
        self.assertGreaterEqual(state.next_attempt_at, before + timedelta(seconds=60))
        self.assertLess(state.next_attempt_at, timezone.now() + timedelta(seconds=61))

        adapter = FakeMailbox(self.account, self.mailbox, errors={1: Fatal("mailbox deleted")})
        self.orchestrator(adapter).run(self.account.pk)
        state = self.sync_state()
        self.assertEqual(state.consecutive_error_count, 2)
        self.assertGreaterEqual(state.next_attempt_at, before + timedelta(seconds=120))

        self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(self.account.pk)
        state = self.sync_state()
        self.assertEqual(state.consecutive_error_count, 0)
        self.assertEqual(state.last_error, "")
        self.assertIsNone(state.next_attempt_at)

    def test_unresolved_owner_rejects_writes(self):
        orphan = Account.objects.create(
            provider=Provider.GMAIL, email="orphan@example.com", is_connected=True
        )
        adapter = FakeMailbox(orphan, self.mailbox)
        outcome = self.orchestrator(adapter).run(orphan.pk)

        self.assertEqual(MessageIndexEntry.objects.filter(account=orphan).count(), 0)
        self.assertEqual(len(outcome.rejected), 70)
        self.assertEqual(SyncState.objects.get(account=orphan).cursor, {})

    def test_owner_falls_back_to_sole_linked_user(self):
        Account.objects.filter(pk=self.account.pk).update(owner=None)
        self.account.users.add(self.user)
        self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(self.account.pk)
        self.assertEqual(MessageIndexEntry.objects.filter(owner=self.user).count(), 120)

    def test_audit_log_emitted_at_info(self):
        adapter = FakeMailbox(self.account, self.mailbox)
        with self.assertLogs("mail.sync_audit", level="INFO") as cm:
            outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)
        committed = [r for r in cm.records if hasattr(r, "created_count")]
        self.assertEqual([r.created_count for r in committed], [50, 50, 20])
        finished = [r for r in cm.records if r.getMessage() == "sync cycle finished"]
        self.assertEqual(finished[0].created_by_direction[Direction.INBOUND], 100)

    @override_settings(EMAIL_SYNC_PAGE_SIZE=100, EMAIL_SYNC_FOLDERS=["inbox"])
    def test_initial_sync_two_pages_keeps_last_provider_cursor(self):
        mailbox = {"inbox": make_summaries("in", 120, "inbox")}
        adapter = FakeMailbox(self.account, mailbox)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(adapter.calls, [("inbox", None, 100), ("inbox", {"offset": 100}, 100)])
        self.assertEqual(MessageIndexEntry.objects.filter(account=self.account).count(), 120)
        self.assertEqual(ContentCacheEntry.objects.count(), 0)
        self.assertEqual(self.sync_state().cursor["inbox"], adapter.last_cursor)
        self.assertEqual(adapter.last_cursor, {"offset": 120})

        outcome = self.orchestrator(FakeMailbox(self.account, mailbox)).run(self.account.pk)
        self.assertEqual(sum(outcome.created.values()), 0)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)

    def test_lost_lease_abandons_cycle_without_writing(self):
        holder = {}

        def steal_lock(call_number):
            if call_number == 1:
                cache.delete(SYNC_LOCK_KEY.format(account_id=self.account.pk))
                holder["token"] = acquire_sync_lock(self.account.pk)

        adapter = FakeMailbox(self.account, self.mailbox, on_call=steal_lock)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(len(adapter.calls), 1)
        self.assertEqual(MessageIndexEntry.objects.count(), 0)
        self.assertEqual(outcome.state, SyncStatus.IDLE)
        self.assertEqual(outcome.error, "Sync lease lost")
        self.assertEqual(self.sync_state().cursor, {})
        self.assertEqual(cache.get(SYNC_LOCK_KEY.format(account_id=self.account.pk)), holder["token"])
        self.assertIn("lease", SyncRun.objects.get(account=self.account).error)
        self.assertTrue(adapter.closed)

    def test_emergency_stop_before_running_stops_cycle(self):
        def stop_then_acquire(*args, **kwargs):
            emergency_stop(changed_by="test")
            return sync_status.acquire_slot(*args, **kwargs)

        adapter = FakeMailbox(self.account, self.mailbox)
        with mock.patch("mail.services.acquire_slot", side_effect=stop_then_acquire):
            outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(adapter.calls, [])
        self.assertEqual(outcome.state, SyncStatus.IDLE)
        self.assertEqual(self.sync_state().state, SyncStatus.IDLE)
        self.assertEqual(MessageIndexEntry.objects.count(), 0)
        self.account.refresh_from_db()
        self.assertFalse(self.account.sync_enabled)

    def test_stop_requested_before_running_is_honoured(self):
        SyncState.objects.create(account=self.account, stop_requested=True)
        adapter = FakeMailbox(self.account, self.mailbox)
        outcome = self.orchestrator(adapter).run(self.account.pk)

        self.assertEqual(adapter.calls, [])
        self.assertEqual(outcome.state, SyncStatus.IDLE)
        self.assertFalse(self.sync_state().stop_requested)

    def test_adapter_setup_failure_is_recorded(self):
        before = timezone.now()
        orchestrator = SyncOrchestrator(
            adapter_factory=mock.Mock(side_effect=Fatal("Unsupported provider: exchange")),
            token_provider=mock.Mock(),
            sleep=mock.Mock(),
        )
        outcome = orchestrator.run(self.account.pk)

        self.assertEqual(outcome.state, SyncStatus.FAILED)
        state = self.sync_state()
        self.assertEqual(state.state, SyncStatus.FAILED)
        self.assertEqual(state.last_error, "Unsupported provider: exchange")
        self.assertGreaterEqual(state.next_attempt_at, before)
        run = SyncRun.objects.get(account=self.account)
        self.assertEqual(run.outcome, SyncStatus.FAILED)
        self.assertIsNotNone(run.finished_at)

    def test_each_auth_expiry_gets_one_refresh(self):
        token_provider = mock.Mock()
        adapter = FakeMailbox(
            self.account,
            self.mailbox,
            errors={1: AuthExpired("401"), 3: AuthExpired("401 later")},
        )
        outcome = self.orchestrator(adapter, token_provider).run(self.account.pk)

        self.assertEqual(token_provider.refresh.call_count, 2)
        self.assertEqual(adapter.reconnects, 2)
        self.assertEqual(outcome.state, SyncStatus.COMPLETED)
        self.assertEqual(MessageIndexEntry.objects.count(), 120)


@override_settings(**SYNC_SETTINGS)
class SchedulerTests(TestCase):
    def setUp(self):
        cache.clear()
        self.now = timezone.now()

    def _account(self, email, last_sync_ago=None, interval=300, **state_fields):
        account = Account.objects.create(
            provider=Provider.IMAP, email=email, is_connected=True, polling_interval_seconds=300
        )
        if interval != 300:
            Account.objects.filter(pk=account.pk).update(polling_interval_seconds=interval)
        if last_sync_ago is not None or state_fields:
            SyncState.objects.create(
                account=account,
                last_sync_at=self.now - last_sync_ago if last_sync_ago is not None else None,
                **state_fields,
            )
        return account

    def test_due_accounts_selection_and_order(self):
        never = self._account("never@example.com")
        overdue = self._account("overdue@example.com", timedelta(minutes=10))
        very_overdue = self._account("very@example.com", timedelta(minutes=60))
        self._account("recent@example.com", timedelta(minutes=1))
        self._account(
            "backoff@example.com",
            timedelta(minutes=30),
            next_attempt_at=self.now + timedelta(minutes=5),
        )
        disabled = self._account("disabled@example.com")
        Account.objects.filter(pk=disabled.pk).update(sync_enabled=False)
        # Stored below the floor: the floor wins
        self._account("floor@example.com", timedelta(seconds=30), interval=10)

        due = due_accounts(self.now)
        self.assertEqual([a.pk for a in due], [never.pk, very_overdue.pk, overdue.pk])

    def test_kill_switch_enumerates_nothing(self):
        self._account("never@example.com")
        set_kill_switch(True, changed_by="test")
        self.assertEqual(list(due_accounts(self.now)), [])
        with mock.patch("mail.tasks.sync_account_emails.delay") as delay:
            result = sync_due_accounts()
        delay.assert_not_called()
        self.assertTrue(result["kill_switch"])

    @override_settings(EMAIL_SYNC_MAX_CONCURRENT=2)
    def test_dispatch_bounded_by_free_slots_and_deduplicated(self):
        accounts = [self._account(f"a{i}@example.com") for i in range(3)]
        with mock.patch("mail.tasks.sync_account_emails.delay") as delay:
            delay.return_value = mock.Mock(id="task")
            first = sync_due_accounts()
            second = sync_due_accounts()

        first_ids = [d["account_id"] for d in first["dispatched"]]
        second_ids = [d["account_id"] for d in second["dispatched"]]
        self.assertEqual(first_ids, [accounts[0].pk, accounts[1].pk])
        self.assertEqual(second_ids, [accounts[2].pk])
        self.assertEqual(delay.call_count, 3)

    def test_emergency_stop_disables_everything(self):
        running = self._account("running@example.com", state=SyncStatus.RUNNING)
        self._account("idle@example.com")
        disabled = emergency_stop(changed_by="test")

        self.assertEqual(disabled, 2)
        self.assertFalse(Account.objects.filter(sync_enabled=True).exists())
        self.assertTrue(SyncState.objects.get(account=running).stop_requested)
        self.assertEqual(list(due_accounts(self.now)), [])


@override_settings(**SYNC_SETTINGS)
class ControlTests(SyncTestMixin, TestCase):
    def test_get_sync_status(self):
        self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(self.account.pk)
        status = control.get_sync_status(self.account.pk)
        self.assertEqual(status["state"], SyncStatus.COMPLETED)
        self.assertEqual(status["message_count"], 120)
        self.assertEqual(status["last_error"], "")
        self.assertIsNotNone(status["last_sync_at"])
        self.assertFalse(status["lock_held"])

    def test_status_for_never_synced_account(self):
        status = control.get_sync_status(self.account.pk)
        self.assertEqual(status["state"], SyncStatus.IDLE)
        self.assertIsNone(status["last_sync_at"])
        self.assertEqual(status["message_count"], 0)

    def test_stop_sync_without_running_cycle(self):
        self.assertFalse(control.stop_sync(self.account.pk))

    def test_start_sync_queues_task(self):
        with mock.patch("mail.tasks.sync_account_emails.delay") as delay:
            delay.return_value = mock.Mock(id="task-1")
            result = control.start_sync(self.account.pk, mode=SyncMode.FULL)
        delay.assert_called_once_with(self.account.pk, SyncMode.FULL)
        self.assertEqual(result["task_id"], "task-1")
        with self.assertRaises(ValueError):
            control.start_sync(self.account.pk, mode="sideways")

    def test_disconnect_removes_dependent_rows(self):
        self.orchestrator(FakeMailbox(self.account, self.mailbox)).run(self.account.pk)
        ContentCache().put(self.account.pk, "in-1", BodyVariants(text="x"))

        control.disconnect_mailbox(self.account.pk, changed_by="test")

        self.assertFalse(Account.objects.filter(pk=self.account.pk).exists())
        self.assertEqual(MessageIndexEntry.objects.count(), 0)
        self.assertEqual(ContentCacheEntry.objects.count(), 0)
        self.assertEqual(SyncState.objects.count(), 0)


class ProviderNormalisationTests(TestCase):
    def setUp(self):
        self.account = Account.objects.create(
            provider=Provider.IMAP,
            email="box@example.com",
            connection_settings={"host": "imap.example.com", "sent_folder": "Sent Items"},
        )

    def test_http_status_mapping(self):
        cases = [
            (401, AuthExpired),
            (404, NotFound),
            (410, NotFound),
            (500, Transient),
            (503, Transient),
            (400, Fatal),
            (403, Fatal),
        ]
        for status_code, expected in cases:
            with self.assertRaises(expected):
                raise_for_http_status(status_code, "boom")
        with self.assertRaises(RateLimited) as ctx:
            raise_for_http_status(429, "slow", retry_after="30")
        self.assertEqual(ctx.exception.retry_after, 30.0)

    def test_parse_mime_splits_variants(self):
        raw = (
            b"From: Alice <alice@example.com>\r\n"
            b"Subject: Report\r\n"
            b"MIME-Version: 1.0\r\n"
            b'Content-Type: multipart/mixed; boundary="b1"\r\n\r\n'
            b"--b1\r\n"
            b'Content-Type: multipart/alternative; boundary="b2"\r\n\r\n'
            b"--b2\r\n"
            b"Content-Type: text/plain; charset=utf-8\r\n\r\n"
            b"plain body\r\n"
            b"--b2\r\n"
            b"Content-Type: text/html; charset=utf-8\r\n\r\n"
            b"<p>html body</p>\r\n"
            b"--b2--\r\n"
            b"--b1\r\n"
            b"Content-Type: application/pdf\r\n"
            b'Content-Disposition: attachment; filename="report.pdf"\r\n'
            b"Content-Transfer-Encoding: base64\r\n\r\n"
            b"JVBERi0=\r\n"
            b"--b1--\r\n"
        )
        body = parse_mime(raw)
        self.assertIn("plain body", body.text)
        self.assertIn("<p>html body</p>", body.html)
        self.assertEqual(len(body.attachments), 1)
        self.assertEqual(body.attachments[0]["filename"], "report.pdf")
        self.assertEqual(body.attachments[0]["size_bytes"], 5)
        self.assertGreater(body.size_bytes, 0)

    def test_gmail_summary_normalisation(self):
        adapter = GmailAdapter(self.account)
        summary = adapter._parse_summary(
            "inbox",
            {
                "id": "g-1",
                "threadId": "t-1",
                "labelIds": ["INBOX", "UNREAD", "IMPORTANT"],
                "snippet": "Quick question",
                "internalDate": "1700000000000",
                "payload": {
                    "headers": [
                        {"name": "From", "value": "Alice <alice@example.com>"},
                        {"name": "To", "value": "bob@example.com"},
                        {"name": "Cc", "value": "Carol <carol@example.com>"},
                        {"name": "Subject", "value": "Hello"},
                    ],
                    "parts": [{"filename": "a.pdf"}, {"filename": ""}],
                },
            },
        )
        self.assertEqual(summary.provider_message_id, "g-1")
        self.assertEqual(summary.direction, Direction.INBOUND)
        self.assertEqual(summary.sender_email, "alice@example.com")
        self.assertEqual(summary.sender_name, "Alice")
        self.assertEqual(summary.recipients, ["bob@example.com", "carol@example.com"])
        self.assertFalse(summary.is_read)
        self.assertEqual(summary.importance, "high")
        self.assertEqual(summary.attachment_count, 1)
        self.assertEqual(summary.received_at, datetime.fromtimestamp(1700000000, tz=dt_timezone.utc))

    def test_gmail_list_then_history(self):
        adapter = GmailAdapter(self.account)
        service = mock.MagicMock()
        adapter._service = service
        users = service.users.return_value
        users.getProfile.return_value.execute.return_value = {"historyId": "900"}
        users.messages.return_value.list.return_value.execute.return_value = {"messages": [{"id": "g-1"}]}
        users.messages.return_value.get.return_value.execute.return_value = {
            "id": "g-1",
            "labelIds": ["SENT"],
            "payload": {"headers": [{"name": "Subject", "value": "Sent one"}]},
        }

        page = adapter.list_messages("sent", None, 25)
        self.assertEqual([s.provider_message_id for s in page.summaries], ["g-1"])
        self.assertEqual(page.summaries[0].direction, Direction.OUTBOUND)
        self.assertEqual(page.next_cursor, {"history_id": "900"})
        self.assertFalse(page.has_more)

        users.history.return_value.list.return_value.execute.return_value = {
            "history": [{"messagesAdded": [{"message": {"id": "g-2"}}]}],
            "historyId": "950",
        }
        users.messages.return_value.get.return_value.execute.return_value = {"id": "g-2", "labelIds": ["SENT"]}
        page = adapter.list_messages("sent", page.next_cursor, 25)
        self.assertEqual([s.provider_message_id for s in page.summaries], ["g-2"])
        self.assertEqual(page.next_cursor, {"history_id": "950"})

    def test_gmail_rate_limit_maps_to_rate_limited(self):
        adapter = GmailAdapter(self.account)
        service = mock.MagicMock()
        adapter._service = service
        users = service.users.return_value
        users.getProfile.return_value.execute.return_value = {"historyId": "1"}
        users.messages.return_value.list.return_value.execute.side_effect = HttpError(
            httplib2.Response({"status": 429, "retry-after": "7"}), b"rate limited"
        )
        with self.assertRaises(RateLimited) as ctx:
            adapter.list_messages("inbox", None, 10)
        self.assertEqual(ctx.exception.retry_after, 7.0)

    @mock.patch("mail.providers.access_token_for", return_value="token")
    @mock.patch("mail.providers.requests.Session")
    def test_graph_delta_page(self, session_cls, _token):
        response = mock.Mock(status_code=200, headers={})
        response.json.return_value = {
            "value": [
                {
                    "id": "ms-1",
                    "conversationId": "c-1",
                    "subject": "Weekly",
                    "from": {"emailAddress": {"name": "Dana", "address": "dana@example.com"}},
                    "toRecipients": [{"emailAddress": {"address": "box@example.com"}}],
                    "bodyPreview": "Agenda",
                    "isRead": True,
                    "importance": "High",
                    "receivedDateTime": "2024-01-02T03:04:05Z",
                },
                {"id": "ms-2", "@removed": {"reason": "deleted"}},
            ],
            "@odata.deltaLink": "https://graph.microsoft.com/v1.0/delta?token=abc",
        }
        session_cls.return_value.get.return_value = response

        page = GraphAdapter(self.account).list_messages("inbox", None, 10)

        self.assertEqual(len(page.summaries), 1)
        summary = page.summaries[0]
        self.assertEqual(summary.sender_email, "dana@example.com")
        self.assertEqual(summary.recipients, ["box@example.com"])
        self.assertTrue(summary.is_read)
        self.assertEqual(summary.importance, "high")
        self.assertEqual(summary.received_at, datetime(2024, 1, 2, 3, 4, 5, tzinfo=dt_timezone.utc))
        self.assertEqual(page.next_cursor, {"link": "https://graph.microsoft.com/v1.0/delta?token=abc"})
        self.assertFalse(page.has_more)
        _, kwargs = session_cls.return_value.get.call_args
        self.assertEqual(kwargs["headers"], {"Prefer": "odata.maxpagesize=10"})

    @mock.patch("mail.providers.access_token_for", return_value="token")
    @mock.patch("mail.providers.requests.Session")
    def test_graph_throttling(self, session_cls, _token):
        session_cls.return_value.get.return_value = mock.Mock(
            status_code=429, headers={"Retry-After": "15"}, text="throttled"
        )
        with self.assertRaises(RateLimited) as ctx:
            GraphAdapter(self.account).list_messages("inbox", {"link": "https://next"}, 10)
        self.assertEqual(ctx.exception.retry_after, 15.0)

    def _imap_adapter(self, search_result=b"3 4 5"):
        conn = mock.MagicMock()
        conn.select.return_value = ("OK", [b"5"])
        conn.response.return_value = ("UIDVALIDITY", [b"42"])
        header_fields = b"BODY[HEADER.FIELDS (FROM TO CC SUBJECT DATE MESSAGE-ID IMPORTANCE X-PRIORITY)]"

        def uid(command, *args):
            if command == "SEARCH":
                return "OK", [search_result]
            return "OK", [
                (
                    b'1 (UID 3 FLAGS (\\Seen) INTERNALDATE "01-Jan-2024 10:00:00 +0000" RFC822.SIZE 120 '
                    + header_fields + b" {90}",
                    b"From: Alice <alice@example.com>\r\nTo: box@example.com\r\n"
                    b"Subject: Hello\r\nMessage-ID: <abc@example.com>\r\n\r\n",
                ),
                b")",
                (
                    b'2 (UID 4 FLAGS () INTERNALDATE "02-Jan-2024 10:00:00 +0000" RFC822.SIZE 90 '
                    + header_fields + b" {40}",
                    b"From: carol@example.com\r\nSubject: Re\r\n\r\n",
                ),
                b")",
            ]

        conn.uid.side_effect = uid
        adapter = ImapAdapter(self.account)
        adapter._conn = conn
        return adapter, conn

    def test_imap_page_uses_uid_cursor(self):
        adapter, conn = self._imap_adapter()
        page = adapter.list_messages("inbox", None, 2)

        self.assertEqual(
            [s.provider_message_id for s in page.summaries], ["INBOX/42/3", "INBOX/42/4"]
        )
        first = page.summaries[0]
        self.assertTrue(first.is_read)
        self.assertEqual(first.sender_email, "alice@example.com")
        self.assertEqual(first.thread_id, "abc@example.com")
        self.assertEqual(first.received_at, datetime(2024, 1, 1, 10, 0, tzinfo=dt_timezone.utc))
        self.assertFalse(page.summaries[1].is_read)
        self.assertEqual(page.next_cursor, {"uidvalidity": 42, "last_uid": 4})
        self.assertTrue(page.has_more)
        conn.uid.assert_any_call("SEARCH", None, "UID 1:*")

    def test_imap_uidvalidity_change_restarts_folder(self):
        adapter, conn = self._imap_adapter()
        adapter.list_messages("inbox", {"uidvalidity": 41, "last_uid": 10}, 2)
        conn.uid.assert_any_call("SEARCH", None, "UID 1:*")

    def test_imap_nothing_new_keeps_cursor(self):
        adapter, _ = self._imap_adapter(search_result=b"10")
        page = adapter.list_messages("sent", {"uidvalidity": 42, "last_uid": 10}, 5)
        self.assertEqual(page.summaries, [])
        self.assertEqual(page.next_cursor, {"uidvalidity": 42, "last_uid": 10})
        self.assertFalse(page.has_more)

    def test_unknown_folder_is_fatal(self):
        adapter, _ = self._imap_adapter()
        with self.assertRaises(Fatal):
            adapter.list_messages("drafts", None, 5)


class MessageApiTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="owner", password="pw")
        self.account = Account.objects.create(
            provider=Provider.GMAIL, email="owner@example.com", owner=self.user
        )
        self.entry = MessageIndexEntry.objects.create(
            account=self.account,
            owner=self.user,
            provider_message_id="m-1",
            folder="inbox",
            direction=Direction.INBOUND,
            is_read=True,
            replied=True,
        )
        self.client = APIClient()
        self.client.force_authenticate(self.user)

    def test_mark_read_parses_form_false(self):
        response = self.client.post(f"/api/messages/{self.entry.pk}/mark-read/", {"is_read": "false"})
        self.assertEqual(response.status_code, 200)
        self.entry.refresh_from_db()
        self.assertFalse(self.entry.is_read)

        response = self.client.post(f"/api/messages/{self.entry.pk}/mark-read/", {}, format="json")
        self.assertEqual(response.status_code, 200)
        self.entry.refresh_from_db()
        self.assertTrue(self.entry.is_read)

    def test_mark_replied_parses_json_false_and_rejects_garbage(self):
        response = self.client.post(
            f"/api/messages/{self.entry.pk}/mark-replied/", {"replied": False}, format="json"
        )
        self.assertEqual(response.status_code, 200)
        self.entry.refresh_from_db()
        self.assertFalse(self.entry.replied)

        response = self.client.post(
            f"/api/messages/{self.entry.pk}/mark-replied/", {"replied": "maybe"}, format="json"
        )
        self.assertEqual(response.status_code, 400)


class CommandAndTaskTests(TestCase):
    def setUp(self):
        self.account = Account.objects.create(provider=Provider.IMAP, email="box@example.com")

    def test_kill_switch_command(self):
        out = StringIO()
        call_command("set_kill_switch", "on", "--by", "ops", stdout=out)
        self.assertIn("ON", out.getvalue())
        self.assertTrue(is_kill_switch_on())
        self.assertEqual(SyncControl.load().changed_by, "ops")
        call_command("set_kill_switch", "off", stdout=StringIO())
        self.assertFalse(is_kill_switch_on())

    def test_sweep_task_and_dry_run(self):
        now = timezone.now()
        ContentCacheEntry.objects.create(
            account=self.account,
            provider_message_id="old",
            cached_at=now - timedelta(days=10),
            last_accessed=now - timedelta(days=10),
        )
        out = StringIO()
        call_command("sweep_content_cache", "--dry-run", stdout=out)
        self.assertIn("Would delete 1", out.getvalue())
        self.assertEqual(ContentCacheEntry.objects.count(), 1)

        self.assertEqual(sweep_content_cache(), {"deleted": 1})
        self.assertEqual(ContentCacheEntry.objects.count(), 0)

    def test_sync_control_api_is_staff_only(self):
        client = APIClient()
        client.force_authenticate(User.objects.create_user(username="plain", password="pw"))
        response = client.post("/api/sync-control/kill-switch/", {"kill_switch": True}, format="json")
        self.assertEqual(response.status_code, 403)

        client.force_authenticate(User.objects.create_user(username="ops", password="pw", is_staff=True))
        response = client.post("/api/sync-control/kill-switch/", {"kill_switch": True}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["kill_switch"])
        self.assertTrue(is_kill_switch_on())
