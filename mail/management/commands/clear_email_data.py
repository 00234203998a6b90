"""
Clear indexed messages, cached bodies, sync runs and cursors so the next sync
starts fresh. Keeps accounts and stored credentials.
"""
from django.core.management.base import BaseCommand
from django.db import transaction

from accounts.models import Account
from mail.models import ContentCacheEntry, MessageIndexEntry, SyncRun, SyncState, SyncStatus


class Command(BaseCommand):
    help = (
        "Clear index entries, cached bodies and sync runs, and reset sync state "
        "so the next sync re-reads every folder from the start."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--account-id",
            type=int,
            help="Only clear data for this account ID (default: all accounts)",
        )

    def handle(self, *args, **options):
        account_id = options.get("account_id")
        accounts = Account.objects.all()
        if account_id is not None:
            accounts = accounts.filter(pk=account_id)
            if not accounts.exists():
                self.stdout.write(self.style.ERROR(f"Account id={account_id} not found."))
                return

        with transaction.atomic():
            n_cached, _ = ContentCacheEntry.objects.filter(account__in=accounts).delete()
            self.stdout.write(f"Deleted {n_cached} cached bod(ies).")

            n_messages, _ = MessageIndexEntry.objects.filter(account__in=accounts).delete()
            self.stdout.write(f"Deleted {n_messages} index entr(ies).")

            n_runs, _ = SyncRun.objects.filter(account__in=accounts).delete()
            self.stdout.write(f"Deleted {n_runs} sync run(s).")

            updated = SyncState.objects.filter(account__in=accounts).update(
                cursor={},
                state=SyncStatus.IDLE,
                last_sync_at=None,
                next_attempt_at=None,
                consecutive_error_count=0,
                last_error="",
            )
            self.stdout.write(f"Reset sync state for {updated} account(s).")

        self.stdout.write(self.style.SUCCESS("Done. Run sync_emails to re-sync."))
