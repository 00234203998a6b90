"""Show the last sync run(s) for an account: pages, rows written, deferrals and errors."""
import json

from django.core.management.base import BaseCommand

from accounts.models import Account
from mail.models import SyncRun


class Command(BaseCommand):
    help = "Show last sync run(s) for an account (sync audit trail)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--account-id",
            type=int,
            required=True,
            help="Account ID to show sync runs for",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=5,
            help="Max number of runs to show (default 5)",
        )

    def handle(self, *args, **options):
        account_id = options["account_id"]
        limit = options["limit"]

        try:
            account = Account.objects.get(pk=account_id)
        except Account.DoesNotExist:
            self.stdout.write(self.style.ERROR(f"Account {account_id} not found."))
            return

        runs = list(SyncRun.objects.filter(account=account).order_by("-started_at")[:limit])
        if not runs:
            self.stdout.write(
                self.style.WARNING(f"No sync runs found for account {account_id} ({account.email}).")
            )
            return

        self.stdout.write(
            self.style.SUCCESS(f"Last {len(runs)} sync run(s) for account {account_id} ({account.email}):\n")
        )
        for run in runs:
            self._print_run(run)

    def _print_run(self, run):
        self.stdout.write(f"--- SyncRun id={run.pk} mode={run.mode} outcome={run.outcome} ---")
        self.stdout.write(f"  started_at:  {run.started_at}")
        self.stdout.write(f"  finished_at: {run.finished_at}")
        self.stdout.write(f"  pages:       {run.pages_fetched}")
        self.stdout.write(f"  created:     {json.dumps(run.created_counts)}")
        self.stdout.write(f"  updated:     {json.dumps(run.updated_counts)}")
        if run.deferred_by_quota:
            self.stdout.write(self.style.WARNING("  deferred by cycle cap"))
        if run.rejected_message_ids:
            sample = run.rejected_message_ids[:10]
            self.stdout.write(
                self.style.WARNING(f"  rejected ({len(run.rejected_message_ids)}): {', '.join(sample)}")
            )
        if run.error:
            self.stdout.write(self.style.ERROR(f"  error: {run.error}"))
        self.stdout.write("")
