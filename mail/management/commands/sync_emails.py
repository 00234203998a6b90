"""
Run sync cycles inline (no Celery worker needed), the same orchestrator the
scheduler dispatches to.
"""
from django.core.management.base import BaseCommand

from accounts.models import Account
from mail.models import SyncMode
from mail.services import SyncOrchestrator


class Command(BaseCommand):
    help = (
        "Sync connected accounts inline. Use --account-id or --email to sync one account; "
        "--full resets the cursors and re-reads each folder from the start."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--account-id",
            type=int,
            help="Sync only this account ID",
        )
        parser.add_argument(
            "--email",
            type=str,
            help="Sync only this email address",
        )
        parser.add_argument(
            "--full",
            action="store_true",
            help="Full resync: reset cursors before fetching",
        )

    def handle(self, *args, **options):
        if options["account_id"]:
            accounts = Account.objects.filter(pk=options["account_id"])
        elif options["email"]:
            accounts = Account.objects.filter(email=options["email"])
        else:
            accounts = Account.objects.filter(is_active=True, is_connected=True, sync_enabled=True)

        if not accounts.exists():
            self.stdout.write(self.style.WARNING("No connected accounts found to sync."))
            return

        mode = SyncMode.FULL if options["full"] else SyncMode.INCREMENTAL
        orchestrator = SyncOrchestrator()
        for account in accounts:
            self.stdout.write(f"\nSyncing {account.email} ({account.provider}, {mode})...")
            outcome = orchestrator.run(account.pk, mode=mode)
            if outcome.error:
                self.stdout.write(self.style.ERROR(f"  {outcome.state}: {outcome.error}"))
                continue
            created = sum(outcome.created.values())
            updated = sum(outcome.updated.values())
            style = self.style.SUCCESS if outcome.state == "completed" else self.style.WARNING
            self.stdout.write(
                style(
                    f"  {outcome.state}: {outcome.pages} page(s), {created} new, {updated} updated"
                    + (" (deferred by cycle cap)" if outcome.deferred_by_quota else "")
                )
            )
            if outcome.rejected:
                self.stdout.write(self.style.WARNING(f"  Rejected {len(outcome.rejected)} record(s)"))

        self.stdout.write(self.style.SUCCESS("\nSync complete."))
