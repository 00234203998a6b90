from django.core.management.base import BaseCommand

from mail import control


class Command(BaseCommand):
    help = (
        "Disable sync on every account in one statement and ask running cycles to stop. "
        "Re-enable accounts individually afterwards."
    )

    def add_arguments(self, parser):
        parser.add_argument("--by", default="manage.py", help="Recorded in the log as who stopped sync")

    def handle(self, *args, **options):
        disabled = control.emergency_stop(changed_by=options["by"])
        self.stdout.write(self.style.WARNING(f"Sync disabled on {disabled} account(s)."))
