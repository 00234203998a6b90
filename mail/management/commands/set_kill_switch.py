from django.core.management.base import BaseCommand, CommandError

from mail import control


class Command(BaseCommand):
    help = "Turn the global sync kill switch on or off. While on, no account enters a sync cycle."

    def add_arguments(self, parser):
        parser.add_argument("state", choices=["on", "off"])
        parser.add_argument("--by", default="manage.py", help="Recorded as who changed the switch")

    def handle(self, *args, **options):
        try:
            row = control.set_kill_switch(options["state"] == "on", changed_by=options["by"])
        except Exception as e:
            raise CommandError(f"Could not set kill switch: {e}")
        style = self.style.WARNING if row.kill_switch else self.style.SUCCESS
        self.stdout.write(style(f"Kill switch is now {'ON' if row.kill_switch else 'OFF'}."))
