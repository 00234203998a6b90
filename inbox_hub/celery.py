import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "inbox_hub.settings")

app = Celery("inbox_hub")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

# Periodic tasks - enumerate due accounts every minute, sweep the body cache hourly
app.conf.beat_schedule = {
    "sync-due-accounts": {
        "task": "mail.tasks.sync_due_accounts",
        "schedule": crontab(minute="*"),
    },
    "sweep-content-cache": {
        "task": "mail.tasks.sweep_content_cache",
        "schedule": crontab(minute=15),
    },
}
