import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


SYNC_STATUS_CHOICES = [
    ("idle", "Idle"),
    ("running", "Running"),
    ("completed", "Completed"),
    ("failed", "Failed"),
    ("rate_limited", "Rate limited"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("accounts", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="SyncControl",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kill_switch", models.BooleanField(default=False)),
                ("changed_by", models.CharField(blank=True, default="", max_length=255)),
                ("changed_at", models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name="SyncState",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("cursor", models.JSONField(blank=True, default=dict)),
                ("state", models.CharField(choices=SYNC_STATUS_CHOICES, default="idle", max_length=32)),
                ("last_sync_at", models.DateTimeField(blank=True, null=True)),
                ("last_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("next_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("consecutive_error_count", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True, default="")),
                ("stop_requested", models.BooleanField(default=False)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="sync_state", to="accounts.account")),
            ],
            options={
                "indexes": [models.Index(fields=["state", "next_attempt_at"], name="mail_syncstate_due_idx")],
            },
        ),
        migrations.CreateModel(
            name="MessageIndexEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider_message_id", models.CharField(max_length=255)),
                ("thread_id", models.CharField(blank=True, default="", max_length=255)),
                ("folder", models.CharField(max_length=255)),
                ("direction", models.CharField(choices=[("inbound", "Inbound"), ("outbound", "Outbound")], max_length=16)),
                ("subject", models.CharField(blank=True, default="", max_length=512)),
                ("sender_email", models.CharField(blank=True, default="", max_length=255)),
                ("sender_name", models.CharField(blank=True, default="", max_length=255)),
                ("recipients", models.JSONField(blank=True, default=list)),
                ("preview_text", models.CharField(blank=True, default="", max_length=512)),
                ("has_attachments", models.BooleanField(default=False)),
                ("attachment_count", models.PositiveIntegerField(default=0)),
                ("importance", models.CharField(blank=True, default="normal", max_length=16)),
                ("is_read", models.BooleanField(default=False)),
                ("replied", models.BooleanField(default=False)),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("received_at", models.DateTimeField(blank=True, null=True)),
                ("first_seen_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="index_entries", to="accounts.account")),
                ("owner", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="index_entries", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-received_at", "-first_seen_at"],
                "indexes": [
                    models.Index(fields=["account", "received_at"], name="mail_index_recent_idx"),
                    models.Index(fields=["account", "folder", "received_at"], name="mail_index_folder_idx"),
                    models.Index(fields=["account", "direction", "received_at"], name="mail_index_direction_idx"),
                    models.Index(fields=["owner", "received_at"], name="mail_index_owner_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("account", "provider_message_id"), name="mail_index_unique_account_message"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ContentCacheEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider_message_id", models.CharField(max_length=255)),
                ("body_html", models.TextField(blank=True, default="")),
                ("body_text", models.TextField(blank=True, default="")),
                ("raw_mime", models.TextField(blank=True, default="")),
                ("attachments", models.JSONField(blank=True, default=list)),
                ("size_bytes", models.PositiveIntegerField(default=0)),
                ("cached_at", models.DateTimeField()),
                ("last_accessed", models.DateTimeField()),
                ("access_count", models.PositiveIntegerField(default=0)),
                ("account", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="content_cache_entries", to="accounts.account")),
            ],
            options={
                "indexes": [
                    models.Index(fields=["last_accessed"], name="mail_content_accessed_idx"),
                    models.Index(fields=["last_accessed", "access_count"], name="mail_content_sweep_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("account", "provider_message_id"), name="mail_content_unique_account_message"),
                ],
            },
        ),
        migrations.CreateModel(
            name="SyncRun",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("mode", models.CharField(choices=[("incremental", "Incremental"), ("full", "Full resync")], default="incremental", max_length=32)),
                ("outcome", models.CharField(choices=SYNC_STATUS_CHOICES, default="running", max_length=32)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("finished_at", models.DateTimeField(blank=True, null=True)),
                ("pages_fetched", models.PositiveIntegerField(default=0)),
                ("created_counts", models.JSONField(blank=True, default=dict)),
                ("updated_counts", models.JSONField(blank=True, default=dict)),
                ("rejected_message_ids", models.JSONField(blank=True, default=list)),
                ("deferred_by_quota", models.BooleanField(default=False)),
                ("error", models.TextField(blank=True)),
                ("account", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="sync_runs", to="accounts.account")),
            ],
            options={
                "ordering": ["-finished_at", "-started_at"],
                "indexes": [models.Index(fields=["account", "finished_at"], name="mail_syncrun_finished_idx")],
            },
        ),
    ]
