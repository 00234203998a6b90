from django.conf import settings
from django.db import models


class Direction(models.TextChoices):
    INBOUND = "inbound", "Inbound"
    OUTBOUND = "outbound", "Outbound"


class SyncStatus(models.TextChoices):
    IDLE = "idle", "Idle"
    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    RATE_LIMITED = "rate_limited", "Rate limited"


class SyncMode(models.TextChoices):
    INCREMENTAL = "incremental", "Incremental"
    FULL = "full", "Full resync"


class SyncState(models.Model):
    """Per-account sync position and health. Written only by the sync worker."""
    account = models.OneToOneField(
        "accounts.Account", on_delete=models.CASCADE, related_name="sync_state"
    )
    # Opaque provider cursors keyed by logical folder ("inbox", "sent")
    cursor = models.JSONField(default=dict, blank=True)
    state = models.CharField(
        max_length=32, choices=SyncStatus.choices, default=SyncStatus.IDLE
    )
    last_sync_at = models.DateTimeField(blank=True, null=True)
    last_attempt_at = models.DateTimeField(blank=True, null=True)
    next_attempt_at = models.DateTimeField(blank=True, null=True)
    consecutive_error_count = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default="")
    stop_requested = models.BooleanField(default=False)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["state", "next_attempt_at"], name="mail_syncstate_due_idx")]

    def __str__(self):
        return f"SyncState<{self.account_id}:{self.state}>"


class MessageIndexEntry(models.Model):
    """Lightweight, deduplicated message metadata. Bodies live in ContentCacheEntry."""
    account = models.ForeignKey(
        "accounts.Account", on_delete=models.CASCADE, related_name="index_entries"
    )
    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="index_entries"
    )
    provider_message_id = models.CharField(max_length=255)
    thread_id = models.CharField(max_length=255, blank=True, default="")
    folder = models.CharField(max_length=255)
    direction = models.CharField(max_length=16, choices=Direction.choices)
    subject = models.CharField(max_length=512, blank=True, default="")
    sender_email = models.CharField(max_length=255, blank=True, default="")
    sender_name = models.CharField(max_length=255, blank=True, default="")
    recipients = models.JSONField(default=list, blank=True)
    preview_text = models.CharField(max_length=512, blank=True, default="")
    has_attachments = models.BooleanField(default=False)
    attachment_count = models.PositiveIntegerField(default=0)
    importance = models.CharField(max_length=16, blank=True, default="normal")
    is_read = models.BooleanField(default=False)
    replied = models.BooleanField(default=False)
    sent_at = models.DateTimeField(blank=True, null=True)
    received_at = models.DateTimeField(blank=True, null=True)
    first_seen_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["account", "provider_message_id"],
                name="mail_index_unique_account_message",
            )
        ]
        indexes = [
            models.Index(fields=["account", "received_at"], name="mail_index_recent_idx"),
            models.Index(fields=["account", "folder", "received_at"], name="mail_index_folder_idx"),
            models.Index(fields=["account", "direction", "received_at"], name="mail_index_direction_idx"),
            models.Index(fields=["owner", "received_at"], name="mail_index_owner_idx"),
        ]
        ordering = ["-received_at", "-first_seen_at"]

    def __str__(self):
        return self.subject or self.provider_message_id


class ContentCacheEntry(models.Model):
    """Evictable full body for a message. Exists independently of the index row."""
    account = models.ForeignKey(
        "accounts.Account", on_delete=models.CASCADE, related_name="content_cache_entries"
    )
    provider_message_id = models.CharField(max_length=255)
    body_html = models.TextField(blank=True, default="")
    body_text = models.TextField(blank=True, default="")
    raw_mime = models.TextField(blank=True, default="")
    attachments = models.JSONField(default=list, blank=True)
    size_bytes = models.PositiveIntegerField(default=0)
    cached_at = models.DateTimeField()
    last_accessed = models.DateTimeField()
    access_count = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["account", "provider_message_id"],
                name="mail_content_unique_account_message",
            )
        ]
        indexes = [
            models.Index(fields=["last_accessed"], name="mail_content_accessed_idx"),
            models.Index(fields=["last_accessed", "access_count"], name="mail_content_sweep_idx"),
        ]

    def __str__(self):
        return f"Content<{self.account_id}:{self.provider_message_id}>"


class SyncControl(models.Model):
    """Process-wide sync switches, stored as a single row so every worker sees the same value."""
    SINGLETON_ID = 1

    kill_switch = models.BooleanField(default=False)
    changed_by = models.CharField(max_length=255, blank=True, default="")
    changed_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"SyncControl(kill_switch={self.kill_switch})"

    @classmethod
    def load(cls):
        obj, _ = cls.objects.get_or_create(pk=cls.SINGLETON_ID)
        return obj


class SyncRun(models.Model):
    """
    Audit record for one orchestration cycle. Used to inspect how many messages were
    seen, written and deferred by quota (see show_sync_runs).
    """
    account = models.ForeignKey(
        "accounts.Account", on_delete=models.CASCADE, related_name="sync_runs"
    )
    mode = models.CharField(max_length=32, choices=SyncMode.choices, default=SyncMode.INCREMENTAL)
    outcome = models.CharField(max_length=32, choices=SyncStatus.choices, default=SyncStatus.RUNNING)
    started_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    pages_fetched = models.PositiveIntegerField(default=0)
    created_counts = models.JSONField(default=dict, blank=True)
    updated_counts = models.JSONField(default=dict, blank=True)
    rejected_message_ids = models.JSONField(default=list, blank=True)
    deferred_by_quota = models.BooleanField(default=False)
    error = models.TextField(blank=True)

    class Meta:
        ordering = ["-finished_at", "-started_at"]
        indexes = [models.Index(fields=["account", "finished_at"], name="mail_syncrun_finished_idx")]

    def __str__(self):
        return f"SyncRun {self.mode} account={self.account_id} outcome={self.outcome}"
