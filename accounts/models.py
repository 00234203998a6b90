from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import models

from accounts.validators import validate_polling_interval

User = get_user_model()


def _default_polling_interval():
    return int(getattr(settings, "EMAIL_SYNC_DEFAULT_POLL_INTERVAL_SECONDS", 300))


class Provider(models.TextChoices):
    GMAIL = "gmail", "Gmail"
    MICROSOFT = "microsoft", "Microsoft"
    IMAP = "imap", "IMAP"


class Account(models.Model):
    provider = models.CharField(max_length=32, choices=Provider.choices)
    email = models.EmailField(max_length=255)
    owner = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        related_name="owned_accounts",
        blank=True,
        null=True,
        help_text="User the mailbox data is attributed to",
    )
    users = models.ManyToManyField(
        User,
        related_name="accounts",
        blank=True,
        help_text="Users who have access to this account"
    )
    credential_ref = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Reference to the mailbox credential held by the token provider",
    )
    connection_settings = models.JSONField(
        default=dict,
        blank=True,
        help_text="Provider connection details (IMAP host, port, username, ssl)",
    )
    polling_interval_seconds = models.PositiveIntegerField(
        default=_default_polling_interval,
        validators=[validate_polling_interval],
    )
    is_active = models.BooleanField(default=True)
    is_connected = models.BooleanField(default=False)
    sync_enabled = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True, null=True, blank=True)

    class Meta:
        unique_together = (("provider", "email"),)
        indexes = [
            models.Index(fields=["provider", "email"], name="accounts_provider_email_idx"),
            models.Index(fields=["is_active", "is_connected", "sync_enabled"], name="accounts_sync_eligible_idx"),
        ]
        ordering = ["provider", "email"]

    def __str__(self):
        return f"{self.provider} | {self.email}"


class OAuthToken(models.Model):
    """Stored mailbox credential (OAuth tokens, or the app password for IMAP)"""
    account = models.OneToOneField(
        Account, on_delete=models.CASCADE, related_name="oauth_token"
    )
    access_token = models.TextField()
    refresh_token = models.TextField(blank=True, null=True)
    expires_at = models.DateTimeField(blank=True, null=True)
    token_type = models.CharField(max_length=32, default="Bearer")
    scopes = models.TextField(
        blank=True,
        help_text="Comma-separated list of OAuth scopes granted with this token",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["account", "expires_at"], name="accounts_token_expiry_idx")]

    def __str__(self):
        return f"Token for {self.account}"

    def is_expired(self):
        if not self.expires_at:
            return False
        from django.utils import timezone
        return timezone.now() >= self.expires_at

    def get_scopes_list(self):
        """Get scopes as a list"""
        if not self.scopes:
            return []
        return [s.strip() for s in self.scopes.split(",") if s.strip()]

    def set_scopes_list(self, scopes_list):
        """Set scopes from a list"""
        self.scopes = ",".join(scopes_list) if scopes_list else ""
