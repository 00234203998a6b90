import accounts.models
import accounts.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Account",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=[("gmail", "Gmail"), ("microsoft", "Microsoft"), ("imap", "IMAP")], max_length=32)),
                ("email", models.EmailField(max_length=255)),
                ("credential_ref", models.CharField(blank=True, default="", help_text="Reference to the mailbox credential held by the token provider", max_length=255)),
                ("connection_settings", models.JSONField(blank=True, default=dict, help_text="Provider connection details (IMAP host, port, username, ssl)")),
                ("polling_interval_seconds", models.PositiveIntegerField(default=accounts.models._default_polling_interval, validators=[accounts.validators.validate_polling_interval])),
                ("is_active", models.BooleanField(default=True)),
                ("is_connected", models.BooleanField(default=False)),
                ("sync_enabled", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True, null=True, blank=True)),
                ("updated_at", models.DateTimeField(auto_now=True, null=True, blank=True)),
                ("owner", models.ForeignKey(blank=True, help_text="User the mailbox data is attributed to", null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="owned_accounts", to=settings.AUTH_USER_MODEL)),
                ("users", models.ManyToManyField(blank=True, help_text="Users who have access to this account", related_name="accounts", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["provider", "email"],
                "unique_together": {("provider", "email")},
                "indexes": [
                    models.Index(fields=["provider", "email"], name="accounts_provider_email_idx"),
                    models.Index(fields=["is_active", "is_connected", "sync_enabled"], name="accounts_sync_eligible_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OAuthToken",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("access_token", models.TextField()),
                ("refresh_token", models.TextField(blank=True, null=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("token_type", models.CharField(default="Bearer", max_length=32)),
                ("scopes", models.TextField(blank=True, help_text="Comma-separated list of OAuth scopes granted with this token")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("account", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="oauth_token", to="accounts.account")),
            ],
            options={
                "indexes": [models.Index(fields=["account", "expires_at"], name="accounts_token_expiry_idx")],
            },
        ),
    ]
