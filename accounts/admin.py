from django.contrib import admin

from .models import Account, OAuthToken


@admin.register(Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = ("provider", "email", "owner", "is_connected", "sync_enabled", "polling_interval_seconds")
    list_filter = ("provider", "is_active", "is_connected", "sync_enabled")
    search_fields = ("email",)
    ordering = ("provider", "email")


@admin.register(OAuthToken)
class OAuthTokenAdmin(admin.ModelAdmin):
    list_display = ("account", "token_type", "expires_at", "updated_at")
    search_fields = ("account__email",)
    exclude = ("access_token", "refresh_token")
