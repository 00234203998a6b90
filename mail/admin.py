from django.contrib import admin

from .models import ContentCacheEntry, MessageIndexEntry, SyncControl, SyncRun, SyncState


@admin.register(SyncState)
class SyncStateAdmin(admin.ModelAdmin):
    list_display = ("account", "state", "last_sync_at", "next_attempt_at", "consecutive_error_count")
    list_filter = ("state",)
    search_fields = ("account__email",)
    readonly_fields = ("cursor",)


@admin.register(MessageIndexEntry)
class MessageIndexEntryAdmin(admin.ModelAdmin):
    list_display = ("subject", "sender_email", "account", "folder", "direction", "received_at")
    search_fields = ("subject", "sender_email", "provider_message_id")
    list_filter = ("account", "direction", "folder")


@admin.register(ContentCacheEntry)
class ContentCacheEntryAdmin(admin.ModelAdmin):
    list_display = ("provider_message_id", "account", "size_bytes", "last_accessed", "access_count")
    search_fields = ("provider_message_id",)
    list_filter = ("account",)


@admin.register(SyncControl)
class SyncControlAdmin(admin.ModelAdmin):
    list_display = ("kill_switch", "changed_by", "changed_at")


@admin.register(SyncRun)
class SyncRunAdmin(admin.ModelAdmin):
    list_display = ("account", "mode", "outcome", "pages_fetched", "deferred_by_quota", "finished_at")
    list_filter = ("outcome", "mode")
    search_fields = ("account__email",)
