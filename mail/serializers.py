from rest_framework import serializers

from .models import ContentCacheEntry, MessageIndexEntry, SyncControl, SyncRun


class MessageIndexEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = MessageIndexEntry
        fields = [
            "id",
            "account",
            "owner",
            "provider_message_id",
            "thread_id",
            "folder",
            "direction",
            "subject",
            "sender_email",
            "sender_name",
            "recipients",
            "preview_text",
            "has_attachments",
            "attachment_count",
            "importance",
            "is_read",
            "replied",
            "sent_at",
            "received_at",
            "first_seen_at",
        ]
        read_only_fields = fields


class ContentCacheEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = ContentCacheEntry
        fields = [
            "id",
            "account",
            "provider_message_id",
            "body_html",
            "body_text",
            "attachments",
            "size_bytes",
            "cached_at",
            "last_accessed",
            "access_count",
        ]
        read_only_fields = fields


class SyncRunSerializer(serializers.ModelSerializer):
    class Meta:
        model = SyncRun
        fields = [
            "id",
            "account",
            "mode",
            "outcome",
            "started_at",
            "finished_at",
            "pages_fetched",
            "created_counts",
            "updated_counts",
            "rejected_message_ids",
            "deferred_by_quota",
            "error",
        ]
        read_only_fields = fields


class KillSwitchSerializer(serializers.ModelSerializer):
    class Meta:
        model = SyncControl
        fields = ["kill_switch", "changed_by", "changed_at"]
        read_only_fields = ["changed_by", "changed_at"]


class MarkReadSerializer(serializers.Serializer):
    is_read = serializers.BooleanField(default=True)


class MarkRepliedSerializer(serializers.Serializer):
    replied = serializers.BooleanField(default=True)
