from rest_framework import serializers

from .models import Account
from .validators import validate_polling_interval


class AccountSerializer(serializers.ModelSerializer):
    polling_interval_seconds = serializers.IntegerField(
        required=False, validators=[validate_polling_interval]
    )
    sync_state = serializers.CharField(source="sync_state.state", read_only=True, default="idle")
    last_sync_at = serializers.DateTimeField(source="sync_state.last_sync_at", read_only=True, default=None)

    class Meta:
        model = Account
        fields = [
            "id",
            "provider",
            "email",
            "owner",
            "connection_settings",
            "polling_interval_seconds",
            "is_active",
            "is_connected",
            "sync_enabled",
            "sync_state",
            "last_sync_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["is_connected", "created_at", "updated_at"]
        extra_kwargs = {"connection_settings": {"write_only": True}}

    def get_fields(self):
        fields = super().get_fields()
        request = self.context.get("request")
        # Only staff may attribute a mailbox's data to a user
        if request is None or not request.user.is_staff:
            fields["owner"].read_only = True
        return fields


class StartSyncSerializer(serializers.Serializer):
    mode = serializers.ChoiceField(choices=["incremental", "full"], default="incremental")
