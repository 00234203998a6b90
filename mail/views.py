from django.db.models import Q
from django.shortcuts import get_object_or_404
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from accounts.models import Account
from mail import control
from mail.content_cache import ContentCache
from mail.exceptions import SyncError
from mail.index_store import IndexStore

from .models import ContentCacheEntry, MessageIndexEntry, SyncControl, SyncRun
from .serializers import (
    ContentCacheEntrySerializer,
    KillSwitchSerializer,
    MarkReadSerializer,
    MarkRepliedSerializer,
    MessageIndexEntrySerializer,
    SyncRunSerializer,
)


def visible_accounts(user):
    qs = Account.objects.all()
    if user.is_staff:
        return qs
    return qs.filter(Q(owner=user) | Q(users=user)).distinct()


class MessageIndexEntryViewSet(viewsets.ReadOnlyModelViewSet):
    """Index rows, newest first. Filters: ?account=, ?folder=, ?direction=, ?q="""

    serializer_class = MessageIndexEntrySerializer

    def get_queryset(self):
        qs = MessageIndexEntry.objects.filter(account__in=visible_accounts(self.request.user))
        params = self.request.query_params
        if params.get("account"):
            qs = qs.filter(account_id=params["account"])
        if params.get("folder"):
            qs = qs.filter(folder=params["folder"])
        if params.get("direction"):
            qs = qs.filter(direction=params["direction"])
        query = (params.get("q") or "").strip()
        if query:
            qs = qs.filter(
                Q(subject__icontains=query)
                | Q(sender_email__icontains=query)
                | Q(sender_name__icontains=query)
                | Q(preview_text__icontains=query)
            )
        return qs.order_by("-received_at", "-first_seen_at")

    @action(detail=True, methods=["post"], url_path="mark-read")
    def mark_read(self, request, pk=None):
        entry = self.get_object()
        serializer = MarkReadSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        IndexStore().mark_read(
            entry.account_id, entry.provider_message_id, serializer.validated_data["is_read"]
        )
        entry.refresh_from_db()
        return Response(self.get_serializer(entry).data)

    @action(detail=True, methods=["post"], url_path="mark-replied")
    def mark_replied(self, request, pk=None):
        entry = self.get_object()
        serializer = MarkRepliedSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        IndexStore().mark_replied(
            entry.account_id, entry.provider_message_id, serializer.validated_data["replied"]
        )
        entry.refresh_from_db()
        return Response(self.get_serializer(entry).data)

    @action(detail=True, methods=["get"])
    def body(self, request, pk=None):
        """Full body via the content cache; ?refresh=1 bypasses the cached copy."""
        entry = self.get_object()
        force_refresh = request.query_params.get("refresh") in ("1", "true", "yes")
        try:
            cached = ContentCache().read_through(
                entry.account, entry.provider_message_id, force_refresh=force_refresh
            )
        except SyncError as e:
            return Response({"error": str(e)}, status=status.HTTP_502_BAD_GATEWAY)
        return Response(ContentCacheEntrySerializer(cached).data)

    @action(detail=False, methods=["get"])
    def stats(self, request):
        account_id = request.query_params.get("account")
        if account_id:
            account = get_object_or_404(visible_accounts(request.user), pk=account_id)
            return Response(IndexStore().stats(account_id=account.pk))
        return Response(IndexStore().stats(owner_id=request.user.pk))


class ContentCacheEntryViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = ContentCacheEntrySerializer

    def get_queryset(self):
        return ContentCacheEntry.objects.filter(
            account__in=visible_accounts(self.request.user)
        ).order_by("-last_accessed")


class SyncRunViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = SyncRunSerializer

    def get_queryset(self):
        qs = SyncRun.objects.filter(account__in=visible_accounts(self.request.user))
        if self.request.query_params.get("account"):
            qs = qs.filter(account_id=self.request.query_params["account"])
        return qs


class SyncControlViewSet(viewsets.ViewSet):
    """Process-wide switches; staff only."""

    permission_classes = [permissions.IsAdminUser]

    def list(self, request):
        return Response(KillSwitchSerializer(SyncControl.load()).data)

    @action(detail=False, methods=["post"], url_path="kill-switch")
    def kill_switch(self, request):
        serializer = KillSwitchSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        control_row = control.set_kill_switch(
            serializer.validated_data["kill_switch"], changed_by=request.user.get_username()
        )
        return Response(KillSwitchSerializer(control_row).data)

    @action(detail=False, methods=["post"], url_path="emergency-stop")
    def emergency_stop(self, request):
        disabled = control.emergency_stop(changed_by=request.user.get_username())
        return Response({"accounts_disabled": disabled})
