from django.db.models import Q
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from mail import control

from .models import Account
from .serializers import AccountSerializer, StartSyncSerializer


class AccountViewSet(viewsets.ModelViewSet):
    serializer_class = AccountSerializer

    def get_queryset(self):
        qs = Account.objects.all().select_related("sync_state").order_by("provider", "email")
        user = self.request.user
        if user.is_staff:
            return qs
        return qs.filter(Q(owner=user) | Q(users=user)).distinct()

    def perform_create(self, serializer):
        account = serializer.save()
        account.users.add(self.request.user)

    def destroy(self, request, *args, **kwargs):
        account = self.get_object()
        result = control.disconnect_mailbox(account.pk, changed_by=request.user.get_username())
        return Response(result, status=status.HTTP_200_OK)

    @action(detail=True, methods=["post"])
    def sync(self, request, pk=None):
        """Queue a sync cycle; mode=full resets the cursors first."""
        account = self.get_object()
        serializer = StartSyncSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = control.start_sync(account.pk, mode=serializer.validated_data["mode"])
        return Response(result, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=["post"])
    def stop(self, request, pk=None):
        account = self.get_object()
        return Response({"account_id": account.pk, "stop_requested": control.stop_sync(account.pk)})

    @action(detail=True, methods=["get"], url_path="sync-status")
    def sync_status(self, request, pk=None):
        account = self.get_object()
        return Response(control.get_sync_status(account.pk))
