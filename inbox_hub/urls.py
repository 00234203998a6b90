from django.contrib import admin
from django.urls import include, path
from rest_framework import routers

from accounts.views import AccountViewSet
from mail.views import (
    ContentCacheEntryViewSet,
    MessageIndexEntryViewSet,
    SyncControlViewSet,
    SyncRunViewSet,
)

router = routers.DefaultRouter()
router.register(r"accounts", AccountViewSet, basename="account")
router.register(r"messages", MessageIndexEntryViewSet, basename="message")
router.register(r"content", ContentCacheEntryViewSet, basename="content")
router.register(r"sync-runs", SyncRunViewSet, basename="syncrun")
router.register(r"sync-control", SyncControlViewSet, basename="sync-control")

urlpatterns = [
    path("admin/", admin.site.urls),
    path("api/", include(router.urls)),
]
