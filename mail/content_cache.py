"""
Content Cache: evictable full message bodies, filled lazily on first read.

Reads never delete; eviction only happens in sweep(), run periodically by
the sweep_content_cache task.
"""
import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db.models import F, Q, Sum
from django.utils import timezone

from mail.models import ContentCacheEntry
from mail.providers import BodyVariants, ProviderAdapter, get_adapter

logger = logging.getLogger(__name__)


def _short_ttl() -> timedelta:
    return timedelta(hours=int(getattr(settings, "CONTENT_CACHE_SHORT_TTL_HOURS", 48)))


def _long_ttl() -> timedelta:
    return timedelta(days=int(getattr(settings, "CONTENT_CACHE_LONG_TTL_DAYS", 7)))


def _low_use_threshold() -> int:
    return int(getattr(settings, "CONTENT_CACHE_LOW_USE_THRESHOLD", 3))


class ContentCache:
    def get(self, account_id: int, provider_message_id: str) -> Optional[ContentCacheEntry]:
        """Return the cached body or None. A hit bumps access_count atomically."""
        now = timezone.now()
        qs = ContentCacheEntry.objects.filter(
            account_id=account_id, provider_message_id=provider_message_id
        )
        if not qs.update(access_count=F("access_count") + 1, last_accessed=now):
            return None
        return qs.first()

    def put(
        self,
        account_id: int,
        provider_message_id: str,
        body: BodyVariants,
        size: Optional[int] = None,
    ) -> ContentCacheEntry:
        now = timezone.now()
        entry, _ = ContentCacheEntry.objects.update_or_create(
            account_id=account_id,
            provider_message_id=provider_message_id,
            defaults={
                "body_html": body.html or "",
                "body_text": body.text or "",
                "raw_mime": body.raw or "",
                "attachments": body.attachments or [],
                "size_bytes": size if size is not None else body.size_bytes,
                "cached_at": now,
                "last_accessed": now,
                "access_count": 0,
            },
        )
        return entry

    def read_through(
        self,
        account,
        provider_message_id: str,
        adapter: Optional[ProviderAdapter] = None,
        force_refresh: bool = False,
    ) -> ContentCacheEntry:
        """
        Serve from cache, or fetch from the provider on a miss (or when
        force_refresh is set) and store the result. Provider errors propagate.
        """
        if not force_refresh:
            entry = self.get(account.pk, provider_message_id)
            if entry is not None:
                return entry

        own_adapter = adapter is None
        adapter = adapter or get_adapter(account)
        try:
            body = adapter.fetch_body(provider_message_id)
        finally:
            if own_adapter:
                adapter.close()
        entry = self.put(account.pk, provider_message_id, body)
        logger.info(
            "Cached body account_id=%s message_id=%s size=%s force_refresh=%s",
            account.pk,
            provider_message_id,
            entry.size_bytes,
            force_refresh,
        )
        return entry

    def invalidate(self, account_id: int, provider_message_id: str) -> bool:
        deleted, _ = ContentCacheEntry.objects.filter(
            account_id=account_id, provider_message_id=provider_message_id
        ).delete()
        return bool(deleted)

    def eviction_filter(self, now=None) -> Q:
        """
        Entries idle less than the short TTL are always kept. Between the short
        TTL and the long horizon only low-use entries go; past the horizon all go.
        """
        now = now or timezone.now()
        short_cutoff = now - _short_ttl()
        long_cutoff = now - _long_ttl()
        low_use = Q(last_accessed__lt=short_cutoff, access_count__lt=_low_use_threshold())
        stale = Q(last_accessed__lt=long_cutoff)
        return low_use | stale

    def sweep(self, now=None) -> int:
        deleted, _ = ContentCacheEntry.objects.filter(self.eviction_filter(now)).delete()
        logger.info("Content cache sweep deleted %s entries", deleted)
        return deleted

    def stats(self, account_id: Optional[int] = None) -> dict:
        qs = ContentCacheEntry.objects.all()
        if account_id is not None:
            qs = qs.filter(account_id=account_id)
        aggregate = qs.aggregate(total_bytes=Sum("size_bytes"))
        return {"entries": qs.count(), "total_bytes": aggregate["total_bytes"] or 0}


content_cache = ContentCache()
