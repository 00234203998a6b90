"""
Index Store: deduplicated message metadata keyed by (account_id, provider_message_id).

Writes are upserts only. A write without a resolved owner is rejected here,
at the persistence boundary, rather than being stored orphaned.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from django.db.models import Count, Q
from django.utils import timezone

from mail.exceptions import DataIntegrityViolation
from mail.models import ContentCacheEntry, Direction, MessageIndexEntry
from mail.providers import MessageSummary

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = MessageIndexEntry._meta.get_field("provider_message_id").max_length


@dataclass
class UpsertResult:
    entry: MessageIndexEntry
    created: bool


@dataclass
class PageWriteResult:
    created: Counter = field(default_factory=Counter)
    updated: Counter = field(default_factory=Counter)
    rejected: List[str] = field(default_factory=list)

    @property
    def total_created(self) -> int:
        return sum(self.created.values())


def _truncate(value, max_length: int) -> str:
    s = str(value or "")
    return s[:max_length]


def _field_values(summary: MessageSummary) -> dict:
    return {
        "thread_id": _truncate(summary.thread_id, 255),
        "folder": _truncate(summary.folder, 255),
        "direction": summary.direction,
        "subject": _truncate(summary.subject, 512),
        "sender_email": _truncate(summary.sender_email, 255),
        "sender_name": _truncate(summary.sender_name, 255),
        "recipients": list(summary.recipients or []),
        "preview_text": _truncate(summary.preview_text, 512),
        "has_attachments": bool(summary.has_attachments or summary.attachment_count),
        "attachment_count": summary.attachment_count or 0,
        "importance": _truncate(summary.importance or "normal", 16),
        "is_read": bool(summary.is_read),
        "sent_at": summary.sent_at,
        "received_at": summary.received_at or summary.sent_at,
    }


class IndexStore:
    def validate(self, owner_id: Optional[int], summary: MessageSummary) -> None:
        message_id = getattr(summary, "provider_message_id", None)
        if owner_id is None:
            raise DataIntegrityViolation("Owner is unresolved; refusing to write index entry", message_id)
        if not message_id or not str(message_id).strip():
            raise DataIntegrityViolation("Message has no provider id", message_id)
        if len(str(message_id)) > MAX_ID_LENGTH:
            raise DataIntegrityViolation(f"Provider id longer than {MAX_ID_LENGTH} characters", message_id)
        if summary.direction not in Direction.values:
            raise DataIntegrityViolation(f"Unknown direction {summary.direction!r}", message_id)

    def upsert(self, account_id: int, owner_id: Optional[int], summary: MessageSummary) -> UpsertResult:
        """Insert or update one entry. Re-upserting identical data leaves a single row."""
        self.validate(owner_id, summary)
        entry, created = MessageIndexEntry.objects.update_or_create(
            account_id=account_id,
            provider_message_id=summary.provider_message_id,
            defaults={"owner_id": owner_id, **_field_values(summary)},
        )
        return UpsertResult(entry=entry, created=created)

    def upsert_page(
        self, account_id: int, owner_id: Optional[int], summaries: Iterable[MessageSummary]
    ) -> PageWriteResult:
        """
        Upsert a page of summaries. Malformed records are collected in `rejected`
        and skipped; an unresolved owner rejects the whole page.
        """
        if owner_id is None:
            raise DataIntegrityViolation("Owner is unresolved; refusing to write index page")
        result = PageWriteResult()
        for summary in summaries:
            try:
                upserted = self.upsert(account_id, owner_id, summary)
            except DataIntegrityViolation as e:
                logger.warning(
                    "Rejected index entry account_id=%s message_id=%s: %s",
                    account_id,
                    e.provider_message_id,
                    e,
                )
                result.rejected.append(str(e.provider_message_id or ""))
                continue
            if upserted.created:
                result.created[summary.direction] += 1
            else:
                result.updated[summary.direction] += 1
        return result

    def exists(self, account_id: int, provider_message_id: str) -> bool:
        return MessageIndexEntry.objects.filter(
            account_id=account_id, provider_message_id=provider_message_id
        ).exists()

    def existing_ids(self, account_id: int, provider_message_ids: Iterable[str]) -> Set[str]:
        ids = [i for i in provider_message_ids if i]
        if not ids:
            return set()
        return set(
            MessageIndexEntry.objects.filter(
                account_id=account_id, provider_message_id__in=ids
            ).values_list("provider_message_id", flat=True)
        )

    def count(self, account_id: int, direction: Optional[str] = None) -> int:
        qs = MessageIndexEntry.objects.filter(account_id=account_id)
        if direction:
            qs = qs.filter(direction=direction)
        return qs.count()

    def recent(
        self,
        account_id: int,
        folder: Optional[str] = None,
        direction: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[MessageIndexEntry]:
        """Most recent entries first, paginated by limit/offset."""
        qs = MessageIndexEntry.objects.filter(account_id=account_id)
        if folder:
            qs = qs.filter(folder=folder)
        if direction:
            qs = qs.filter(direction=direction)
        qs = qs.order_by("-received_at", "-first_seen_at", "-pk")
        return list(qs[offset:offset + limit])

    def search(self, owner_id: int, query: str, limit: int = 50):
        qs = MessageIndexEntry.objects.filter(owner_id=owner_id)
        query = (query or "").strip()
        if query:
            qs = qs.filter(
                Q(subject__icontains=query)
                | Q(sender_email__icontains=query)
                | Q(sender_name__icontains=query)
                | Q(preview_text__icontains=query)
            )
        return list(qs.order_by("-received_at", "-first_seen_at")[:limit])

    def mark_read(self, account_id: int, provider_message_id: str, is_read: bool = True) -> bool:
        updated = MessageIndexEntry.objects.filter(
            account_id=account_id, provider_message_id=provider_message_id
        ).update(is_read=is_read, updated_at=timezone.now())
        return bool(updated)

    def mark_replied(self, account_id: int, provider_message_id: str, replied: bool = True) -> bool:
        updated = MessageIndexEntry.objects.filter(
            account_id=account_id, provider_message_id=provider_message_id
        ).update(replied=replied, updated_at=timezone.now())
        return bool(updated)

    def stats(self, account_id: Optional[int] = None, owner_id: Optional[int] = None) -> dict:
        qs = MessageIndexEntry.objects.all()
        cache_qs = ContentCacheEntry.objects.all()
        if account_id is not None:
            qs = qs.filter(account_id=account_id)
            cache_qs = cache_qs.filter(account_id=account_id)
        if owner_id is not None:
            qs = qs.filter(owner_id=owner_id)
            cache_qs = cache_qs.filter(account_id__in=qs.values("account_id"))
        totals = qs.aggregate(
            total=Count("pk"),
            unread=Count("pk", filter=Q(is_read=False)),
            inbound=Count("pk", filter=Q(direction=Direction.INBOUND)),
            outbound=Count("pk", filter=Q(direction=Direction.OUTBOUND)),
            replied=Count("pk", filter=Q(replied=True)),
        )
        totals["cached_bodies"] = cache_qs.count()
        return totals


index_store = IndexStore()
