"""
Provider adapters: one uniform interface over Gmail (REST), Microsoft Graph and IMAP.

Every provider payload is normalised here into MessageSummary / BodyVariants so
nothing downstream ever branches on provider kind. Cursors are opaque,
JSON-serialisable dicts owned by the adapter that produced them.
"""
import base64
import email
import email.utils
import imaplib
import logging
import re
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone as utc_tz
from email.policy import default as email_policy
from typing import Dict, List, Optional, Tuple

import httplib2
import requests
from django.conf import settings
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from accounts.models import Account, Provider
from accounts.services import access_token_for, credentials_for
from mail.exceptions import AuthExpired, Fatal, NotFound, RateLimited, Transient
from mail.models import Direction

logger = logging.getLogger(__name__)

INBOX = "inbox"
SENT = "sent"

FOLDER_DIRECTIONS = {
    INBOX: Direction.INBOUND,
    SENT: Direction.OUTBOUND,
}

PREVIEW_LENGTH = 255


@dataclass
class MessageSummary:
    """Canonical, provider-neutral message metadata."""
    provider_message_id: str
    folder: str
    direction: str
    thread_id: str = ""
    subject: str = ""
    sender_email: str = ""
    sender_name: str = ""
    recipients: List[str] = field(default_factory=list)
    preview_text: str = ""
    is_read: bool = False
    has_attachments: bool = False
    attachment_count: int = 0
    importance: str = "normal"
    sent_at: Optional[datetime] = None
    received_at: Optional[datetime] = None


@dataclass
class MessagePage:
    summaries: List[MessageSummary]
    next_cursor: Optional[dict]
    has_more: bool


@dataclass
class BodyVariants:
    html: str = ""
    text: str = ""
    raw: str = ""
    attachments: List[dict] = field(default_factory=list)

    @property
    def size_bytes(self) -> int:
        return sum(len((part or "").encode("utf-8")) for part in (self.html, self.text, self.raw))


@dataclass(frozen=True)
class Capabilities:
    supports_delta: bool
    supports_push: bool


def direction_for(folder: str) -> str:
    try:
        return FOLDER_DIRECTIONS[folder]
    except KeyError:
        raise Fatal(f"Unknown logical folder: {folder}")


def _truncate(value: Optional[str], max_length: int) -> str:
    if not value:
        return ""
    s = str(value)
    return s[:max_length] if len(s) > max_length else s


def _parse_retry_after(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        pass
    try:
        when = email.utils.parsedate_to_datetime(str(value))
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=utc_tz.utc)
    return max(0.0, (when - datetime.now(utc_tz.utc)).total_seconds())


def raise_for_http_status(status: Optional[int], message: str, retry_after=None):
    """Map an HTTP status onto the sync error taxonomy."""
    if status == 401:
        raise AuthExpired(message)
    if status == 429:
        raise RateLimited(message, retry_after=_parse_retry_after(retry_after))
    if status == 503 and retry_after is not None:
        raise RateLimited(message, retry_after=_parse_retry_after(retry_after))
    if status in (404, 410):
        raise NotFound(message)
    if status is None or status >= 500 or status == 408:
        raise Transient(message)
    raise Fatal(message)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=utc_tz.utc)
    return parsed.astimezone(utc_tz.utc)


def _parse_addresses(header_value: str) -> List[str]:
    if not header_value:
        return []
    return [addr for _, addr in email.utils.getaddresses([header_value]) if addr]


def parse_mime(raw_bytes: bytes, keep_raw: bool = True) -> BodyVariants:
    """Split a raw RFC 822 message into html/text bodies and attachment metadata."""
    message = email.message_from_bytes(raw_bytes, policy=email_policy)
    html_body = ""
    text_body = ""
    attachments = []
    for part in message.walk():
        if part.is_multipart():
            continue
        disposition = part.get_content_disposition()
        filename = part.get_filename()
        content_type = part.get_content_type()
        if disposition == "attachment" or filename:
            payload = part.get_payload(decode=True) or b""
            attachments.append(
                {
                    "filename": filename or "attachment",
                    "content_type": content_type,
                    "size_bytes": len(payload),
                    "is_inline": disposition == "inline",
                    "content_id": (part.get("Content-ID") or "").strip("<>"),
                }
            )
            continue
        try:
            content = part.get_content()
        except (LookupError, UnicodeDecodeError):
            content = (part.get_payload(decode=True) or b"").decode("utf-8", errors="replace")
        if content_type == "text/html" and not html_body:
            html_body = content
        elif content_type == "text/plain" and not text_body:
            text_body = content
    raw = raw_bytes.decode("utf-8", errors="replace") if keep_raw else ""
    return BodyVariants(html=html_body, text=text_body, raw=raw, attachments=attachments)


class ProviderAdapter:
    """Base class for mailbox backends."""

    provider = None

    def __init__(self, account: Account, timeout: Optional[int] = None):
        self.account = account
        self.timeout = timeout or getattr(settings, "EMAIL_PROVIDER_TIMEOUT_SECONDS", 30)

    def list_messages(self, folder: str, cursor: Optional[dict], limit: int) -> MessagePage:
        """Fetch one page of summaries for a logical folder starting at cursor."""
        raise NotImplementedError

    def fetch_body(self, provider_message_id: str, folder: Optional[str] = None) -> BodyVariants:
        """Fetch the full body variants for one message."""
        raise NotImplementedError

    def capabilities(self) -> Capabilities:
        raise NotImplementedError

    def reconnect(self) -> None:
        """Drop cached clients so the next call picks up a refreshed credential."""
        self.close()

    def close(self) -> None:
        pass


class GmailAdapter(ProviderAdapter):
    """Gmail REST API via googleapiclient. Pages with messages.list, then deltas via history.list."""

    provider = Provider.GMAIL
    LABELS = {INBOX: "INBOX", SENT: "SENT"}
    METADATA_HEADERS = ["From", "To", "Cc", "Subject", "Date", "Importance"]

    def __init__(self, account: Account, timeout: Optional[int] = None):
        super().__init__(account, timeout)
        self._service = None

    def capabilities(self) -> Capabilities:
        return Capabilities(supports_delta=True, supports_push=True)

    def close(self) -> None:
        self._service = None

    def _get_service(self):
        if self._service is None:
            # No refresh on 401 here: the orchestrator owns the single refresh-and-retry.
            http = AuthorizedHttp(
                credentials_for(self.account),
                http=httplib2.Http(timeout=self.timeout),
                refresh_status_codes=(),
            )
            self._service = build("gmail", "v1", http=http, cache_discovery=False)
        return self._service

    def _execute(self, request):
        try:
            return request.execute(num_retries=0)
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            status = int(status) if status is not None else None
            retry_after = e.resp.get("retry-after") if hasattr(e.resp, "get") else None
            detail = str(e)
            if status == 403 and "ratelimitexceeded" in detail.lower():
                raise RateLimited(f"Gmail rate limit: {detail}", retry_after=_parse_retry_after(retry_after))
            raise_for_http_status(status, f"Gmail API error: {detail}", retry_after)
        except (socket.timeout, TimeoutError, httplib2.HttpLib2Error, ConnectionError) as e:
            raise Transient(f"Gmail request failed: {e}")

    def _label(self, folder: str) -> str:
        direction_for(folder)
        return self.LABELS[folder]

    def list_messages(self, folder: str, cursor: Optional[dict], limit: int) -> MessagePage:
        label = self._label(folder)
        cursor = cursor or {}
        if cursor.get("history_id"):
            try:
                return self._list_history(folder, label, cursor, limit)
            except NotFound:
                # startHistoryId too old: relist the folder from the top, upserts are idempotent
                logger.info(
                    "[Gmail] history expired for account %s folder %s, relisting",
                    self.account.pk,
                    folder,
                )
                cursor = {}
        return self._list_full(folder, label, cursor, limit)

    def _list_full(self, folder: str, label: str, cursor: dict, limit: int) -> MessagePage:
        service = self._get_service()
        start_history_id = cursor.get("start_history_id")
        if not start_history_id:
            profile = self._execute(service.users().getProfile(userId="me"))
            start_history_id = str(profile.get("historyId", ""))

        list_kwargs = {
            "userId": "me",
            "labelIds": [label],
            "maxResults": limit,
            "includeSpamTrash": False,
        }
        if cursor.get("page_token"):
            list_kwargs["pageToken"] = cursor["page_token"]
        results = self._execute(service.users().messages().list(**list_kwargs))
        ids = [m["id"] for m in results.get("messages", [])]
        summaries = self._summaries_for(folder, ids)

        page_token = results.get("nextPageToken")
        if page_token:
            return MessagePage(
                summaries,
                {"page_token": page_token, "start_history_id": start_history_id},
                True,
            )
        return MessagePage(summaries, {"history_id": start_history_id}, False)

    def _list_history(self, folder: str, label: str, cursor: dict, limit: int) -> MessagePage:
        service = self._get_service()
        history_kwargs = {
            "userId": "me",
            "startHistoryId": cursor["history_id"],
            "labelId": label,
            "historyTypes": ["messageAdded", "labelAdded"],
            "maxResults": limit,
        }
        if cursor.get("page_token"):
            history_kwargs["pageToken"] = cursor["page_token"]
        results = self._execute(service.users().history().list(**history_kwargs))

        ids: List[str] = []
        seen = set()
        for record in results.get("history", []):
            for key in ("messagesAdded", "labelsAdded"):
                for item in record.get(key, []):
                    msg_id = item.get("message", {}).get("id")
                    if msg_id and msg_id not in seen:
                        seen.add(msg_id)
                        ids.append(msg_id)
        summaries = self._summaries_for(folder, ids)

        page_token = results.get("nextPageToken")
        if page_token:
            return MessagePage(
                summaries,
                {"history_id": cursor["history_id"], "page_token": page_token},
                True,
            )
        latest = str(results.get("historyId") or cursor["history_id"])
        return MessagePage(summaries, {"history_id": latest}, False)

    def _summaries_for(self, folder: str, ids: List[str]) -> List[MessageSummary]:
        service = self._get_service()
        summaries = []
        for msg_id in ids:
            try:
                msg_data = self._execute(
                    service.users().messages().get(
                        userId="me",
                        id=msg_id,
                        format="metadata",
                        metadataHeaders=self.METADATA_HEADERS,
                    )
                )
            except NotFound:
                logger.info("[Gmail] Skip message %s: no longer exists", msg_id)
                continue
            summaries.append(self._parse_summary(folder, msg_data))
        return summaries

    def _parse_summary(self, folder: str, msg_data: dict) -> MessageSummary:
        payload = msg_data.get("payload", {})
        headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
        label_ids = msg_data.get("labelIds", [])
        sender_name, sender_email = email.utils.parseaddr(headers.get("from", ""))
        internal_date = msg_data.get("internalDate")
        received_at = (
            datetime.fromtimestamp(int(internal_date) / 1000, tz=utc_tz.utc)
            if internal_date
            else None
        )
        attachment_count = sum(
            1 for part in payload.get("parts", []) or [] if (part.get("filename") or "").strip()
        )
        importance = "high" if "IMPORTANT" in label_ids else "normal"
        return MessageSummary(
            provider_message_id=msg_data["id"],
            folder=folder,
            direction=direction_for(folder),
            thread_id=msg_data.get("threadId", ""),
            subject=headers.get("subject", ""),
            sender_email=sender_email,
            sender_name=sender_name,
            recipients=_parse_addresses(headers.get("to", "")) + _parse_addresses(headers.get("cc", "")),
            preview_text=_truncate(msg_data.get("snippet"), PREVIEW_LENGTH),
            is_read="UNREAD" not in label_ids,
            has_attachments=attachment_count > 0,
            attachment_count=attachment_count,
            importance=importance,
            sent_at=_parse_date(headers.get("date")),
            received_at=received_at,
        )

    def fetch_body(self, provider_message_id: str, folder: Optional[str] = None) -> BodyVariants:
        service = self._get_service()
        msg_data = self._execute(
            service.users().messages().get(userId="me", id=provider_message_id, format="raw")
        )
        raw = msg_data.get("raw", "")
        return parse_mime(base64.urlsafe_b64decode(raw))


class GraphAdapter(ProviderAdapter):
    """Microsoft Graph mail via requests, using per-folder delta queries."""

    provider = Provider.MICROSOFT
    BASE_URL = "https://graph.microsoft.com/v1.0"
    FOLDERS = {INBOX: "inbox", SENT: "sentitems"}
    SELECT = (
        "id,conversationId,subject,from,toRecipients,ccRecipients,bodyPreview,isRead,"
        "hasAttachments,importance,sentDateTime,receivedDateTime"
    )

    def __init__(self, account: Account, timeout: Optional[int] = None):
        super().__init__(account, timeout)
        self._session = None

    def capabilities(self) -> Capabilities:
        return Capabilities(supports_delta=True, supports_push=True)

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
        self._session = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            session.headers.update(
                {
                    "Authorization": f"Bearer {access_token_for(self.account)}",
                    "Content-Type": "application/json",
                }
            )
            self._session = session
        return self._session

    def _get(self, url: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> dict:
        try:
            resp = self._get_session().get(url, params=params, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise Transient(f"Microsoft Graph request failed: {e}")
        if resp.status_code >= 400:
            raise_for_http_status(
                resp.status_code,
                f"Microsoft Graph error {resp.status_code}: {resp.text[:300]}",
                resp.headers.get("Retry-After"),
            )
        return resp.json()

    def _initial_delta_url(self, folder: str) -> str:
        direction_for(folder)
        return f"{self.BASE_URL}/me/mailFolders/{self.FOLDERS[folder]}/messages/delta"

    def list_messages(self, folder: str, cursor: Optional[dict], limit: int) -> MessagePage:
        headers = {"Prefer": f"odata.maxpagesize={limit}"}
        link = (cursor or {}).get("link")
        if link:
            try:
                data = self._get(link, headers=headers)
            except NotFound:
                # Delta token expired (410): restart the folder, upserts are idempotent
                logger.info(
                    "[Microsoft] delta link expired for account %s folder %s, restarting",
                    self.account.pk,
                    folder,
                )
                data = self._get(self._initial_delta_url(folder), params={"$select": self.SELECT}, headers=headers)
        else:
            data = self._get(self._initial_delta_url(folder), params={"$select": self.SELECT}, headers=headers)

        summaries = [
            self._parse_summary(folder, msg)
            for msg in data.get("value", [])
            if msg.get("id") and "@removed" not in msg
        ]
        next_link = data.get("@odata.nextLink")
        if next_link:
            return MessagePage(summaries, {"link": next_link}, True)
        delta_link = data.get("@odata.deltaLink")
        return MessagePage(summaries, {"link": delta_link} if delta_link else cursor, False)

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None

    def _parse_summary(self, folder: str, msg_data: dict) -> MessageSummary:
        def parse_recipients(items) -> List[str]:
            return [
                r.get("emailAddress", {}).get("address", "")
                for r in items or []
                if r.get("emailAddress", {}).get("address")
            ]

        from_obj = (msg_data.get("from") or {}).get("emailAddress", {})
        return MessageSummary(
            provider_message_id=msg_data["id"],
            folder=folder,
            direction=direction_for(folder),
            thread_id=msg_data.get("conversationId") or "",
            subject=msg_data.get("subject") or "",
            sender_email=from_obj.get("address", ""),
            sender_name=from_obj.get("name", ""),
            recipients=parse_recipients(msg_data.get("toRecipients")) + parse_recipients(msg_data.get("ccRecipients")),
            preview_text=_truncate(msg_data.get("bodyPreview"), PREVIEW_LENGTH),
            is_read=bool(msg_data.get("isRead", False)),
            has_attachments=bool(msg_data.get("hasAttachments", False)),
            attachment_count=0,
            importance=(msg_data.get("importance") or "normal").lower(),
            sent_at=self._parse_datetime(msg_data.get("sentDateTime")),
            received_at=self._parse_datetime(msg_data.get("receivedDateTime")),
        )

    def fetch_body(self, provider_message_id: str, folder: Optional[str] = None) -> BodyVariants:
        msg_data = self._get(
            f"{self.BASE_URL}/me/messages/{provider_message_id}",
            params={
                "$select": "id,body,uniqueBody",
                "$expand": "attachments($select=id,name,contentType,size,isInline)",
            },
        )
        body = msg_data.get("body") or {}
        content = body.get("content") or ""
        attachments = [
            {
                "provider_attachment_id": att.get("id") or "",
                "filename": att.get("name") or "attachment",
                "content_type": att.get("contentType") or "application/octet-stream",
                "size_bytes": att.get("size") or 0,
                "is_inline": bool(att.get("isInline", False)),
            }
            for att in msg_data.get("attachments", []) or []
        ]
        if (body.get("contentType") or "").lower() == "html":
            return BodyVariants(html=content, attachments=attachments)
        return BodyVariants(text=content, attachments=attachments)


class ImapAdapter(ProviderAdapter):
    """Protocol mailbox over imaplib. Cursor = (UIDVALIDITY, last UID) per folder."""

    provider = Provider.IMAP
    HEADER_FIELDS = "FROM TO CC SUBJECT DATE MESSAGE-ID IMPORTANCE X-PRIORITY"
    _FETCH_RE = re.compile(rb"UID (\d+)")
    _FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
    _SIZE_RE = re.compile(rb"RFC822\.SIZE (\d+)")
    _DATE_RE = re.compile(rb'INTERNALDATE "([^"]+)"')

    def __init__(self, account: Account, timeout: Optional[int] = None):
        super().__init__(account, timeout)
        self._conn: Optional[imaplib.IMAP4] = None

    def capabilities(self) -> Capabilities:
        return Capabilities(supports_delta=True, supports_push=False)

    def _mailbox(self, folder: str) -> str:
        direction_for(folder)
        settings_ = self.account.connection_settings or {}
        if folder == INBOX:
            return settings_.get("inbox_folder", "INBOX")
        return settings_.get("sent_folder", "Sent")

    def _connect(self) -> imaplib.IMAP4:
        if self._conn is not None:
            return self._conn
        conn_settings = self.account.connection_settings or {}
        host = conn_settings.get("host")
        if not host:
            raise Fatal(f"IMAP host missing for account {self.account}")
        port = int(conn_settings.get("port", 993))
        username = conn_settings.get("username") or self.account.email
        try:
            if conn_settings.get("ssl", True):
                conn = imaplib.IMAP4_SSL(host, port, timeout=self.timeout)
            else:
                conn = imaplib.IMAP4(host, port, timeout=self.timeout)
        except (OSError, imaplib.IMAP4.abort) as e:
            raise Transient(f"IMAP connect to {host}:{port} failed: {e}")
        try:
            conn.login(username, access_token_for(self.account))
        except imaplib.IMAP4.error as e:
            if "AUTHENTICATIONFAILED" in str(e).upper() or "LOGIN" in str(e).upper():
                raise AuthExpired(f"IMAP login rejected: {e}")
            raise Fatal(f"IMAP login error: {e}")
        self._conn = conn
        return conn

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.logout()
            except (OSError, imaplib.IMAP4.error):
                logger.debug("[IMAP] logout failed for account %s", self.account.pk)
            self._conn = None

    def _command(self, fn, *args):
        try:
            typ, data = fn(*args)
        except imaplib.IMAP4.abort as e:
            self._conn = None
            raise Transient(f"IMAP connection aborted: {e}")
        except (socket.timeout, TimeoutError, OSError) as e:
            self._conn = None
            raise Transient(f"IMAP command timed out: {e}")
        except imaplib.IMAP4.error as e:
            raise Fatal(f"IMAP command failed: {e}")
        return typ, data

    def _select(self, mailbox: str) -> int:
        conn = self._connect()
        typ, data = self._command(conn.select, f'"{mailbox}"', True)
        if typ != "OK":
            raise NotFound(f"IMAP folder {mailbox} not found: {data}")
        _, uidvalidity = conn.response("UIDVALIDITY")
        try:
            return int(uidvalidity[0])
        except (TypeError, ValueError, IndexError):
            return 0

    @staticmethod
    def encode_id(mailbox: str, uidvalidity: int, uid: int) -> str:
        return f"{mailbox}/{uidvalidity}/{uid}"

    @staticmethod
    def decode_id(provider_message_id: str) -> Tuple[str, int, int]:
        try:
            mailbox, uidvalidity, uid = provider_message_id.rsplit("/", 2)
            return mailbox, int(uidvalidity), int(uid)
        except ValueError:
            raise NotFound(f"Malformed IMAP message id: {provider_message_id}")

    def list_messages(self, folder: str, cursor: Optional[dict], limit: int) -> MessagePage:
        mailbox = self._mailbox(folder)
        uidvalidity = self._select(mailbox)
        cursor = cursor or {}
        last_uid = int(cursor.get("last_uid", 0))
        if cursor.get("uidvalidity") not in (None, uidvalidity):
            logger.info(
                "[IMAP] UIDVALIDITY changed for account %s folder %s, restarting",
                self.account.pk,
                mailbox,
            )
            last_uid = 0

        conn = self._connect()
        typ, data = self._command(conn.uid, "SEARCH", None, f"UID {last_uid + 1}:*")
        if typ != "OK":
            raise Transient(f"IMAP search failed: {data}")
        # "n:*" always matches the highest UID even when it is below n
        uids = sorted(int(u) for u in (data[0] or b"").split() if int(u) > last_uid)
        batch = uids[:limit]
        if not batch:
            return MessagePage([], {"uidvalidity": uidvalidity, "last_uid": last_uid}, False)

        uid_set = ",".join(str(u) for u in batch)
        typ, data = self._command(
            conn.uid,
            "FETCH",
            uid_set,
            f"(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[HEADER.FIELDS ({self.HEADER_FIELDS})])",
        )
        if typ != "OK":
            raise Transient(f"IMAP fetch failed: {data}")

        summaries = []
        for item in data:
            if not isinstance(item, tuple) or len(item) < 2:
                continue
            summaries.append(self._parse_summary(folder, mailbox, uidvalidity, item[0], item[1]))
        summaries.sort(key=lambda s: self.decode_id(s.provider_message_id)[2])
        return MessagePage(
            summaries,
            {"uidvalidity": uidvalidity, "last_uid": batch[-1]},
            len(uids) > len(batch),
        )

    def _parse_summary(self, folder, mailbox, uidvalidity, meta: bytes, header_bytes: bytes) -> MessageSummary:
        uid_match = self._FETCH_RE.search(meta)
        uid = int(uid_match.group(1)) if uid_match else 0
        flags_match = self._FLAGS_RE.search(meta)
        flags = flags_match.group(1).decode(errors="replace") if flags_match else ""
        date_match = self._DATE_RE.search(meta)
        received_at = None
        if date_match:
            parsed = imaplib.Internaldate2tuple(b'INTERNALDATE "' + date_match.group(1) + b'"')
            if parsed:
                received_at = datetime.fromtimestamp(time.mktime(parsed), tz=utc_tz.utc)

        headers = email.message_from_bytes(header_bytes, policy=email_policy)
        sender_name, sender_email = email.utils.parseaddr(str(headers.get("From", "")))
        priority = str(headers.get("Importance", "") or headers.get("X-Priority", "")).lower()
        importance = "high" if priority.startswith(("high", "1", "2")) else "normal"
        return MessageSummary(
            provider_message_id=self.encode_id(mailbox, uidvalidity, uid),
            folder=folder,
            direction=direction_for(folder),
            thread_id=str(headers.get("Message-ID", "") or "").strip("<> "),
            subject=str(headers.get("Subject", "") or ""),
            sender_email=sender_email,
            sender_name=sender_name,
            recipients=_parse_addresses(str(headers.get("To", "") or ""))
            + _parse_addresses(str(headers.get("Cc", "") or "")),
            preview_text="",
            is_read="\\Seen" in flags,
            importance=importance,
            sent_at=_parse_date(str(headers.get("Date", "") or "")),
            received_at=received_at,
        )

    def fetch_body(self, provider_message_id: str, folder: Optional[str] = None) -> BodyVariants:
        mailbox, uidvalidity, uid = self.decode_id(provider_message_id)
        current = self._select(mailbox)
        if current != uidvalidity:
            raise NotFound(f"IMAP message {provider_message_id} no longer valid (UIDVALIDITY changed)")
        conn = self._connect()
        typ, data = self._command(conn.uid, "FETCH", str(uid), "(BODY.PEEK[])")
        if typ != "OK":
            raise Transient(f"IMAP fetch failed: {data}")
        for item in data:
            if isinstance(item, tuple) and len(item) >= 2:
                return parse_mime(item[1])
        raise NotFound(f"IMAP message {provider_message_id} not found")


ADAPTERS: Dict[str, type] = {
    Provider.GMAIL: GmailAdapter,
    Provider.MICROSOFT: GraphAdapter,
    Provider.IMAP: ImapAdapter,
}


def get_adapter(account: Account, timeout: Optional[int] = None) -> ProviderAdapter:
    try:
        adapter_cls = ADAPTERS[account.provider]
    except KeyError:
        raise Fatal(f"Unsupported provider: {account.provider}")
    return adapter_cls(account, timeout=timeout)
