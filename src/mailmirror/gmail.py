"""Gmail implementation of the mail provider contract."""

import base64
import binascii
import logging
from email.utils import getaddresses, parsedate_to_datetime
from pathlib import Path
from typing import Any

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import CursorExpiredError, NotFoundError, ProviderError
from .models import LABEL_SYSTEM, LABEL_USER, STARRED, UNREAD, Address, Label, Message
from .provider import (
    LABELS_ADDED,
    LABELS_REMOVED,
    MESSAGE_ADDED,
    MESSAGE_DELETED,
    HistoryEvent,
    MailProvider,
)

log = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]

USER_ID = "me"


# =============================================================================
# Payload mapping
# =============================================================================


def find_header(headers: list[dict], name: str) -> str:
    """Case-insensitive header lookup; first match wins."""
    name = name.lower()
    for h in headers or []:
        if h.get("name", "").lower() == name:
            return h.get("value", "")
    return ""


def parse_addresses(value: str) -> list[Address]:
    """Parse a To/Cc/From header into addresses, skipping empty entries."""
    if not value or not value.strip():
        return []
    return [Address(email=addr, name=name) for name, addr in getaddresses([value]) if addr]


def parse_address(value: str) -> Address:
    addrs = parse_addresses(value)
    if addrs:
        return addrs[0]
    return Address(email=(value or "").strip())


def parse_header_date(value: str):
    """Parse an RFC 2822 Date header; None if missing or malformed."""
    if not value or not value.strip():
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def decode_body(data: str | None) -> str:
    """Decode Gmail's URL-safe base64 (padding optional)."""
    if not data:
        return ""
    try:
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def extract_bodies(part: dict | None) -> tuple[str, str]:
    """First text/plain and first text/html leaf, depth-first."""
    if not part:
        return "", ""
    subparts = part.get("parts") or []
    if subparts:
        text = html = ""
        for sub in subparts:
            t, h = extract_bodies(sub)
            text = text or t
            html = html or h
        return text, html

    data = decode_body((part.get("body") or {}).get("data"))
    mime = part.get("mimeType", "")
    if mime == "text/plain":
        return data, ""
    if mime == "text/html":
        return "", data
    return "", ""


def map_message(payload: dict) -> Message:
    """Convert a Gmail API message resource (format=full) to a Message."""
    part = payload.get("payload") or {}
    headers = part.get("headers") or []
    labels = list(payload.get("labelIds") or [])
    text, html = extract_bodies(part)
    return Message(
        id=payload["id"],
        thread_id=payload.get("threadId") or payload["id"],
        from_addr=parse_address(find_header(headers, "From")),
        to=parse_addresses(find_header(headers, "To")),
        cc=parse_addresses(find_header(headers, "Cc")),
        subject=find_header(headers, "Subject"),
        body=text,
        body_html=html,
        date=parse_header_date(find_header(headers, "Date")),
        labels=labels,
        is_read=UNREAD not in labels,
        is_starred=STARRED in labels,
        in_reply_to=find_header(headers, "In-Reply-To"),
    )


def map_label(payload: dict) -> Label:
    color = (payload.get("color") or {}).get("backgroundColor")
    return Label(
        id=payload["id"],
        name=payload.get("name") or payload["id"],
        type=LABEL_SYSTEM if payload.get("type") == "system" else LABEL_USER,
        color=color,
    )


def map_history(records: list[dict]) -> list[HistoryEvent]:
    """Flatten history records into events, preserving record order."""
    events = []
    for record in records:
        for item in record.get("messagesAdded", []):
            msg = item["message"]
            events.append(HistoryEvent(MESSAGE_ADDED, msg["id"], list(msg.get("labelIds") or [])))
        for item in record.get("messagesDeleted", []):
            events.append(HistoryEvent(MESSAGE_DELETED, item["message"]["id"]))
        for item in record.get("labelsAdded", []):
            events.append(HistoryEvent(LABELS_ADDED, item["message"]["id"], list(item.get("labelIds") or [])))
        for item in record.get("labelsRemoved", []):
            events.append(HistoryEvent(LABELS_REMOVED, item["message"]["id"], list(item.get("labelIds") or [])))
    return events


def _status(e: HttpError) -> int:
    return getattr(e.resp, "status", 0)


# =============================================================================
# Provider
# =============================================================================


class GmailProvider(MailProvider):
    """Gmail REST API (v1) provider over a googleapiclient service."""

    def __init__(self, service: Any):
        self.service = service

    @classmethod
    def from_token_file(cls, path: str | Path) -> "GmailProvider":
        """Build a provider from an authorized-user token file.

        Expired credentials are refreshed and written back to the file.
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise ProviderError(f"token file not found: {path}")
        try:
            creds = Credentials.from_authorized_user_file(str(path), SCOPES)
            if creds.expired and creds.refresh_token:
                log.info("refreshing expired Gmail token %s", path)
                creds.refresh(Request())
                path.write_text(creds.to_json())
        except (GoogleAuthError, ValueError) as e:
            raise ProviderError(f"failed to load Gmail credentials from {path}: {e}") from e
        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return cls(service)

    @property
    def _users(self):
        return self.service.users()

    def _call(self, request, action: str, message_id: str | None = None):
        """Execute a request, mapping HttpError onto the error hierarchy."""
        try:
            return request.execute()
        except HttpError as e:
            if message_id and _status(e) == 404:
                raise NotFoundError(f"message {message_id} not found") from e
            raise ProviderError(f"failed to {action}: {e}") from e

    def list_labels(self) -> list[Label]:
        resp = self._call(self._users.labels().list(userId=USER_ID), "list labels")
        return [map_label(item) for item in resp.get("labels", [])]

    def list_messages(
        self,
        page_token: str | None = None,
        max_results: int = 100,
        label_ids: list[str] | None = None,
        query: str | None = None,
    ) -> tuple[list[Message], str | None]:
        params: dict[str, Any] = {"userId": USER_ID, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        if label_ids:
            params["labelIds"] = label_ids
        if query:
            params["q"] = query
        resp = self._call(self._users.messages().list(**params), "list messages")
        messages = [self.get_message(ref["id"]) for ref in resp.get("messages", [])]
        return messages, resp.get("nextPageToken") or None

    def get_message(self, message_id: str) -> Message:
        resp = self._call(
            self._users.messages().get(userId=USER_ID, id=message_id, format="full"),
            f"get message {message_id}",
            message_id=message_id,
        )
        return map_message(resp)

    def history(self, since: int) -> tuple[list[HistoryEvent], int | None]:
        records: list[dict] = []
        cursor = None
        page_token = None
        while True:
            params: dict[str, Any] = {"userId": USER_ID, "startHistoryId": since}
            if page_token:
                params["pageToken"] = page_token
            try:
                resp = self._users.history().list(**params).execute()
            except HttpError as e:
                if _status(e) == 404:
                    raise CursorExpiredError(f"history cursor {since} expired") from e
                raise ProviderError(f"failed to list history since {since}: {e}") from e
            records.extend(resp.get("history", []))
            if resp.get("historyId"):
                cursor = int(resp["historyId"])
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        events = map_history(records)
        log.debug("history since %s: %d records, %d events", since, len(records), len(events))
        return events, cursor

    def current_cursor(self) -> int | None:
        resp = self._call(self._users.getProfile(userId=USER_ID), "get profile")
        history_id = resp.get("historyId")
        return int(history_id) if history_id else None

    def email_address(self) -> str:
        """The authenticated mailbox's address."""
        resp = self._call(self._users.getProfile(userId=USER_ID), "get profile")
        return resp.get("emailAddress", "")

    def modify_labels(self, message_id: str, add: list[str], remove: list[str]) -> None:
        body = {"addLabelIds": list(add), "removeLabelIds": list(remove)}
        self._call(
            self._users.messages().modify(userId=USER_ID, id=message_id, body=body),
            f"modify labels on {message_id}",
            message_id=message_id,
        )

    def delete_message(self, message_id: str) -> None:
        self._call(
            self._users.messages().trash(userId=USER_ID, id=message_id),
            f"trash message {message_id}",
            message_id=message_id,
        )

    def set_read_state(self, message_id: str, read: bool) -> None:
        if read:
            self.modify_labels(message_id, [], [UNREAD])
        else:
            self.modify_labels(message_id, [UNREAD], [])
