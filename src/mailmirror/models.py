"""Domain types for the local mailbox replica."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

# System label ids (Gmail naming)
INBOX = "INBOX"
STARRED = "STARRED"
SENT = "SENT"
DRAFT = "DRAFT"
TRASH = "TRASH"
SPAM = "SPAM"
UNREAD = "UNREAD"

LABEL_SYSTEM = "system"
LABEL_USER = "user"

SNIPPET_LENGTH = 100

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_snippet(body: str | None) -> str:
    """First SNIPPET_LENGTH characters of a message body."""
    return (body or "")[:SNIPPET_LENGTH]


def format_date(dt: datetime | None) -> str:
    """Serialize as fixed-width UTC ISO-8601, so string order is time order.

    Naive datetimes are taken to be UTC; a missing date becomes the epoch.
    """
    dt = dt or EPOCH
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_date(value: str | None) -> datetime | None:
    """Parse a stored ISO-8601 string back into an aware datetime."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Address:
    """A mailbox address with optional display name."""
    email: str = ""
    name: str = ""

    def __str__(self) -> str:
        if not self.name:
            return self.email
        return f"{self.name} <{self.email}>"

    def to_dict(self) -> dict:
        return {"name": self.name, "email": self.email}

    @classmethod
    def from_dict(cls, data: dict) -> "Address":
        return cls(email=data.get("email") or "", name=data.get("name") or "")


@dataclass
class Account:
    """A mailbox identity that messages, labels and sync state are scoped under."""
    id: str
    email: str
    provider: str = "gmail"
    display_name: str = ""
    created_at: datetime | None = None


@dataclass
class Message:
    """A single email as mirrored from the provider."""
    id: str
    thread_id: str
    from_addr: Address = field(default_factory=Address)
    to: list[Address] = field(default_factory=list)
    cc: list[Address] = field(default_factory=list)
    subject: str = ""
    body: str = ""
    body_html: str = ""
    date: datetime | None = None
    labels: list[str] = field(default_factory=list)
    is_read: bool = False
    is_starred: bool = False
    in_reply_to: str = ""
    account_id: str | None = None  # set when loaded from the store

    def has_label(self, label_id: str) -> bool:
        return label_id in self.labels


@dataclass
class Label:
    """A system or user-defined label, scoped to an account."""
    id: str
    name: str
    type: str = LABEL_USER  # "system" or "user"
    color: str | None = None
    account_id: str | None = None


@dataclass
class Thread:
    """A conversation assembled from the messages sharing a thread id."""
    id: str
    subject: str
    from_addr: Address
    messages: list[Message]
    snippet: str
    last_date: datetime | None
    labels: list[str] = field(default_factory=list)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def is_unread(self) -> bool:
        return any(not m.is_read for m in self.messages)


@dataclass
class ThreadSummary:
    """One row of a thread listing; aggregates without loading every message."""
    id: str
    subject: str
    from_addr: Address
    last_date: datetime | None
    snippet: str
    message_count: int
    has_unread: bool


@dataclass
class SyncState:
    """Per-account history cursor. A cursor of 0 means "never bootstrapped"."""
    account_id: str
    history_id: int = 0
    last_sync: datetime | None = None

    @property
    def has_cursor(self) -> bool:
        return bool(self.history_id)


@dataclass
class SyncRun:
    """Journal record of one sync pass."""
    id: int
    account_id: str
    mode: str  # 'bootstrap' or 'delta'
    started_at: datetime
    ended_at: datetime | None
    status: str  # 'running', 'completed', 'failed', 'cancelled'
    fetched: int = 0
    added: int = 0
    deleted: int = 0
    modified: int = 0
    error_message: str | None = None
