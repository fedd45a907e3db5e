"""Shared fixtures: a temp store and an in-memory provider."""

import copy
from datetime import datetime, timedelta, timezone

import pytest

from mailmirror.errors import CursorExpiredError, NotFoundError
from mailmirror.models import INBOX, STARRED, UNREAD, Account, Address, Label, Message
from mailmirror.provider import (
    LABELS_ADDED,
    LABELS_REMOVED,
    MESSAGE_ADDED,
    MESSAGE_DELETED,
    HistoryEvent,
    MailProvider,
)
from mailmirror.storage import MailStore

ACCOUNT = "me@example.com"
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _make_message(
    id: str,
    thread_id: str = "t1",
    hours: float = 0,
    subject: str = "Hello",
    body: str = "Hello there",
    labels: list[str] | None = None,
    sender: str = "alice@example.com",
    name: str = "Alice",
    is_read: bool = False,
    is_starred: bool = False,
) -> Message:
    return Message(
        id=id,
        thread_id=thread_id,
        from_addr=Address(email=sender, name=name),
        to=[Address(email=ACCOUNT)],
        subject=subject,
        body=body,
        date=T0 + timedelta(hours=hours),
        labels=list(labels if labels is not None else [INBOX]),
        is_read=is_read,
        is_starred=is_starred,
    )


class FakeProvider(MailProvider):
    """Remote mailbox held in memory.

    Tests mutate ``messages`` to change remote state and queue ``events`` for
    the next history call. Every call is recorded in ``calls``.
    """

    def __init__(self, cursor: int = 100):
        self.labels = [
            Label(id=INBOX, name="Inbox", type="system"),
            Label(id=STARRED, name="Starred", type="system"),
            Label(id=UNREAD, name="Unread", type="system"),
            Label(id="Label_1", name="Work", type="user", color="#ff0000"),
        ]
        self.messages: dict[str, Message] = {}
        self.events: list[HistoryEvent] = []
        self.cursor = cursor
        self.expired: set[int] = set()
        self.calls: list[tuple] = []

    def add(self, msg: Message, event: bool = True) -> None:
        """Create a message remotely, optionally queueing its history event."""
        self.messages[msg.id] = msg
        if event:
            self.cursor += 1
            self.events.append(HistoryEvent(MESSAGE_ADDED, msg.id, list(msg.labels)))

    def remove(self, message_id: str, event: bool = True) -> None:
        del self.messages[message_id]
        if event:
            self.cursor += 1
            self.events.append(HistoryEvent(MESSAGE_DELETED, message_id))

    def relabel(self, message_id: str, add=(), remove=(), event: bool = True) -> None:
        msg = self.messages[message_id]
        msg.labels = [label for label in msg.labels if label not in remove]
        msg.labels += [label for label in add if label not in msg.labels]
        msg.is_read = UNREAD not in msg.labels
        msg.is_starred = STARRED in msg.labels
        if event:
            self.cursor += 1
            if add:
                self.events.append(HistoryEvent(LABELS_ADDED, message_id, list(add)))
            if remove:
                self.events.append(HistoryEvent(LABELS_REMOVED, message_id, list(remove)))

    def list_labels(self):
        self.calls.append(("list_labels",))
        return [copy.copy(label) for label in self.labels]

    def list_messages(self, page_token=None, max_results=100, label_ids=None, query=None):
        self.calls.append(("list_messages", page_token, max_results))
        ordered = sorted(self.messages.values(), key=lambda m: (m.date, m.id), reverse=True)
        if label_ids:
            ordered = [m for m in ordered if set(label_ids) <= set(m.labels)]
        start = int(page_token or 0)
        page = ordered[start:start + max_results]
        end = start + len(page)
        next_token = str(end) if end < len(ordered) else None
        return [copy.deepcopy(m) for m in page], next_token

    def get_message(self, message_id):
        self.calls.append(("get_message", message_id))
        if message_id not in self.messages:
            raise NotFoundError(f"message {message_id} not found")
        return copy.deepcopy(self.messages[message_id])

    def history(self, since):
        self.calls.append(("history", since))
        if since in self.expired:
            raise CursorExpiredError(f"history cursor {since} expired")
        events, self.events = self.events, []
        return events, self.cursor

    def current_cursor(self):
        self.calls.append(("current_cursor",))
        return self.cursor

    def modify_labels(self, message_id, add, remove):
        self.calls.append(("modify_labels", message_id, list(add), list(remove)))
        if message_id not in self.messages:
            raise NotFoundError(f"message {message_id} not found")
        self.relabel(message_id, add, remove, event=False)

    def delete_message(self, message_id):
        self.calls.append(("delete_message", message_id))
        if message_id not in self.messages:
            raise NotFoundError(f"message {message_id} not found")
        del self.messages[message_id]

    def set_read_state(self, message_id, read):
        self.calls.append(("set_read_state", message_id, read))
        if read:
            self.modify_labels(message_id, [], [UNREAD])
        else:
            self.modify_labels(message_id, [UNREAD], [])

    def call_names(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def make_message():
    return _make_message


@pytest.fixture
def store(tmp_path):
    """Connected store with one account."""
    with MailStore(tmp_path / "mail.db") as s:
        s.add_account(Account(id=ACCOUNT, email=ACCOUNT))
        yield s


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def account_id():
    return ACCOUNT
