"""Contract between the sync engine and a remote mailbox."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from .models import Label, Message

# History event kinds
MESSAGE_ADDED = "message_added"
MESSAGE_DELETED = "message_deleted"
LABELS_ADDED = "labels_added"
LABELS_REMOVED = "labels_removed"

EVENT_KINDS = (MESSAGE_ADDED, MESSAGE_DELETED, LABELS_ADDED, LABELS_REMOVED)


@dataclass
class HistoryEvent:
    """One change from the provider's history feed.

    label_ids holds the labels added or removed, for label events only.
    """
    kind: str
    message_id: str
    label_ids: list[str] = field(default_factory=list)


class MailProvider(ABC):
    """A remote mailbox, bound to one account.

    Remote failures are raised as ProviderError; a message that no longer
    exists raises NotFoundError.
    """

    @abstractmethod
    def list_labels(self) -> list[Label]:
        """All labels of the mailbox."""

    @abstractmethod
    def list_messages(
        self,
        page_token: str | None = None,
        max_results: int = 100,
        label_ids: list[str] | None = None,
        query: str | None = None,
    ) -> tuple[list[Message], str | None]:
        """One page of messages, newest first, and the next page token (None at the end)."""

    @abstractmethod
    def get_message(self, message_id: str) -> Message:
        """Fetch a full message with its current labels."""

    @abstractmethod
    def history(self, since: int) -> tuple[list[HistoryEvent], int | None]:
        """Changes after cursor ``since``, in delivery order, and the new cursor.

        Raises:
            CursorExpiredError: ``since`` is older than the provider retains.
        """

    @abstractmethod
    def current_cursor(self) -> int | None:
        """The latest history cursor, or None if the provider has none."""

    @abstractmethod
    def modify_labels(self, message_id: str, add: list[str], remove: list[str]) -> None:
        """Add and remove labels on a message."""

    @abstractmethod
    def delete_message(self, message_id: str) -> None:
        """Delete a message (Gmail: move it to trash)."""

    @abstractmethod
    def set_read_state(self, message_id: str, read: bool) -> None:
        """Mark a message read or unread."""
