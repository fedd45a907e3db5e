"""User-initiated mutations: applied remotely first, then mirrored locally."""

import logging

from .errors import NotFoundError
from .models import INBOX, STARRED, UNREAD
from .provider import MailProvider
from .storage import MailStore

log = logging.getLogger(__name__)


class MailActions:
    """Mutations on one account's mailbox.

    The provider call comes first; the store is only touched once the remote
    side accepted the change. A message missing from the store is left for
    the next sync to pick up.
    """

    def __init__(self, store: MailStore, provider: MailProvider, account_id: str):
        self.store = store
        self.provider = provider
        self.account_id = account_id

    def modify_labels(self, message_id: str, add: list[str] = (), remove: list[str] = ()) -> None:
        """Add and remove labels on a message."""
        add, remove = list(add), list(remove)
        self.provider.modify_labels(message_id, add, remove)

        try:
            msg = self.store.get_message(message_id)
        except NotFoundError:
            log.info("message %s not cached; labels will arrive with the next sync", message_id)
            return
        labels = [label for label in msg.labels if label not in remove]
        labels += [label for label in add if label not in labels]
        touched = set(add) | set(remove)
        self.store.set_message_labels(
            message_id,
            labels,
            is_read=UNREAD not in labels if UNREAD in touched else None,
            is_starred=STARRED in labels if STARRED in touched else None,
        )

    def archive(self, message_id: str) -> None:
        """Remove a message from the inbox."""
        self.modify_labels(message_id, remove=[INBOX])

    def star(self, message_id: str, starred: bool = True) -> None:
        if starred:
            self.modify_labels(message_id, add=[STARRED])
        else:
            self.modify_labels(message_id, remove=[STARRED])

    def mark_read(self, message_id: str, read: bool = True) -> None:
        self.provider.set_read_state(message_id, read)
        try:
            self.store.set_message_read(message_id, read)
        except NotFoundError:
            log.info("message %s not cached; read state will arrive with the next sync", message_id)

    def mark_thread_read(self, thread_id: str, read: bool = True) -> int:
        """Mark every cached message of a thread. Returns the number marked."""
        thread = self.store.get_thread(thread_id, self.account_id)
        for msg in thread.messages:
            self.provider.set_read_state(msg.id, read)
        return self.store.set_thread_read(thread_id, self.account_id, read)

    def delete(self, message_id: str) -> None:
        """Trash a message remotely and drop the local copy."""
        self.provider.delete_message(message_id)
        self.store.delete_message(message_id)
