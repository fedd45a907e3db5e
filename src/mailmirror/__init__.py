"""mailmirror - local, searchable replica of a remote mailbox."""

from .errors import (
    ConfigError,
    CursorExpiredError,
    MailMirrorError,
    NotFoundError,
    ProviderError,
    StoreError,
    SyncCancelled,
    SyncError,
    SyncInProgressError,
)
from .models import Account, Address, Label, Message, SyncState, Thread, ThreadSummary
from .provider import HistoryEvent, MailProvider
from .storage import MailStore
from .sync import SyncEngine, SyncResult

__version__ = "0.1.0"

__all__ = [
    "Account",
    "Address",
    "ConfigError",
    "CursorExpiredError",
    "HistoryEvent",
    "Label",
    "MailMirrorError",
    "MailProvider",
    "MailStore",
    "Message",
    "NotFoundError",
    "ProviderError",
    "StoreError",
    "SyncCancelled",
    "SyncEngine",
    "SyncError",
    "SyncInProgressError",
    "SyncResult",
    "SyncState",
    "Thread",
    "ThreadSummary",
]
