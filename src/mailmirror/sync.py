"""Synchronization engine: bootstrap and history-driven delta passes.

A pass reads remote state through a MailProvider and writes it into the
MailStore. The cursor in sync_state only moves after a pass fully succeeds,
so an aborted pass is simply replayed next time; every store write is an
idempotent upsert, replace or delete.
"""

import fcntl
import logging
import re
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterator

from .errors import (
    CursorExpiredError,
    NotFoundError,
    StoreError,
    SyncCancelled,
    SyncError,
    SyncInProgressError,
)
from .models import SyncState, utcnow
from .provider import (
    LABELS_ADDED,
    LABELS_REMOVED,
    MESSAGE_ADDED,
    MESSAGE_DELETED,
    HistoryEvent,
    MailProvider,
)
from .storage import MailStore

log = logging.getLogger(__name__)

BOOTSTRAP = "bootstrap"
DELTA = "delta"

DEFAULT_BOOTSTRAP_COUNT = 500
BATCH_SIZE = 100

# Entries disappear once no caller holds the lock object
_account_locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_account_locks_guard = threading.Lock()


def account_lock(account_id: str) -> threading.Lock:
    """Process-wide lock serializing sync passes of one account."""
    with _account_locks_guard:
        lock = _account_locks.get(account_id)
        if lock is None:
            lock = _account_locks[account_id] = threading.Lock()
        return lock


def lock_path(db_path: Path, account_id: str) -> Path:
    """Lock file guarding one account's sync passes, next to the database."""
    safe = re.sub(r"[^\w.@+-]", "_", account_id)
    return db_path.parent / f"sync-{safe}.lock"


@contextmanager
def sync_lease(path: Path, account_id: str) -> Iterator[None]:
    """Hold an exclusive flock on ``path`` for the duration of a pass.

    The lock is tied to the open file, so it is released when the holding
    process exits, even if it crashes.

    Raises:
        SyncInProgressError: Another process (or thread) holds the lock.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as handle:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise SyncInProgressError(
                f"sync already in progress for {account_id} (locked: {path})"
            ) from None
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)


@dataclass
class SyncResult:
    """Counters for one sync pass."""
    mode: str
    fetched: int = 0
    added: int = 0
    deleted: int = 0
    modified: int = 0
    cursor: int = 0


class SyncEngine:
    """Keeps one account's local replica converged with its provider.

    Args:
        store: Local replica to write into
        provider: Remote mailbox, bound to ``account_id``
        account_id: Account whose messages are synced
        batch_size: Page size for bootstrap listing
        bootstrap_count: Messages fetched by a bootstrap without explicit count
        cancel: Optional event; once set, the pass stops before its next
            provider call or store write and raises SyncCancelled
    """

    def __init__(
        self,
        store: MailStore,
        provider: MailProvider,
        account_id: str,
        batch_size: int = BATCH_SIZE,
        bootstrap_count: int = DEFAULT_BOOTSTRAP_COUNT,
        cancel: threading.Event | None = None,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.store = store
        self.provider = provider
        self.account_id = account_id
        self.batch_size = batch_size
        self.bootstrap_count = bootstrap_count
        self.cancel = cancel

    def sync(self, full: bool = False, count: int | None = None) -> SyncResult:
        """Bootstrap if ``full``, otherwise run a delta pass."""
        if full:
            return self.initial_sync(count)
        return self.incremental_sync()

    def initial_sync(self, count: int | None = None) -> SyncResult:
        """Fetch labels and the ``count`` most recent messages, then record a cursor.

        Local messages the listing shows are gone remotely are removed.
        ``count=0`` fetches labels and records a cursor only.
        """
        if count is not None and count < 0:
            raise ValueError(f"count must not be negative, got {count}")
        with self._exclusive():
            return self._run(BOOTSTRAP, self._bootstrap, count)

    def incremental_sync(self) -> SyncResult:
        """Apply history since the stored cursor; bootstrap if there is none."""
        with self._exclusive():
            state = self.store.get_sync_state(self.account_id)
            if not state.has_cursor:
                log.info("%s: no sync cursor, running initial sync", self.account_id)
                return self._run(BOOTSTRAP, self._bootstrap, None)
            try:
                return self._run(DELTA, self._delta, state)
            except CursorExpiredError:
                log.warning("%s: history cursor %d expired, re-running initial sync",
                            self.account_id, state.history_id)
                return self._run(BOOTSTRAP, self._bootstrap, None)

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    def _bootstrap(self, result: SyncResult, count: int | None) -> None:
        if count is None:
            count = self.bootstrap_count

        self._check()
        labels = self.provider.list_labels()
        for label in labels:
            self._check()
            self.store.upsert_label(replace(label, account_id=self.account_id))
        log.info("%s: synced %d labels", self.account_id, len(labels))

        # Captured before listing, so changes made while paging are replayed
        # by the next delta pass
        self._check()
        cursor = self.provider.current_cursor()

        listed: set[str] = set()
        oldest = None
        exhausted = False
        page_token = None
        while result.fetched < count:
            remaining = count - result.fetched
            self._check()
            messages, page_token = self.provider.list_messages(
                page_token=page_token,
                max_results=min(self.batch_size, remaining),
            )
            if not messages:
                exhausted = True
                break
            for msg in messages[:remaining]:
                self._check()
                self.store.upsert_message(msg, self.account_id)
                listed.add(msg.id)
                if msg.date and (oldest is None or msg.date < oldest):
                    oldest = msg.date
                result.fetched += 1
                result.added += 1
            log.info("%s: fetched %d/%d messages", self.account_id, result.fetched, count)
            if not page_token:
                exhausted = len(messages) <= remaining
                break

        # Whatever the listing window covered but did not return is gone remotely.
        # A truncated listing only covers messages newer than the oldest one seen.
        if exhausted or oldest is not None:
            self._check()
            stale = self.store.prune_messages(
                self.account_id, listed, since=None if exhausted else oldest,
            )
            if stale:
                log.info("%s: removed %d messages no longer present remotely", self.account_id, stale)
                result.deleted += stale

        result.cursor = cursor or 0
        self._check()
        self.store.set_sync_state(SyncState(
            account_id=self.account_id,
            history_id=result.cursor,
            last_sync=utcnow(),
        ))

    def _delta(self, result: SyncResult, state: SyncState) -> None:
        self._check()
        events, cursor = self.provider.history(state.history_id)
        log.info("%s: %d history events since %d", self.account_id, len(events), state.history_id)

        for event in events:
            self._apply(event, result)

        result.cursor = cursor or state.history_id
        self._check()
        self.store.set_sync_state(SyncState(
            account_id=self.account_id,
            history_id=result.cursor,
            last_sync=utcnow(),
        ))

    def _apply(self, event: HistoryEvent, result: SyncResult) -> None:
        """Apply one history event to the store."""
        if event.kind == MESSAGE_DELETED:
            self._check()
            if self.store.delete_message(event.message_id):
                result.deleted += 1
            return
        if event.kind not in (MESSAGE_ADDED, LABELS_ADDED, LABELS_REMOVED):
            raise SyncError(f"unknown history event kind {event.kind!r} for {event.message_id}")

        self._check()
        try:
            msg = self.provider.get_message(event.message_id)
        except NotFoundError:
            log.info("%s: message %s no longer exists remotely", self.account_id, event.message_id)
            self._check()
            if self.store.delete_message(event.message_id):
                result.deleted += 1
            return
        result.fetched += 1

        self._check()
        if event.kind == MESSAGE_ADDED:
            self.store.upsert_message(msg, self.account_id)
            result.added += 1
        elif self.store.has_message(msg.id):
            self.store.set_message_labels(
                msg.id, msg.labels, is_read=msg.is_read, is_starred=msg.is_starred,
            )
            result.modified += 1
        else:
            # Label change on a message outside the bootstrap window
            self.store.upsert_message(msg, self.account_id)
            result.added += 1

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _check(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise SyncCancelled(f"sync of {self.account_id} cancelled")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        lock = account_lock(self.account_id)
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(f"sync already in progress for {self.account_id}")
        try:
            if self.store.in_memory:
                yield
            else:
                with sync_lease(lock_path(self.store.path, self.account_id), self.account_id):
                    yield
        finally:
            lock.release()

    def _run(self, mode: str, step, arg) -> SyncResult:
        """Run a pass and journal it in sync_runs."""
        result = SyncResult(mode=mode)
        run_id = self.store.start_sync_run(self.account_id, mode)
        try:
            step(result, arg)
        except SyncCancelled:
            self._end_run(run_id, "cancelled", result)
            raise
        except Exception as e:
            self._end_run(run_id, "failed", result, str(e))
            raise
        self.store.end_sync_run(
            run_id, "completed",
            fetched=result.fetched, added=result.added,
            deleted=result.deleted, modified=result.modified,
        )
        log.info("%s: %s sync done: %d fetched, %d added, %d deleted, %d modified",
                 self.account_id, mode, result.fetched, result.added, result.deleted, result.modified)
        return result

    def _end_run(self, run_id: int, status: str, result: SyncResult, error: str | None = None) -> None:
        """Journal a failed or cancelled pass; the pass's own error wins."""
        try:
            self.store.end_sync_run(
                run_id, status,
                fetched=result.fetched, added=result.added,
                deleted=result.deleted, modified=result.modified,
                error_message=error,
            )
        except StoreError:
            log.exception("failed to record end of sync run %d", run_id)
