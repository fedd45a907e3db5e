"""Local mailbox replica stored in SQLite."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .errors import NotFoundError, StoreError
from .models import (
    UNREAD,
    Account,
    Address,
    Label,
    Message,
    SyncRun,
    SyncState,
    format_date,
    parse_date,
    utcnow,
)
from .views import ThreadViews, paginate

log = logging.getLogger(__name__)

MAIL_DB = "mail.db"

# Max ids bound into a single IN (...) lookup
IN_CHUNK = 500

SCHEMA = """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        provider TEXT NOT NULL DEFAULT 'gmail',
        display_name TEXT,
        created_at TEXT
    );

    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        thread_id TEXT NOT NULL,
        from_addr TEXT NOT NULL DEFAULT '',
        from_name TEXT NOT NULL DEFAULT '',
        to_addrs TEXT,  -- JSON list of {name, email}
        cc_addrs TEXT,  -- JSON list of {name, email}
        subject TEXT NOT NULL DEFAULT '',
        body_text TEXT NOT NULL DEFAULT '',
        body_html TEXT,
        date TEXT NOT NULL,  -- UTC ISO-8601, fixed width
        is_read INTEGER NOT NULL DEFAULT 0,
        is_starred INTEGER NOT NULL DEFAULT 0,
        in_reply_to TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_messages_account_date ON messages(account_id, date DESC);
    CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(account_id, thread_id);

    CREATE TABLE IF NOT EXISTS message_labels (
        message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
        label_id TEXT NOT NULL,
        PRIMARY KEY (message_id, label_id)
    );

    CREATE INDEX IF NOT EXISTS idx_message_labels_label ON message_labels(label_id);

    -- System label ids (INBOX, SENT, ...) repeat across accounts
    CREATE TABLE IF NOT EXISTS labels (
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        id TEXT NOT NULL,
        name TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'user',
        color TEXT,
        PRIMARY KEY (account_id, id)
    );

    CREATE TABLE IF NOT EXISTS sync_state (
        account_id TEXT PRIMARY KEY REFERENCES accounts(id) ON DELETE CASCADE,
        history_id INTEGER NOT NULL DEFAULT 0,
        last_sync TEXT
    );

    CREATE TABLE IF NOT EXISTS sync_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        mode TEXT NOT NULL,  -- 'bootstrap' or 'delta'
        started_at TEXT NOT NULL,
        ended_at TEXT,
        status TEXT NOT NULL DEFAULT 'running',  -- 'running', 'completed', 'failed', 'cancelled'
        fetched INTEGER DEFAULT 0,
        added INTEGER DEFAULT 0,
        deleted INTEGER DEFAULT 0,
        modified INTEGER DEFAULT 0,
        error_message TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_sync_runs_started ON sync_runs(started_at DESC);
"""

# Regular (not external content) FTS5 table keyed by messages.rowid. The
# triggers keep it in the same transaction as every message write, including
# deletes cascaded from accounts.
FTS_SCHEMA = """
    CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
        subject,
        body_text,
        from_addr,
        from_name
    );

    CREATE TRIGGER IF NOT EXISTS messages_fts_insert AFTER INSERT ON messages BEGIN
        INSERT INTO messages_fts(rowid, subject, body_text, from_addr, from_name)
        VALUES (new.rowid, new.subject, new.body_text, new.from_addr, new.from_name);
    END;

    CREATE TRIGGER IF NOT EXISTS messages_fts_delete AFTER DELETE ON messages BEGIN
        DELETE FROM messages_fts WHERE rowid = old.rowid;
    END;

    CREATE TRIGGER IF NOT EXISTS messages_fts_update
    AFTER UPDATE OF subject, body_text, from_addr, from_name ON messages BEGIN
        DELETE FROM messages_fts WHERE rowid = old.rowid;
        INSERT INTO messages_fts(rowid, subject, body_text, from_addr, from_name)
        VALUES (new.rowid, new.subject, new.body_text, new.from_addr, new.from_name);
    END;
"""

UPSERT_MESSAGE = """
    INSERT INTO messages
        (id, account_id, thread_id, from_addr, from_name, to_addrs, cc_addrs,
         subject, body_text, body_html, date, is_read, is_starred, in_reply_to)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        account_id = excluded.account_id,
        thread_id = excluded.thread_id,
        from_addr = excluded.from_addr,
        from_name = excluded.from_name,
        to_addrs = excluded.to_addrs,
        cc_addrs = excluded.cc_addrs,
        subject = excluded.subject,
        body_text = excluded.body_text,
        body_html = excluded.body_html,
        date = excluded.date,
        is_read = excluded.is_read,
        is_starred = excluded.is_starred,
        in_reply_to = excluded.in_reply_to
"""


def _dump_addresses(addrs: list[Address]) -> str:
    return json.dumps([a.to_dict() for a in addrs])


def _load_addresses(value: str | None) -> list[Address]:
    if not value:
        return []
    return [Address.from_dict(d) for d in json.loads(value)]


class BaseStorage:
    """SQLite connection with schema setup and transaction helpers.

    One connection is shared by all callers and guarded by a re-entrant lock,
    so a store can be handed to several threads (e.g. one sync per account).
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def in_memory(self) -> bool:
        return str(self.path) == ":memory:"

    def connect(self) -> None:
        """Open database connection and create schema if needed.

        Raises:
            StoreError: The database cannot be opened or initialized.
        """
        try:
            if not self.in_memory:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: transactions are opened explicitly by transaction()
            self._conn = sqlite3.connect(
                self.path,
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            if not self.in_memory:
                self._conn.execute("PRAGMA journal_mode=WAL")  # readers don't block the syncing writer
            self._create_schema()
        except (sqlite3.Error, OSError) as e:
            self.disconnect()
            raise StoreError(f"failed to open database {self.path}: {e}") from e
        log.debug("opened %s", self.path)

    def disconnect(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._conn:
            raise RuntimeError("Not connected")
        return self._conn

    def _create_schema(self) -> None:
        """Create database schema. Override in subclasses."""
        raise NotImplementedError

    def __enter__(self):
        if not self._conn:
            self.connect()
        return self

    def __exit__(self, *args):
        self.disconnect()

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; roll back on any exception.

        Nested blocks join the enclosing transaction. ``immediate=False`` opens
        a deferred (read) transaction, which gives multi-statement reads a
        consistent snapshot.
        """
        with self._lock:
            conn = self.conn
            if conn.in_transaction:
                yield conn
                return
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _errors(self, action: str) -> Iterator[None]:
        """Wrap sqlite3 errors as StoreError, naming the failed action."""
        try:
            yield
        except sqlite3.Error as e:
            raise StoreError(f"failed to {action}: {e}") from e

    @contextmanager
    def _writing(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._errors(action), self.transaction() as conn:
            yield conn

    @contextmanager
    def _reading(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._errors(action), self.transaction(immediate=False) as conn:
            yield conn

    def _fetchall(self, action: str, query: str, params=()) -> list[sqlite3.Row]:
        with self._errors(action), self._lock:
            return self.conn.execute(query, params).fetchall()

    def _fetchone(self, action: str, query: str, params=()) -> sqlite3.Row | None:
        with self._errors(action), self._lock:
            return self.conn.execute(query, params).fetchone()

    def _execute(self, action: str, query: str, params=()) -> sqlite3.Cursor:
        """Run a single write statement (atomic on its own in autocommit mode)."""
        with self._errors(action), self._lock:
            return self.conn.execute(query, params)


class MailStore(ThreadViews, BaseStorage):
    """SQLite replica of one or more remote mailboxes.

    Holds accounts, messages, labels, message/label assignments, sync cursors,
    a sync-run journal and an FTS5 shadow index of message text.
    """

    def _create_schema(self) -> None:
        self.conn.executescript(SCHEMA)
        self.conn.executescript(FTS_SCHEMA)

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def add_account(self, account: Account) -> None:
        """Add or update an account."""
        self._execute(
            f"save account {account.id}",
            """INSERT INTO accounts (id, email, provider, display_name, created_at)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   email = excluded.email,
                   provider = excluded.provider,
                   display_name = excluded.display_name""",
            (
                account.id,
                account.email,
                account.provider,
                account.display_name,
                format_date(account.created_at or utcnow()),
            ),
        )

    def get_account(self, account_id: str) -> Account:
        """Get an account by id. Raises NotFoundError if absent."""
        row = self._fetchone(
            f"get account {account_id}",
            "SELECT * FROM accounts WHERE id = ?",
            (account_id,),
        )
        if not row:
            raise NotFoundError(f"account {account_id} not found")
        return self._row_to_account(row)

    def list_accounts(self) -> list[Account]:
        """List all accounts, oldest first."""
        rows = self._fetchall(
            "list accounts",
            "SELECT * FROM accounts ORDER BY created_at, id",
        )
        return [self._row_to_account(row) for row in rows]

    def remove_account(self, account_id: str) -> bool:
        """Remove an account and everything it owns. Returns True if it existed."""
        cur = self._execute(
            f"remove account {account_id}",
            "DELETE FROM accounts WHERE id = ?",
            (account_id,),
        )
        return cur.rowcount > 0

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def upsert_message(self, msg: Message, account_id: str) -> None:
        """Insert or overwrite a message and replace its label set atomically."""
        params = (
            msg.id,
            account_id,
            msg.thread_id,
            msg.from_addr.email,
            msg.from_addr.name,
            _dump_addresses(msg.to),
            _dump_addresses(msg.cc),
            msg.subject or "",
            msg.body or "",
            msg.body_html or None,
            format_date(msg.date),
            int(msg.is_read),
            int(msg.is_starred),
            msg.in_reply_to or None,
        )
        with self._writing(f"upsert message {msg.id}") as conn:
            conn.execute(UPSERT_MESSAGE, params)
            self._replace_labels(conn, msg.id, msg.labels)

    def has_message(self, message_id: str) -> bool:
        """Check if a message exists by id."""
        row = self._fetchone(
            f"look up message {message_id}",
            "SELECT 1 FROM messages WHERE id = ?",
            (message_id,),
        )
        return row is not None

    def get_message(self, message_id: str) -> Message:
        """Get a message with its labels. Raises NotFoundError if absent."""
        with self._reading(f"get message {message_id}") as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
            if not row:
                raise NotFoundError(f"message {message_id} not found")
            return self._load_messages(conn, [row])[0]

    def list_messages(
        self,
        account_id: str,
        label_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Message]:
        """List an account's messages, newest first, optionally by label."""
        if label_id:
            query = """SELECT m.* FROM messages m
                       JOIN message_labels ml ON ml.message_id = m.id
                       WHERE m.account_id = ? AND ml.label_id = ?"""
            params: list = [account_id, label_id]
        else:
            query = "SELECT m.* FROM messages m WHERE m.account_id = ?"
            params = [account_id]
        query += " ORDER BY m.date DESC, m.id"
        query, params = paginate(query, params, limit, offset)

        with self._reading(f"list messages for {account_id}") as conn:
            rows = conn.execute(query, params).fetchall()
            return self._load_messages(conn, rows)

    def count_messages(self, account_id: str, label_id: str | None = None) -> int:
        """Count an account's messages, optionally filtered by label."""
        if label_id:
            row = self._fetchone(
                "count messages",
                """SELECT COUNT(*) FROM messages m
                   JOIN message_labels ml ON ml.message_id = m.id
                   WHERE m.account_id = ? AND ml.label_id = ?""",
                (account_id, label_id),
            )
        else:
            row = self._fetchone(
                "count messages",
                "SELECT COUNT(*) FROM messages WHERE account_id = ?",
                (account_id,),
            )
        return row[0]

    def delete_message(self, message_id: str) -> bool:
        """Delete a message, its label assignments and its search entry.

        Returns True if it existed; deleting an absent id is a no-op.
        """
        cur = self._execute(
            f"delete message {message_id}",
            "DELETE FROM messages WHERE id = ?",
            (message_id,),
        )
        return cur.rowcount > 0

    def prune_messages(
        self,
        account_id: str,
        keep_ids: set[str],
        since: datetime | None = None,
    ) -> int:
        """Delete an account's messages not in ``keep_ids``; returns how many.

        With ``since``, only messages dated strictly after it are candidates,
        so older mail outside a partial listing is left alone.
        """
        query = "SELECT id FROM messages WHERE account_id = ?"
        params: list = [account_id]
        if since is not None:
            query += " AND date > ?"
            params.append(format_date(since))

        with self._writing(f"prune messages of {account_id}") as conn:
            stale = [row["id"] for row in conn.execute(query, params) if row["id"] not in keep_ids]
            for i in range(0, len(stale), IN_CHUNK):
                chunk = stale[i:i + IN_CHUNK]
                marks = ", ".join("?" * len(chunk))
                conn.execute(f"DELETE FROM messages WHERE id IN ({marks})", chunk)
            return len(stale)

    def set_message_labels(
        self,
        message_id: str,
        label_ids: list[str],
        is_read: bool | None = None,
        is_starred: bool | None = None,
    ) -> None:
        """Replace a message's label set (not a merge).

        The read/starred flags, when given, are written in the same transaction.

        Raises:
            NotFoundError: The message is not in the store.
        """
        with self._writing(f"set labels on {message_id}") as conn:
            if not conn.execute("SELECT 1 FROM messages WHERE id = ?", (message_id,)).fetchone():
                raise NotFoundError(f"message {message_id} not found")
            self._replace_labels(conn, message_id, label_ids)
            if is_read is not None:
                conn.execute("UPDATE messages SET is_read = ? WHERE id = ?", (int(is_read), message_id))
            if is_starred is not None:
                conn.execute("UPDATE messages SET is_starred = ? WHERE id = ?", (int(is_starred), message_id))

    def set_message_read(self, message_id: str, read: bool) -> None:
        """Set the read flag, keeping the UNREAD label consistent."""
        with self._writing(f"set read={read} on {message_id}") as conn:
            cur = conn.execute("UPDATE messages SET is_read = ? WHERE id = ?", (int(read), message_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"message {message_id} not found")
            if read:
                conn.execute(
                    "DELETE FROM message_labels WHERE message_id = ? AND label_id = ?",
                    (message_id, UNREAD),
                )
            else:
                conn.execute(
                    "INSERT OR IGNORE INTO message_labels (message_id, label_id) VALUES (?, ?)",
                    (message_id, UNREAD),
                )

    def set_thread_read(self, thread_id: str, account_id: str, read: bool) -> int:
        """Set the read flag on every message of a thread. Returns rows changed."""
        scope = "SELECT id FROM messages WHERE thread_id = ? AND account_id = ?"
        with self._writing(f"set read={read} on thread {thread_id}") as conn:
            cur = conn.execute(
                "UPDATE messages SET is_read = ? WHERE thread_id = ? AND account_id = ?",
                (int(read), thread_id, account_id),
            )
            if read:
                conn.execute(
                    f"DELETE FROM message_labels WHERE label_id = ? AND message_id IN ({scope})",
                    (UNREAD, thread_id, account_id),
                )
            else:
                conn.execute(
                    f"INSERT OR IGNORE INTO message_labels (message_id, label_id) SELECT id, ? FROM ({scope})",
                    (UNREAD, thread_id, account_id),
                )
            return cur.rowcount

    def _replace_labels(self, conn: sqlite3.Connection, message_id: str, label_ids: list[str]) -> None:
        """Delete-then-insert a label set. Caller holds the transaction."""
        conn.execute("DELETE FROM message_labels WHERE message_id = ?", (message_id,))
        conn.executemany(
            "INSERT INTO message_labels (message_id, label_id) VALUES (?, ?)",
            [(message_id, label_id) for label_id in dict.fromkeys(label_ids)],
        )

    def _labels_for(self, conn: sqlite3.Connection, message_ids: list[str]) -> dict[str, list[str]]:
        """Map message id -> sorted label ids."""
        labels: dict[str, list[str]] = {mid: [] for mid in message_ids}
        for i in range(0, len(message_ids), IN_CHUNK):
            chunk = message_ids[i:i + IN_CHUNK]
            marks = ", ".join("?" * len(chunk))
            cur = conn.execute(
                f"""SELECT message_id, label_id FROM message_labels
                    WHERE message_id IN ({marks})
                    ORDER BY label_id""",
                chunk,
            )
            for row in cur:
                labels[row["message_id"]].append(row["label_id"])
        return labels

    def _load_messages(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Message]:
        """Convert message rows, attaching label sets. Caller holds the snapshot."""
        labels = self._labels_for(conn, [row["id"] for row in rows])
        return [self._row_to_message(row, labels[row["id"]]) for row in rows]

    def _row_to_message(self, row: sqlite3.Row, labels: list[str]) -> Message:
        """Convert a database row to Message."""
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            from_addr=Address(email=row["from_addr"] or "", name=row["from_name"] or ""),
            to=_load_addresses(row["to_addrs"]),
            cc=_load_addresses(row["cc_addrs"]),
            subject=row["subject"] or "",
            body=row["body_text"] or "",
            body_html=row["body_html"] or "",
            date=parse_date(row["date"]),
            labels=labels,
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            in_reply_to=row["in_reply_to"] or "",
            account_id=row["account_id"],
        )

    def _row_to_account(self, row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            provider=row["provider"],
            display_name=row["display_name"] or "",
            created_at=parse_date(row["created_at"]),
        )

    # -------------------------------------------------------------------------
    # Labels
    # -------------------------------------------------------------------------

    def upsert_label(self, label: Label) -> None:
        """Insert or update a label; identity is (account_id, id)."""
        if not label.account_id:
            raise ValueError(f"label {label.id} has no account_id")
        self._execute(
            f"upsert label {label.id}",
            """INSERT INTO labels (account_id, id, name, type, color)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(account_id, id) DO UPDATE SET
                   name = excluded.name,
                   type = excluded.type,
                   color = excluded.color""",
            (label.account_id, label.id, label.name, label.type, label.color),
        )

    def list_labels(self, account_id: str) -> list[Label]:
        """List an account's labels ordered by name."""
        rows = self._fetchall(
            f"list labels for {account_id}",
            "SELECT * FROM labels WHERE account_id = ? ORDER BY name, id",
            (account_id,),
        )
        return [
            Label(
                id=row["id"],
                name=row["name"],
                type=row["type"],
                color=row["color"],
                account_id=row["account_id"],
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Sync state
    # -------------------------------------------------------------------------

    def get_sync_state(self, account_id: str) -> SyncState:
        """Get sync state; a zero-valued state if the account never synced."""
        row = self._fetchone(
            f"get sync state for {account_id}",
            "SELECT history_id, last_sync FROM sync_state WHERE account_id = ?",
            (account_id,),
        )
        if not row:
            return SyncState(account_id=account_id)
        return SyncState(
            account_id=account_id,
            history_id=row["history_id"] or 0,
            last_sync=parse_date(row["last_sync"]),
        )

    def set_sync_state(self, state: SyncState) -> None:
        """Insert or update an account's sync state."""
        last_sync = format_date(state.last_sync) if state.last_sync else None
        self._execute(
            f"set sync state for {state.account_id}",
            """INSERT INTO sync_state (account_id, history_id, last_sync)
               VALUES (?, ?, ?)
               ON CONFLICT(account_id) DO UPDATE SET
                   history_id = excluded.history_id,
                   last_sync = excluded.last_sync""",
            (state.account_id, state.history_id, last_sync),
        )

    # -------------------------------------------------------------------------
    # Sync runs
    # -------------------------------------------------------------------------

    def start_sync_run(self, account_id: str, mode: str) -> int:
        """Record the start of a sync pass. Returns the run id."""
        cur = self._execute(
            f"start sync run for {account_id}",
            "INSERT INTO sync_runs (account_id, mode, started_at) VALUES (?, ?, ?)",
            (account_id, mode, format_date(utcnow())),
        )
        return cur.lastrowid

    def end_sync_run(
        self,
        run_id: int,
        status: str,
        fetched: int = 0,
        added: int = 0,
        deleted: int = 0,
        modified: int = 0,
        error_message: str | None = None,
    ) -> None:
        """Record the outcome of a sync pass."""
        self._execute(
            f"end sync run {run_id}",
            """UPDATE sync_runs
               SET ended_at = ?, status = ?, fetched = ?, added = ?, deleted = ?,
                   modified = ?, error_message = ?
               WHERE id = ?""",
            (format_date(utcnow()), status, fetched, added, deleted, modified, error_message, run_id),
        )

    def recent_sync_runs(self, account_id: str | None = None, limit: int = 10) -> list[SyncRun]:
        """Most recent sync runs, newest first."""
        if account_id:
            rows = self._fetchall(
                "list sync runs",
                "SELECT * FROM sync_runs WHERE account_id = ? ORDER BY id DESC LIMIT ?",
                (account_id, limit),
            )
        else:
            rows = self._fetchall(
                "list sync runs",
                "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?",
                (limit,),
            )
        return [
            SyncRun(
                id=row["id"],
                account_id=row["account_id"],
                mode=row["mode"],
                started_at=parse_date(row["started_at"]),
                ended_at=parse_date(row["ended_at"]),
                status=row["status"],
                fetched=row["fetched"] or 0,
                added=row["added"] or 0,
                deleted=row["deleted"] or 0,
                modified=row["modified"] or 0,
                error_message=row["error_message"],
            )
            for row in rows
        ]
