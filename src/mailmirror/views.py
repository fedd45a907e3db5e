"""Read-only views over the message store: threads and full-text search."""

import re

from .errors import NotFoundError
from .models import Address, Message, Thread, ThreadSummary, make_snippet, parse_date

# Query syntax that marks a query as hand-written FTS5
FTS_SYNTAX = re.compile(r'["*():^{}+]|\b(?:AND|OR|NOT|NEAR)\b')


def fts_query(query: str) -> str:
    """Quote each word of a plain query so punctuation (``@``, ``.``, ``-``) is literal.

    Queries using FTS5 syntax (quotes, ``*``, ``AND``/``OR``/``NOT``,
    ``column:``) are passed through unchanged.
    """
    if FTS_SYNTAX.search(query):
        return query
    return " ".join(f'"{word}"' for word in query.split())


def paginate(query: str, params: list, limit: int | None, offset: int | None) -> tuple[str, list]:
    """Append LIMIT/OFFSET to a query. A falsy limit means "no limit"."""
    if limit or offset:
        query += " LIMIT ? OFFSET ?"
        params = [*params, limit if limit else -1, offset or 0]
    return query, params


class ThreadViews:
    """Thread assembly, thread listing and search, mixed into MailStore.

    Threads are never stored: every call aggregates the messages sharing
    (thread_id, account_id). Each view reads inside one snapshot, so it sees
    a message and its label set either before or after a write, never between.
    """

    def get_thread(self, thread_id: str, account_id: str) -> Thread:
        """Get all messages in a thread, oldest first.

        Raises:
            NotFoundError: No message of the account carries this thread id,
                whether the thread never existed or all of it was deleted.
        """
        with self._reading(f"get thread {thread_id}") as conn:
            rows = conn.execute("""
                SELECT * FROM messages
                WHERE thread_id = ? AND account_id = ?
                ORDER BY date ASC, id ASC
            """, (thread_id, account_id)).fetchall()
            if not rows:
                raise NotFoundError(f"thread {thread_id} not found")
            messages = self._load_messages(conn, rows)

        first, last = messages[0], messages[-1]
        labels = sorted({label for m in messages for label in m.labels})
        return Thread(
            id=thread_id,
            subject=first.subject,
            from_addr=first.from_addr,
            messages=messages,
            snippet=make_snippet(last.body),
            last_date=last.date,
            labels=labels,
        )

    def list_threads(
        self,
        account_id: str,
        label_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ThreadSummary]:
        """List thread summaries, most recently active first.

        With label_id, only messages carrying that label take part in the
        aggregation, so a thread's count, dates and snippet describe its
        labelled messages.
        """
        if label_id:
            scoped = """
                SELECT m.* FROM messages m
                JOIN message_labels ml ON ml.message_id = m.id AND ml.label_id = ?
                WHERE m.account_id = ?
            """
            params: list = [label_id, account_id]
        else:
            scoped = "SELECT * FROM messages WHERE account_id = ?"
            params = [account_id]

        query = f"""
            WITH scoped AS ({scoped}),
            ranked AS (
                SELECT thread_id, subject, from_addr, from_name, date, body_text,
                       ROW_NUMBER() OVER (PARTITION BY thread_id ORDER BY date ASC, id ASC) AS first_rank,
                       ROW_NUMBER() OVER (PARTITION BY thread_id ORDER BY date DESC, id DESC) AS last_rank,
                       COUNT(*) OVER (PARTITION BY thread_id) AS message_count,
                       MIN(is_read) OVER (PARTITION BY thread_id) AS all_read
                FROM scoped
            )
            SELECT f.thread_id, f.subject, f.from_addr, f.from_name,
                   l.date AS last_date, l.body_text AS last_body,
                   f.message_count, f.all_read
            FROM ranked f
            JOIN ranked l ON l.thread_id = f.thread_id AND l.last_rank = 1
            WHERE f.first_rank = 1
            ORDER BY last_date DESC, f.thread_id
        """
        query, params = paginate(query, params, limit, offset)

        with self._reading(f"list threads for {account_id}") as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            ThreadSummary(
                id=row["thread_id"],
                subject=row["subject"] or "",
                from_addr=Address(email=row["from_addr"] or "", name=row["from_name"] or ""),
                last_date=parse_date(row["last_date"]),
                snippet=make_snippet(row["last_body"]),
                message_count=row["message_count"],
                has_unread=not row["all_read"],
            )
            for row in rows
        ]

    def search_messages(
        self,
        query: str,
        account_id: str,
        limit: int | None = None,
    ) -> list[Message]:
        """Full-text search over subject, body and sender, best match first.

        Args:
            query: Words to match (all of them), or an FTS5 query
                (AND, OR, NOT, "phrases", prefix*, column:term)
            account_id: Only messages of this account are returned
            limit: Max results to return

        Returns:
            Matching messages; an empty list when nothing matches.

        Raises:
            StoreError: An FTS5 query has invalid syntax.
        """
        if not query or not query.strip():
            return []

        sql, params = paginate("""
            SELECT m.* FROM messages_fts
            JOIN messages m ON m.rowid = messages_fts.rowid
            WHERE messages_fts MATCH ? AND m.account_id = ?
            ORDER BY bm25(messages_fts), m.date DESC
        """, [fts_query(query), account_id], limit, 0)

        with self._reading(f"search messages for {query!r}") as conn:
            rows = conn.execute(sql, params).fetchall()
            return self._load_messages(conn, rows)
