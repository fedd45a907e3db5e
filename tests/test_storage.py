"""Tests for MailStore: accounts, messages, labels, sync state and runs."""

import sqlite3
from datetime import datetime, timezone

import pytest

from mailmirror.errors import NotFoundError, StoreError
from mailmirror.models import INBOX, STARRED, UNREAD, Account, Address, Label, SyncState
from mailmirror.storage import MailStore


def count_rows(store, table, where="1", params=()):
    return store.conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {where}", params).fetchone()[0]


class TestConnect:
    def test_creates_schema(self, tmp_path):
        path = tmp_path / "sub" / "mail.db"
        with MailStore(path) as store:
            tables = {
                row[0] for row in store.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
        assert path.exists()
        for name in ("accounts", "messages", "labels", "message_labels", "sync_state", "sync_runs", "messages_fts"):
            assert name in tables

    def test_reopen_keeps_data(self, tmp_path, make_message):
        path = tmp_path / "mail.db"
        with MailStore(path) as store:
            store.add_account(Account(id="a", email="a@example.com"))
            store.upsert_message(make_message("m1"), "a")
        with MailStore(path) as store:
            assert store.get_message("m1").subject == "Hello"

    def test_in_memory(self, make_message):
        with MailStore(":memory:") as store:
            store.add_account(Account(id="a", email="a@example.com"))
            store.upsert_message(make_message("m1"), "a")
            assert store.has_message("m1")

    def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(StoreError):
            MailStore(blocker / "mail.db").connect()

    def test_not_connected(self, tmp_path):
        with pytest.raises(RuntimeError):
            MailStore(tmp_path / "mail.db").conn


class TestAccounts:
    def test_add_get_list(self, store, account_id):
        store.add_account(Account(id="b@example.com", email="b@example.com", display_name="Bee"))
        assert store.get_account("b@example.com").display_name == "Bee"
        assert [a.id for a in store.list_accounts()] == [account_id, "b@example.com"]

    def test_add_updates(self, store, account_id):
        store.add_account(Account(id=account_id, email="new@example.com"))
        assert store.get_account(account_id).email == "new@example.com"
        assert len(store.list_accounts()) == 1

    def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            store.get_account("nobody")

    def test_remove_cascades(self, store, account_id, make_message):
        store.upsert_message(make_message("m1", labels=[INBOX, STARRED]), account_id)
        store.upsert_label(Label(id=INBOX, name="Inbox", account_id=account_id))
        store.set_sync_state(SyncState(account_id, history_id=5))
        store.start_sync_run(account_id, "bootstrap")

        assert store.remove_account(account_id)
        assert not store.has_message("m1")
        for table in ("messages", "message_labels", "labels", "sync_state", "sync_runs", "messages_fts"):
            assert count_rows(store, table) == 0, table
        assert not store.remove_account(account_id)


class TestMessages:
    def test_upsert_and_get(self, store, account_id, make_message):
        msg = make_message("m1", labels=[INBOX, UNREAD])
        msg.cc = [Address(email="bob@example.com", name="Bob")]
        msg.body_html = "<p>Hello there</p>"
        msg.in_reply_to = "<parent@example.com>"
        store.upsert_message(msg, account_id)

        got = store.get_message("m1")
        assert got.thread_id == "t1"
        assert got.from_addr == Address(email="alice@example.com", name="Alice")
        assert got.to == [Address(email=account_id)]
        assert got.cc == [Address(email="bob@example.com", name="Bob")]
        assert got.body_html == "<p>Hello there</p>"
        assert got.in_reply_to == "<parent@example.com>"
        assert got.date == msg.date
        assert sorted(got.labels) == [INBOX, UNREAD]
        assert got.account_id == account_id

    def test_upsert_twice_latest_wins(self, store, account_id, make_message):
        store.upsert_message(make_message("m1", subject="First", labels=[INBOX]), account_id)
        store.upsert_message(make_message("m1", subject="Second", labels=[STARRED]), account_id)

        assert count_rows(store, "messages") == 1
        got = store.get_message("m1")
        assert got.subject == "Second"
        assert got.labels == [STARRED]

    def test_duplicate_labels_collapse(self, store, account_id, make_message):
        store.upsert_message(make_message("m1", labels=[INBOX, INBOX, STARRED]), account_id)
        assert store.get_message("m1").labels == [INBOX, STARRED]

    def test_naive_date_is_utc(self, store, account_id, make_message):
        msg = make_message("m1")
        msg.date = datetime(2024, 3, 1, 12, 0)
        store.upsert_message(msg, account_id)
        assert store.get_message("m1").date == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_missing_date_is_epoch(self, store, account_id, make_message):
        msg = make_message("m1")
        msg.date = None
        store.upsert_message(msg, account_id)
        assert store.get_message("m1").date == datetime(1970, 1, 1, tzinfo=timezone.utc)

    def test_unknown_account_fails(self, store, make_message):
        with pytest.raises(StoreError):
            store.upsert_message(make_message("m1"), "nobody")
        assert not store.has_message("m1")

    def test_failed_label_write_rolls_back_message(self, store, account_id, make_message, monkeypatch):
        def broken(conn, message_id, label_ids):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_replace_labels", broken)
        with pytest.raises(StoreError, match="upsert message m1"):
            store.upsert_message(make_message("m1"), account_id)
        monkeypatch.undo()
        assert not store.has_message("m1")
        assert count_rows(store, "message_labels") == 0

    def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            store.get_message("nope")

    def test_list_newest_first(self, store, account_id, make_message):
        store.upsert_message(make_message("old", hours=0), account_id)
        store.upsert_message(make_message("new", hours=2), account_id)
        store.upsert_message(make_message("mid", hours=1, labels=[STARRED]), account_id)

        assert [m.id for m in store.list_messages(account_id)] == ["new", "mid", "old"]
        assert [m.id for m in store.list_messages(account_id, label_id=STARRED)] == ["mid"]
        assert [m.id for m in store.list_messages(account_id, limit=2)] == ["new", "mid"]
        assert [m.id for m in store.list_messages(account_id, offset=1)] == ["mid", "old"]

    def test_list_scoped_to_account(self, store, account_id, make_message):
        store.add_account(Account(id="other", email="other@example.com"))
        store.upsert_message(make_message("m1"), account_id)
        store.upsert_message(make_message("m2"), "other")
        assert [m.id for m in store.list_messages("other")] == ["m2"]

    def test_count(self, store, account_id, make_message):
        store.upsert_message(make_message("m1", labels=[INBOX]), account_id)
        store.upsert_message(make_message("m2", labels=[INBOX, UNREAD]), account_id)
        assert store.count_messages(account_id) == 2
        assert store.count_messages(account_id, UNREAD) == 1
        assert store.count_messages("nobody") == 0

    def test_delete(self, store, account_id, make_message):
        store.upsert_message(make_message("m1", subject="Project deadline", labels=[INBOX, STARRED]), account_id)
        assert store.search_messages("project", account_id)

        assert store.delete_message("m1")
        assert not store.has_message("m1")
        assert count_rows(store, "message_labels", "message_id = ?", ("m1",)) == 0
        assert store.search_messages("project", account_id) == []

    def test_delete_absent_is_noop(self, store):
        assert not store.delete_message("nope")

    def test_prune(self, store, account_id, make_message):
        for i in range(4):
            store.upsert_message(make_message(f"m{i}", subject=f"Report {i}", hours=i, labels=[INBOX]), account_id)
        store.add_account(Account(id="other", email="other@example.com"))
        store.upsert_message(make_message("x1", hours=9), "other")

        # Only messages newer than m1 are candidates: m2 goes, m0 stays
        assert store.prune_messages(account_id, {"m3", "m1"}, since=store.get_message("m1").date) == 1
        assert [m.id for m in store.list_messages(account_id)] == ["m3", "m1", "m0"]

        assert store.prune_messages(account_id, {"m3"}) == 2
        assert [m.id for m in store.list_messages(account_id)] == ["m3"]
        assert count_rows(store, "message_labels", "message_id = ?", ("m0",)) == 0
        assert [m.id for m in store.search_messages("report", account_id)] == ["m3"]
        assert store.has_message("x1")

    def test_prune_nothing_stale(self, store, account_id, make_message):
        store.upsert_message(make_message("m1"), account_id)
        assert store.prune_messages(account_id, {"m1", "unknown"}) == 0
        assert store.has_message("m1")


class TestMessageLabels:
    @pytest.mark.parametrize("before, after", [
        ([INBOX, UNREAD], [STARRED]),
        ([INBOX], []),
        ([], [INBOX, "Label_1"]),
        ([INBOX, STARRED], [STARRED, INBOX]),
    ])
    def test_set_replaces(self, store, account_id, make_message, before, after):
        store.upsert_message(make_message("m1", labels=before), account_id)
        store.set_message_labels("m1", after)
        assert sorted(store.get_message("m1").labels) == sorted(after)

    def test_set_flags(self, store, account_id, make_message):
        store.upsert_message(make_message("m1"), account_id)
        store.set_message_labels("m1", [STARRED], is_read=True, is_starred=True)
        got = store.get_message("m1")
        assert got.is_read and got.is_starred

        # Flags left alone when not given
        store.set_message_labels("m1", [])
        got = store.get_message("m1")
        assert got.is_read and got.is_starred

    def test_set_missing_message(self, store):
        with pytest.raises(NotFoundError):
            store.set_message_labels("nope", [INBOX])

    def test_set_message_read(self, store, account_id, make_message):
        store.upsert_message(make_message("m1", labels=[INBOX, UNREAD]), account_id)
        store.set_message_read("m1", True)
        got = store.get_message("m1")
        assert got.is_read
        assert got.labels == [INBOX]

        store.set_message_read("m1", False)
        got = store.get_message("m1")
        assert not got.is_read
        assert UNREAD in got.labels

    def test_set_message_read_missing(self, store):
        with pytest.raises(NotFoundError):
            store.set_message_read("nope", True)

    def test_set_thread_read(self, store, account_id, make_message):
        store.upsert_message(make_message("m1", labels=[UNREAD]), account_id)
        store.upsert_message(make_message("m2", hours=1, labels=[UNREAD]), account_id)
        store.upsert_message(make_message("m3", thread_id="t2", labels=[UNREAD]), account_id)

        assert store.set_thread_read("t1", account_id, True) == 2
        assert store.get_message("m1").is_read
        assert store.get_message("m2").labels == []
        assert not store.get_message("m3").is_read
        assert store.get_message("m3").labels == [UNREAD]


class TestLabels:
    def test_upsert_and_list(self, store, account_id):
        store.upsert_label(Label(id="Label_1", name="Work", account_id=account_id))
        store.upsert_label(Label(id=INBOX, name="INBOX", type="system", account_id=account_id))
        store.upsert_label(Label(id="Label_1", name="Work stuff", color="#00ff00", account_id=account_id))

        labels = store.list_labels(account_id)
        assert [(l.id, l.name) for l in labels] == [(INBOX, "INBOX"), ("Label_1", "Work stuff")]
        assert labels[1].color == "#00ff00"

    def test_system_labels_per_account(self, store, account_id):
        store.add_account(Account(id="other", email="other@example.com"))
        store.upsert_label(Label(id=INBOX, name="Inbox", type="system", account_id=account_id))
        store.upsert_label(Label(id=INBOX, name="Posteingang", type="system", account_id="other"))

        assert store.list_labels(account_id)[0].name == "Inbox"
        assert store.list_labels("other")[0].name == "Posteingang"

    def test_requires_account(self, store):
        with pytest.raises(ValueError):
            store.upsert_label(Label(id=INBOX, name="Inbox"))


class TestSyncState:
    def test_zero_value(self, store, account_id):
        state = store.get_sync_state(account_id)
        assert state.history_id == 0
        assert state.last_sync is None
        assert not state.has_cursor

    def test_set_and_update(self, store, account_id):
        now = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
        store.set_sync_state(SyncState(account_id, history_id=42, last_sync=now))
        store.set_sync_state(SyncState(account_id, history_id=43, last_sync=now))
        state = store.get_sync_state(account_id)
        assert state.history_id == 43
        assert state.last_sync == now


class TestSyncRuns:
    def test_journal(self, store, account_id):
        run_id = store.start_sync_run(account_id, "bootstrap")
        runs = store.recent_sync_runs(account_id)
        assert runs[0].status == "running"
        assert runs[0].ended_at is None

        store.end_sync_run(run_id, "completed", fetched=3, added=3)
        failed_id = store.start_sync_run(account_id, "delta")
        store.end_sync_run(failed_id, "failed", error_message="boom")

        runs = store.recent_sync_runs()
        assert [r.id for r in runs] == [failed_id, run_id]
        assert runs[0].error_message == "boom"
        assert runs[1].fetched == 3 and runs[1].added == 3
        assert runs[1].ended_at is not None
        assert len(store.recent_sync_runs(limit=1)) == 1


class TestTransaction:
    def test_rollback_on_error(self, store, account_id, make_message):
        with pytest.raises(KeyboardInterrupt):
            with store.transaction() as conn:
                conn.execute(
                    "INSERT INTO labels (account_id, id, name) VALUES (?, ?, ?)",
                    (account_id, "L", "Label"),
                )
                raise KeyboardInterrupt
        assert store.list_labels(account_id) == []
        assert not store.conn.in_transaction

    def test_nested_joins_outer(self, store, account_id, make_message):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.upsert_message(make_message("m1"), account_id)
                raise RuntimeError("abort")
        assert not store.has_message("m1")
