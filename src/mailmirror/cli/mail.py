"""Read commands over the local replica: ls, read, search, labels."""

import click
from click import argument, echo, option
from rich.console import Console
from rich.table import Table

from ..config import get_root

from .utils import account_option, err, format_date, handle_errors, open_store, require_init, resolve_account


@click.command()
@require_init
@handle_errors
@account_option
@option('-L', '--label', help="Only threads with messages carrying this label id (e.g. INBOX)")
@option('-l', '--limit', type=int, default=50, help="Max threads to show (0: all)")
def ls(account: str | None, label: str | None, limit: int):
    """List threads, most recently active first.

    \b
    Examples:
      mailmirror ls                 # latest 50 threads
      mailmirror ls -L INBOX -l 20  # inbox only
    """
    root = get_root()
    with open_store(root) as store:
        account_id = resolve_account(store, account, root)
        threads = store.list_threads(account_id, label_id=label, limit=limit or None)

    if not threads:
        err("No threads.")
        return

    table = Table(box=None)
    table.add_column("", width=1)
    table.add_column("Thread", style="dim")
    table.add_column("Date")
    table.add_column("From", style="cyan", max_width=24, no_wrap=True)
    table.add_column("Subject", no_wrap=True)
    table.add_column("#", justify="right")
    for t in threads:
        table.add_row(
            "*" if t.has_unread else "",
            t.id,
            format_date(t.last_date),
            t.from_addr.name or t.from_addr.email,
            t.subject or "(no subject)",
            str(t.message_count),
            style="bold" if t.has_unread else None,
        )
    Console().print(table)


@click.command(no_args_is_help=True)
@require_init
@handle_errors
@account_option
@argument('thread_id')
def read(account: str | None, thread_id: str):
    """Show every message of a thread, oldest first."""
    root = get_root()
    with open_store(root) as store:
        account_id = resolve_account(store, account, root)
        thread = store.get_thread(thread_id, account_id)

    echo(click.style(thread.subject or "(no subject)", bold=True))
    echo(f"Labels: {', '.join(thread.labels)}")
    for msg in thread.messages:
        echo()
        echo("-" * 60)
        echo(f"From: {msg.from_addr}")
        if msg.to:
            echo(f"To: {', '.join(str(a) for a in msg.to)}")
        if msg.cc:
            echo(f"Cc: {', '.join(str(a) for a in msg.cc)}")
        echo(f"Date: {format_date(msg.date)}")
        echo(f"Id: {msg.id}")
        echo()
        echo(msg.body.rstrip())


@click.command(no_args_is_help=True)
@require_init
@handle_errors
@account_option
@option('-l', '--limit', type=int, default=20, help="Max results")
@argument('query')
def search(account: str | None, limit: int, query: str):
    """Full-text search over subject, body and sender.

    \b
    Plain words must all match; punctuation is taken literally:
      mailmirror search invoice
      mailmirror search alice@example.com

    \b
    Quotes, *, AND/OR/NOT or column: switch to SQLite FTS5 syntax:
      mailmirror search '"quarterly report" AND NOT draft'
      mailmirror search 'budg*'
    """
    root = get_root()
    with open_store(root) as store:
        account_id = resolve_account(store, account, root)
        messages = store.search_messages(query, account_id, limit=limit or None)

    if not messages:
        err("No matches.")
        return

    for msg in messages:
        echo(f"{format_date(msg.date)}  {msg.thread_id}  {msg.from_addr.email}  {msg.subject}")


@click.command()
@require_init
@handle_errors
@account_option
def labels(account: str | None):
    """List labels with their message counts."""
    root = get_root()
    with open_store(root) as store:
        account_id = resolve_account(store, account, root)
        rows = [
            (label, store.count_messages(account_id, label.id))
            for label in store.list_labels(account_id)
        ]

    if not rows:
        err("No labels. Run 'mailmirror sync' first.")
        return

    table = Table()
    table.add_column("Id", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Messages", justify="right")
    for label, count in rows:
        table.add_row(label.id, label.name, label.type, f"{count:,}")
    Console().print(table)
