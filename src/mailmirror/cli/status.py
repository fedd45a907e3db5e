"""Status command."""

import click
import humanize
from click import option
from rich.console import Console
from rich.table import Table

from ..config import get_root, load_config
from ..models import INBOX, UNREAD, utcnow

from .utils import err, handle_errors, open_store, require_init


@click.command()
@require_init
@handle_errors
@option('-r', '--runs', type=int, default=5, help="Recent sync runs to show")
def status(runs: int):
    """Show accounts, sync cursors, message counts and recent sync runs."""
    root = get_root()
    config = load_config(root)
    console = Console()
    now = utcnow()

    with open_store(root) as store:
        accounts = store.list_accounts()
        if not accounts:
            err("No accounts. Run 'mailmirror account add' first.")
            return

        table = Table(title="Accounts")
        table.add_column("Account", style="cyan")
        table.add_column("Cursor", justify="right")
        table.add_column("Last sync")
        table.add_column("Messages", justify="right")
        table.add_column("Inbox", justify="right")
        table.add_column("Unread", justify="right")
        for acct in accounts:
            state = store.get_sync_state(acct.id)
            last_sync = humanize.naturaltime(now - state.last_sync) if state.last_sync else "never"
            table.add_row(
                f"{acct.id} *" if acct.id == config.default_account else acct.id,
                str(state.history_id) if state.has_cursor else "-",
                last_sync,
                f"{store.count_messages(acct.id):,}",
                f"{store.count_messages(acct.id, INBOX):,}",
                f"{store.count_messages(acct.id, UNREAD):,}",
            )
        console.print(table)

        recent = store.recent_sync_runs(limit=runs) if runs else []

    if recent:
        console.print()
        runs_table = Table(title="Recent syncs")
        runs_table.add_column("Account", style="cyan")
        runs_table.add_column("Mode")
        runs_table.add_column("Started")
        runs_table.add_column("Status")
        runs_table.add_column("Fetched", justify="right")
        runs_table.add_column("+/-/~", justify="right")
        for run in recent:
            style = {"completed": "green", "failed": "red", "cancelled": "yellow"}.get(run.status)
            runs_table.add_row(
                run.account_id,
                run.mode,
                humanize.naturaltime(now - run.started_at),
                f"[{style}]{run.status}[/]" if style else run.status,
                f"{run.fetched:,}",
                f"{run.added}/{run.deleted}/{run.modified}",
            )
        console.print(runs_table)
        failed = [r for r in recent if r.error_message]
        for run in failed:
            console.print(f"[red]{run.account_id}[/] #{run.id}: {run.error_message}")
