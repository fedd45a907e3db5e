"""Sync command: pull remote changes into the local replica."""

import signal
import sys
import threading

import click
from click import argument, echo, option

from ..config import get_root, load_config
from ..errors import MailMirrorError, SyncCancelled
from ..sync import SyncEngine

from .utils import err, get_provider, open_store, require_init


@click.command()
@require_init
@option('-F', '--full', is_flag=True, help="Re-run the initial sync instead of applying history")
@option('-n', '--count', type=click.IntRange(min=0), help="Messages to fetch on initial sync (default: sync.initial_count)")
@argument('account', required=False)
def sync(full: bool, count: int | None, account: str | None):
    """Sync one account, or every account when none is given.

    \b
    The first sync of an account fetches its labels and most recent
    messages; later syncs apply the provider's change history.

    \b
    Examples:
      mailmirror sync                 # all accounts
      mailmirror sync me@gmail.com    # one account
      mailmirror sync -F -n 2000      # full re-sync of the last 2000 messages
    """
    root = get_root()
    config = load_config(root)

    # First Ctrl-C stops the pass at the next safe point
    cancel = threading.Event()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.set())

    failed = False
    try:
        with open_store(root) as store:
            account_ids = [account] if account else [a.id for a in store.list_accounts()]
            if not account_ids:
                err("No accounts. Run 'mailmirror account add' first.")
                return

            for account_id in account_ids:
                try:
                    store.get_account(account_id)
                    engine = SyncEngine(
                        store,
                        get_provider(account_id, root),
                        account_id,
                        batch_size=config.sync.batch_size,
                        bootstrap_count=config.sync.initial_count,
                        cancel=cancel,
                    )
                    result = engine.sync(full=full, count=count)
                except SyncCancelled:
                    err(f"{account_id}: sync cancelled")
                    failed = True
                    break
                except MailMirrorError as e:
                    err(f"{account_id}: {e}")
                    failed = True
                    continue
                echo(
                    f"{account_id}: {result.mode}: {result.fetched} fetched, {result.added} added, "
                    f"{result.deleted} deleted, {result.modified} modified"
                )
    finally:
        signal.signal(signal.SIGINT, previous)

    if failed:
        sys.exit(1)
