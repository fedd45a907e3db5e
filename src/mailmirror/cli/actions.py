"""Mutation commands: archive, trash, star, mark-read, label."""

import click
from click import argument, echo, option

from ..actions import MailActions
from ..config import get_root

from .utils import account_option, handle_errors, get_provider, open_store, require_init, resolve_account


def run_action(account: str | None, fn) -> None:
    """Open the store, bind MailActions to the account and call ``fn(actions)``."""
    root = get_root()
    with open_store(root) as store:
        account_id = resolve_account(store, account, root)
        fn(MailActions(store, get_provider(account_id, root), account_id))


@click.command(no_args_is_help=True)
@require_init
@handle_errors
@account_option
@argument('message_id')
def archive(account: str | None, message_id: str):
    """Remove a message from the inbox."""
    run_action(account, lambda actions: actions.archive(message_id))
    echo(f"Archived {message_id}")


@click.command(no_args_is_help=True)
@require_init
@handle_errors
@account_option
@argument('message_id')
def trash(account: str | None, message_id: str):
    """Move a message to trash and drop it from the local replica."""
    run_action(account, lambda actions: actions.delete(message_id))
    echo(f"Trashed {message_id}")


@click.command(no_args_is_help=True)
@require_init
@handle_errors
@account_option
@option('-u', '--unstar', is_flag=True, help="Remove the star instead")
@argument('message_id')
def star(account: str | None, unstar: bool, message_id: str):
    """Star (or unstar) a message."""
    run_action(account, lambda actions: actions.star(message_id, starred=not unstar))
    echo(f"{'Unstarred' if unstar else 'Starred'} {message_id}")


@click.command("mark-read", no_args_is_help=True)
@require_init
@handle_errors
@account_option
@option('-t', '--thread', 'is_thread', is_flag=True, help="ID is a thread id; mark all of its messages")
@option('-u', '--unread', is_flag=True, help="Mark unread instead")
@argument('id')
def mark_read(account: str | None, is_thread: bool, unread: bool, id: str):
    """Mark a message (or a whole thread) read or unread."""
    if is_thread:
        run_action(account, lambda actions: actions.mark_thread_read(id, read=not unread))
    else:
        run_action(account, lambda actions: actions.mark_read(id, read=not unread))
    echo(f"Marked {id} {'unread' if unread else 'read'}")


@click.command(no_args_is_help=True)
@require_init
@handle_errors
@option('-A', '--account', help="Account id (default: config default_account)")
@option('-a', '--add', 'add', multiple=True, help="Label id to add (repeatable)")
@option('-r', '--remove', 'remove', multiple=True, help="Label id to remove (repeatable)")
@argument('message_id')
def label(account: str | None, add: tuple[str, ...], remove: tuple[str, ...], message_id: str):
    """Add or remove labels on a message.

    \b
    Examples:
      mailmirror label 18c2f0 -a Label_12 -r INBOX
    """
    if not add and not remove:
        raise click.UsageError("Nothing to do; pass -a/--add or -r/--remove")
    run_action(account, lambda actions: actions.modify_labels(message_id, list(add), list(remove)))
    echo(f"Updated labels on {message_id}")
