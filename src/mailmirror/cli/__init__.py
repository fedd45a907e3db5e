"""CLI package for mailmirror.

This package organizes CLI commands into modules:
- account.py: Account management (add, ls, rm)
- sync_cmds.py: Sync accounts from their providers
- mail.py: Read the local replica (ls, read, search, labels)
- actions.py: Mutations (archive, trash, star, mark-read, label)
- status.py: Sync status overview
- misc.py: init
- utils.py: Shared utilities and helpers
"""

import click
from click import option
from dotenv import load_dotenv

from ..logs import setup_logging
from .utils import AliasGroup

from .account import account
from .actions import archive, label, mark_read, star, trash
from .mail import labels, ls, read, search
from .misc import init
from .status import status
from .sync_cmds import sync


@click.group(cls=AliasGroup, aliases={
    'a': 'account',
    'i': 'init',
    'r': 'read',
    's': 'sync',
    'st': 'status',
    '/': 'search',
})
@option('-v', '--verbose', is_flag=True, help="Log sync progress to stderr")
def main(verbose: bool):
    """Local, searchable mirror of a remote mailbox."""
    load_dotenv()
    setup_logging(verbose)


main.add_command(account)

main.add_command(archive)
main.add_command(init)
main.add_command(label)
main.add_command(labels)
main.add_command(ls)
main.add_command(mark_read)
main.add_command(read)
main.add_command(search)
main.add_command(star)
main.add_command(status)
main.add_command(sync)
main.add_command(trash)


__all__ = [
    'main',
    'account',
    'archive',
    'init',
    'label',
    'labels',
    'ls',
    'mark_read',
    'read',
    'search',
    'star',
    'status',
    'sync',
    'trash',
]
