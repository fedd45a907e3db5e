"""Account management commands."""

import click
from click import argument, echo, option
from rich.console import Console
from rich.table import Table

from ..config import AccountConfig, get_root, load_config, save_config
from ..gmail import GmailProvider
from ..models import Account

from .utils import AliasGroup, err, fail, format_date, handle_errors, open_store, require_init


@click.group(cls=AliasGroup, aliases={
    'a': 'add',
    'l': 'ls',
    'r': 'rm',
})
def account():
    """Manage mail accounts."""
    pass


@account.command("add", no_args_is_help=True)
@require_init
@handle_errors
@option('-d', '--default', 'make_default', is_flag=True, help="Make this the default account")
@option('-e', '--email', help="Mailbox address (default: NAME, or asked from the provider)")
@option('-n', '--display-name', default="", help="Display name")
@option('-t', '--token-file', help="Authorized-user OAuth token file (JSON)")
@argument('name')
def account_add(
    make_default: bool,
    email: str | None,
    display_name: str,
    token_file: str | None,
    name: str,
):
    """Add or update an account.

    \b
    Examples:
      mailmirror account add me@gmail.com -t ~/.config/mailmirror/me.json
      mailmirror a a work -e me@work.com -t work.json -d
    """
    root = get_root()
    if not email:
        if "@" in name:
            email = name
        elif token_file:
            email = GmailProvider.from_token_file(token_file).email_address()
        else:
            fail("Cannot infer the account's address. Use -e to specify.")

    config = load_config(root)
    existing = config.accounts.get(name)
    config.accounts[name] = AccountConfig(
        name=name,
        provider="gmail",
        token_file=token_file or (existing.token_file if existing else None),
    )
    if make_default or not config.default_account:
        config.default_account = name
    save_config(config, root)

    with open_store(root) as store:
        store.add_account(Account(id=name, email=email, display_name=display_name))
    echo(f"Account '{name}' saved ({email})")


@account.command("ls")
@require_init
@handle_errors
def account_ls():
    """List accounts."""
    root = get_root()
    config = load_config(root)
    with open_store(root) as store:
        accounts = store.list_accounts()
        states = {a.id: store.get_sync_state(a.id) for a in accounts}

    if not accounts:
        err("No accounts. Add one with 'mailmirror account add'.")
        return

    table = Table()
    table.add_column("Account", style="cyan")
    table.add_column("Email")
    table.add_column("Provider")
    table.add_column("Last sync")
    for acct in accounts:
        name = f"{acct.id} *" if acct.id == config.default_account else acct.id
        table.add_row(name, acct.email, acct.provider, format_date(states[acct.id].last_sync))
    Console().print(table)


@account.command("rm", no_args_is_help=True)
@require_init
@handle_errors
@argument('name')
def account_rm(name: str):
    """Remove an account and all of its cached mail."""
    root = get_root()
    config = load_config(root)
    in_config = config.accounts.pop(name, None) is not None
    if config.default_account == name:
        config.default_account = next(iter(config.accounts), None)
    save_config(config, root)

    with open_store(root) as store:
        removed = store.remove_account(name)

    if not removed and not in_config:
        fail(f"Account '{name}' not found")
    echo(f"Account '{name}' removed")
