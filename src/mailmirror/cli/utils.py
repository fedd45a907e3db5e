"""Shared CLI utilities and helpers."""

import sys
from datetime import datetime
from functools import wraps
from pathlib import Path

import click

from ..config import MAILMIRROR_DIR, AccountConfig, find_root, get_root, load_config
from ..errors import ConfigError, MailMirrorError
from ..gmail import GmailProvider
from ..provider import MailProvider
from ..storage import MAIL_DB, MailStore


def err(*args, **kwargs):
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def fail(msg: str):
    err(msg)
    sys.exit(1)


def get_db_path(root: Path | None = None) -> Path:
    root = root or get_root()
    return root / MAILMIRROR_DIR / MAIL_DB


def open_store(root: Path | None = None) -> MailStore:
    """Open the project's mail.db. Exits on failure."""
    store = MailStore(get_db_path(root))
    try:
        store.connect()
    except MailMirrorError as e:
        fail(f"Error: {e}")
    return store


def resolve_account(store: MailStore, account: str | None, root: Path | None = None) -> str:
    """Pick the account to act on: explicit, configured default, or the only one."""
    if account:
        return account
    config = load_config(root)
    if config.default_account:
        return config.default_account
    accounts = store.list_accounts()
    if len(accounts) == 1:
        return accounts[0].id
    if not accounts:
        fail("No accounts. Run 'mailmirror account add' first.")
    fail("Multiple accounts; pass -a/--account or set default_account in config.yaml.")


def get_provider(name: str, root: Path | None = None) -> MailProvider:
    """Build the provider configured for an account.

    Raises:
        ConfigError: The account has no usable entry in config.yaml.
    """
    config = load_config(root)
    acct: AccountConfig | None = config.accounts.get(name)
    if not acct:
        raise ConfigError(f"Account '{name}' not found in config.yaml")
    if acct.provider != "gmail":
        raise ConfigError(f"Unsupported provider '{acct.provider}' for account '{name}'")
    if not acct.token_file:
        raise ConfigError(f"Account '{name}' has no token_file")
    return GmailProvider.from_token_file(acct.token_file)


def format_date(dt: datetime | None) -> str:
    return dt.astimezone().strftime("%Y-%m-%d %H:%M") if dt else "?"


# =============================================================================
# Decorators and Click helpers
# =============================================================================


def require_init(f):
    """Decorator that requires .mailmirror directory to exist."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        if not find_root():
            err("Not in a mailmirror project. Run 'mailmirror init' first.")
            sys.exit(1)
        return f(*args, **kwargs)
    return wrapper


def handle_errors(f):
    """Decorator reporting MailMirrorError on stderr with exit status 1."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except MailMirrorError as e:
            fail(f"Error: {e}")
    return wrapper


# Shared options
account_option = click.option('-a', '--account', help="Account id (default: config default_account)")


class AliasGroup(click.Group):
    """Click Group that supports command aliases."""

    def __init__(self, *args, aliases: dict[str, str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.aliases = aliases or {}
        # command -> list of aliases
        self._cmd_aliases: dict[str, list[str]] = {}
        for alias, cmd in self.aliases.items():
            self._cmd_aliases.setdefault(cmd, []).append(alias)

    def get_command(self, ctx, cmd_name):
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return super().get_command(ctx, cmd_name)

    def resolve_command(self, ctx, args):
        _, cmd_name, args = super().resolve_command(ctx, args)
        cmd_name = self.aliases.get(cmd_name, cmd_name)
        return _, cmd_name, args

    def format_commands(self, ctx, formatter):
        """List commands with their aliases."""
        commands = []
        for subcommand in self.list_commands(ctx):
            cmd = self.get_command(ctx, subcommand)
            if cmd is None or cmd.hidden:
                continue
            aliases = self._cmd_aliases.get(subcommand, [])
            name = f"{subcommand} ({', '.join(sorted(aliases))})" if aliases else subcommand
            commands.append((name, cmd.get_short_help_str(limit=formatter.width)))

        if commands:
            with formatter.section("Commands"):
                formatter.write_dl(commands)
