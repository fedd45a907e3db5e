"""Project initialization."""

from pathlib import Path

import click
from click import echo

from ..config import MAILMIRROR_DIR, MailMirrorConfig, get_config_path, save_config

from .utils import open_store


@click.command()
def init():
    """Initialize a mailmirror project in the current directory.

    \b
    Creates .mailmirror/ with config.yaml and an empty mail.db.
    """
    root = Path.cwd()
    config_path = get_config_path(root)

    if config_path.exists():
        echo(f"Already initialized: {root / MAILMIRROR_DIR}")
        return

    save_config(MailMirrorConfig(), root)
    store = open_store(root)
    store.disconnect()
    echo(f"Initialized mailmirror project: {root / MAILMIRROR_DIR}")
