"""Project configuration via YAML."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .sync import BATCH_SIZE, DEFAULT_BOOTSTRAP_COUNT

MAILMIRROR_DIR = ".mailmirror"
CONFIG_FILE = "config.yaml"
ROOT_ENV = "MAILMIRROR_ROOT"


@dataclass
class AccountConfig:
    """How to reach one account's provider."""
    name: str
    provider: str = "gmail"
    token_file: str | None = None


@dataclass
class SyncConfig:
    initial_count: int = DEFAULT_BOOTSTRAP_COUNT
    batch_size: int = BATCH_SIZE


@dataclass
class MailMirrorConfig:
    """Top-level project configuration."""
    default_account: str | None = None
    sync: SyncConfig = field(default_factory=SyncConfig)
    accounts: dict[str, AccountConfig] = field(default_factory=dict)


def find_root(start: Path | None = None) -> Path | None:
    """Find project root (directory containing .mailmirror/).

    First checks MAILMIRROR_ROOT environment variable, then walks up from start/cwd.
    """
    env_root = os.environ.get(ROOT_ENV)
    if env_root:
        env_path = Path(env_root).resolve()
        if (env_path / MAILMIRROR_DIR).is_dir():
            return env_path

    path = (start or Path.cwd()).resolve()
    while path != path.parent:
        if (path / MAILMIRROR_DIR).is_dir():
            return path
        path = path.parent
    return None


def get_root(require: bool = True) -> Path:
    """Get project root, raising if not found and require=True."""
    root = find_root()
    if not root and require:
        raise FileNotFoundError(
            "Not in a mailmirror project. Run 'mailmirror init' first."
        )
    return root or Path.cwd()


def get_config_path(root: Path | None = None) -> Path:
    root = root or get_root()
    return root / MAILMIRROR_DIR / CONFIG_FILE


def load_config(root: Path | None = None) -> MailMirrorConfig:
    """Load config from config.yaml; defaults when the file is missing."""
    config_path = get_config_path(root)
    if not config_path.exists():
        return MailMirrorConfig()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    sync_data = data.get("sync") or {}
    accounts = {}
    for name, acct_data in (data.get("accounts") or {}).items():
        acct_data = acct_data or {}
        accounts[name] = AccountConfig(
            name=name,
            provider=acct_data.get("provider", "gmail"),
            token_file=acct_data.get("token_file"),
        )

    return MailMirrorConfig(
        default_account=data.get("default_account"),
        sync=SyncConfig(
            initial_count=int(sync_data.get("initial_count", DEFAULT_BOOTSTRAP_COUNT)),
            batch_size=int(sync_data.get("batch_size", BATCH_SIZE)),
        ),
        accounts=accounts,
    )


def save_config(config: MailMirrorConfig, root: Path | None = None) -> None:
    """Save config to config.yaml."""
    config_path = get_config_path(root)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict = {}
    if config.default_account:
        data["default_account"] = config.default_account
    data["sync"] = {
        "initial_count": config.sync.initial_count,
        "batch_size": config.sync.batch_size,
    }
    if config.accounts:
        data["accounts"] = {}
        for name, acct in config.accounts.items():
            acct_data = {"provider": acct.provider}
            if acct.token_file:
                acct_data["token_file"] = acct.token_file
            data["accounts"][name] = acct_data

    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
