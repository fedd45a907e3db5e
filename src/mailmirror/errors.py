"""Exception hierarchy for mailmirror.

Store and provider failures are raised as subclasses of MailMirrorError so
callers (the sync engine, the CLI) can tell "not there" apart from "broken".
"""


class MailMirrorError(Exception):
    """Base class for all mailmirror errors."""


class NotFoundError(MailMirrorError, LookupError):
    """A message, thread, label or account does not exist."""


class StoreError(MailMirrorError):
    """The local database failed (I/O, constraint violation, bad query)."""


class ProviderError(MailMirrorError):
    """A remote call failed (network, rate limiting, server error)."""


class CursorExpiredError(ProviderError):
    """The provider no longer serves history from the requested cursor."""


class SyncError(MailMirrorError):
    """A sync pass could not complete."""


class SyncInProgressError(SyncError):
    """Another sync pass is already running for the same account."""


class SyncCancelled(SyncError):
    """The sync pass was cancelled via its cancellation signal."""


class ConfigError(MailMirrorError):
    """config.yaml is missing an account or has an unusable entry for it."""
