"""Exceptions raised by the sync core.

Runtime failures (bad JSON, dead channels, network errors) are logged and
swallowed where they happen; only configuration mistakes surface as
exceptions so they fail fast at startup.
"""


class SyncError(Exception):
    """Base class for sync core errors."""


class UnmappedStorageKeyError(SyncError, KeyError):
    """A storage key has no explicit topic mapping."""

    def __init__(self, keys):
        self.keys = sorted(keys)
        super().__init__(f"No topic mapping for storage key(s): {', '.join(self.keys)}")

    def __str__(self) -> str:  # KeyError would repr() the message
        return self.args[0]
