"""Exceptions raised by the metadata store.

A missing record is never an error: lookups return ``None`` or an empty
list. Everything below is a write that cannot proceed or a storage failure.
"""


class MetadataStoreError(Exception):
    """Base class for metadata store failures."""


class ConflictError(MetadataStoreError):
    """A write would bind a nickname that another session already owns."""

    def __init__(self, nickname: str, owner_session_id: str):
        super().__init__(
            f"Nickname '{nickname}' is already in use by session {owner_session_id}"
        )
        self.nickname = nickname
        self.owner_session_id = owner_session_id


class AmbiguousReferenceError(MetadataStoreError):
    """A session id prefix matches more than one session."""

    def __init__(self, prefix: str, matches: list[str]):
        super().__init__(
            f"Ambiguous session ID prefix '{prefix}' matches {len(matches)} sessions. "
            "Please provide more characters."
        )
        self.prefix = prefix
        self.matches = matches


class PersistenceError(MetadataStoreError):
    """The underlying SQLite database failed or is no longer usable."""


class ConfigurationError(MetadataStoreError):
    """The configured database path cannot be opened."""

    def __init__(self, message: str, path=None):
        super().__init__(message)
        self.path = path
