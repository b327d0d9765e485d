"""Error types shared by the orchestrator and the storage engine."""


class ScrapeCoreError(Exception):
    """Base class for errors raised by the scrape core."""


class TransportError(ScrapeCoreError):
    """A signal to or from a scraping agent could not be delivered."""


class StorageError(ScrapeCoreError):
    """The storage backend rejected a read or write."""


class QuotaExceededError(StorageError):
    """A write would push the backend past its byte quota."""


class SessionNotFoundError(ScrapeCoreError):
    """No session record exists for the requested id."""


class UnsupportedFormatError(ScrapeCoreError):
    """An export was requested in a format that is not implemented."""
