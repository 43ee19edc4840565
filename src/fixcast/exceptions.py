class FixcastError(Exception):
    """Base exception for fixcast."""


class StoreError(FixcastError):
    """The persisted state could not be read or written. Retryable."""


class ProviderUnavailableError(FixcastError):
    """No positioning source is available to serve a reading request."""
