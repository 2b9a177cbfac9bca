"""Error taxonomy for ingestion, storage, queries and outbound sends."""


class WABridgeError(Exception):
    """Base class for bridge errors."""
    pass


class MalformedEventError(WABridgeError):
    """Inbound protocol event is missing a required field."""
    pass


class StoreWriteError(WABridgeError):
    """A single record's write unit could not be committed."""

    def __init__(self, message: str, key=None):
        super().__init__(message)
        self.key = key


class StoreReadError(WABridgeError):
    """A query could not be executed against the store."""
    pass


class StoreUnavailableError(StoreReadError):
    """The store file is missing or cannot be opened."""
    pass


class WriterLockError(WABridgeError):
    """Another writer already owns the store."""
    pass


class ValidationError(WABridgeError):
    """Tool-call argument failed validation."""
    pass


class DispatchError(WABridgeError):
    """The protocol client rejected or could not complete a send."""
    pass
