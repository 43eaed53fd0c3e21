class MetricsHubError(Exception):
    """Base class for pipeline failures."""


class ValidationError(MetricsHubError):
    """Malformed batch, metric or query; raised before anything is written."""


class AuthenticationError(MetricsHubError):
    """Device identity or API key could not be resolved."""


class StorageError(MetricsHubError):
    """A read or write against the database failed."""


class MalformedMessage(MetricsHubError):
    """A pub/sub message with a bad topic, body or metric shape."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
