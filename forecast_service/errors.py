class ForecastServiceError(Exception):
    """Base class for errors the forecast service reports to its callers."""


class ConfigurationError(ForecastServiceError):
    """Missing credentials or an invalid setting. Never retried."""


class StorageError(ForecastServiceError):
    """The cache store could not be read or written."""
