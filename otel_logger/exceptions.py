"""Exception hierarchy for otel-logger."""


class OtelLoggerError(Exception):
    """Base class for all otel-logger errors."""


class ConfigError(OtelLoggerError):
    """Raised when configuration values are missing or invalid."""


class ExportError(OtelLoggerError):
    """Raised when a batch of records could not be delivered to the collector."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
