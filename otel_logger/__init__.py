"""otel-logger — ship stdin or wrapped-command logs to an OpenTelemetry collector."""

__version__ = "1.0.0"
