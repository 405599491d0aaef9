"""Configuration — frozen dataclass built from defaults, YAML, env vars and CLI args."""

import argparse
import logging
import os
import re
from dataclasses import dataclass, field, fields
from typing import Optional

import yaml

from otel_logger import __version__
from otel_logger.exceptions import ConfigError
from otel_logger.models import (
    DEFAULT_LEVEL_FIELDS,
    DEFAULT_MESSAGE_FIELDS,
    DEFAULT_TIMESTAMP_FIELDS,
    FieldMappings,
)
from otel_logger.multiline import DEFAULT_CONTINUATION_PATTERN

logger = logging.getLogger(__name__)

DESCRIPTION = """\
otel-logger reads logs from stdin, or from the output of a wrapped command,
and sends them to an OpenTelemetry collector. It handles JSON logs, JSON
behind a timestamp prefix, multi-line entries such as stack traces, and
plain text. Field mappings are configurable to support different logging
frameworks."""

EPILOG = """\
Examples:
  cat app.log | otel-logger --endpoint localhost:4317 --insecure
  cat app.log | otel-logger --protocol http --endpoint localhost:4318
  otel-logger --service-name myapp --passthrough-stdout -- ./run-server.sh
  cat logstash.log | otel-logger --timestamp-fields @timestamp

Field Mapping Defaults:
  Timestamps: timestamp, ts, time, @timestamp
  Levels:     level, lvl, severity, priority
  Messages:   message, msg, text, content"""

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes")


def parse_duration(value) -> float:
    """Parse '500ms', '5s', '2m', '1h' or a bare number of seconds."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    m = _DURATION_RE.match(str(value))
    if not m:
        raise ConfigError(f"invalid duration: {value!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2) or "s"]


def parse_headers(items) -> dict[str, str]:
    """Parse 'key=value' strings (a list, or one comma-separated string)."""
    if isinstance(items, str):
        items = [i for i in items.split(",") if i.strip()]
    headers: dict[str, str] = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"invalid header {item!r}, expected key=value")
        headers[key.strip()] = value.strip()
    return headers


def _yaml_headers(value) -> dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    return parse_headers(value)


def _split_fields(values) -> tuple[str, ...]:
    """Flatten repeated and comma-separated field-name options."""
    if not values:
        return ()
    if isinstance(values, str):
        values = [values]
    names = []
    for value in values:
        names.extend(name.strip() for name in str(value).split(",") if name.strip())
    return tuple(names)


@dataclass(frozen=True)
class Config:
    endpoint: str = "localhost:4317"
    protocol: str = "grpc"
    service_name: str = "otel-logger"
    service_version: str = "1.0.0"
    insecure: bool = False
    timeout: float = 10.0
    headers: dict = field(default_factory=dict)
    json_prefix: Optional[str] = None
    continuation_pattern: str = DEFAULT_CONTINUATION_PATTERN
    batch_size: int = 50
    flush_interval: float = 5.0
    timestamp_fields: tuple[str, ...] = DEFAULT_TIMESTAMP_FIELDS
    level_fields: tuple[str, ...] = DEFAULT_LEVEL_FIELDS
    message_fields: tuple[str, ...] = DEFAULT_MESSAGE_FIELDS
    passthrough_stdout: bool = False
    passthrough_stderr: bool = False
    shutdown_grace: float = 5.0
    quiet: bool = False
    command: tuple[str, ...] = ()

    @property
    def field_mappings(self) -> FieldMappings:
        return FieldMappings.with_defaults(
            self.timestamp_fields, self.level_fields, self.message_fields
        )


# env var -> (config field, converter)
_ENV_VARS = {
    "OTEL_EXPORTER_OTLP_ENDPOINT": ("endpoint", str),
    "OTEL_EXPORTER_OTLP_PROTOCOL": ("protocol", str),
    "OTEL_SERVICE_NAME": ("service_name", str),
    "OTEL_SERVICE_VERSION": ("service_version", str),
    "OTEL_EXPORTER_OTLP_INSECURE": ("insecure", _parse_bool),
    "OTEL_EXPORTER_OTLP_TIMEOUT": ("timeout", parse_duration),
    "OTEL_EXPORTER_OTLP_HEADERS": ("headers", parse_headers),
    "OTEL_LOGGER_JSON_PREFIX": ("json_prefix", str),
    "OTEL_LOGGER_CONTINUATION_PATTERN": ("continuation_pattern", str),
    "OTEL_LOGGER_BATCH_SIZE": ("batch_size", int),
    "OTEL_LOGGER_FLUSH_INTERVAL": ("flush_interval", parse_duration),
}

# YAML key -> converter; keys match Config field names.
_YAML_CONVERTERS = {
    "insecure": _parse_bool,
    "timeout": parse_duration,
    "headers": _yaml_headers,
    "batch_size": int,
    "flush_interval": parse_duration,
    "shutdown_grace": parse_duration,
    "timestamp_fields": _split_fields,
    "level_fields": _split_fields,
    "message_fields": _split_fields,
    "passthrough_stdout": _parse_bool,
    "passthrough_stderr": _parse_bool,
    "quiet": _parse_bool,
}


def load_yaml_config(path: Optional[str]) -> dict:
    """Load settings from a YAML file. Returns an empty dict when no path is given."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"config file {path} not found")
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file {path} is not valid YAML: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="otel-logger",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-e", "--endpoint", default=None,
                        help="OpenTelemetry collector endpoint")
    parser.add_argument("-p", "--protocol", default=None,
                        help="Export protocol: grpc, http or console (default: grpc)")
    parser.add_argument("--service-name", default=None,
                        help="Service name for telemetry")
    parser.add_argument("--service-version", default=None,
                        help="Service version for telemetry")
    parser.add_argument("--insecure", action="store_true", default=None,
                        help="Use a plaintext connection / skip TLS verification")
    parser.add_argument("--timeout", default=None,
                        help="Export request timeout (e.g. 10s)")
    parser.add_argument("--header", action="append", dest="headers", default=None,
                        help="Additional export header key=value (repeatable)")
    parser.add_argument("--json-prefix", default=None,
                        help="Regex whose last group extracts JSON from prefixed lines")
    parser.add_argument("--continuation-pattern", default=None,
                        help="Regex marking continuation lines (default: ^[ \\t])")
    parser.add_argument("--batch-size", type=int, default=None,
                        help="Number of log entries to batch before sending")
    parser.add_argument("--flush-interval", default=None,
                        help="Interval to flush batched logs (e.g. 5s)")
    parser.add_argument("--timestamp-fields", action="append", default=None,
                        help="JSON field names for timestamps, in priority order")
    parser.add_argument("--level-fields", action="append", default=None,
                        help="JSON field names for log levels, in priority order")
    parser.add_argument("--message-fields", action="append", default=None,
                        help="JSON field names for log messages, in priority order")
    parser.add_argument("--passthrough-stdout", action="store_true", default=None,
                        help="Echo the command's stdout entries to stdout")
    parser.add_argument("--passthrough-stderr", action="store_true", default=None,
                        help="Echo the command's stderr entries to stderr")
    parser.add_argument("--shutdown-grace", default=None,
                        help="How long to wait for the command after forwarding a signal")
    parser.add_argument("-q", "--quiet", action="store_true", default=None,
                        help="Only log warnings and errors")
    parser.add_argument("--config", default=None,
                        help="Path to a YAML config file")
    parser.add_argument("--version", action="version",
                        version=f"otel-logger {__version__}")
    parser.add_argument("command", nargs=argparse.REMAINDER,
                        help="Command to run and capture (after --)")
    return parser


def _validate(kwargs: dict) -> None:
    if kwargs["batch_size"] < 1:
        raise ConfigError(f"batch size must be at least 1, got {kwargs['batch_size']}")
    if kwargs["timeout"] <= 0:
        raise ConfigError("timeout must be positive")
    for key in ("json_prefix", "continuation_pattern"):
        pattern = kwargs[key]
        if pattern:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigError(f"invalid {key.replace('_', ' ')} {pattern!r}: {exc}")


def load_config(argv: Optional[list[str]] = None) -> Config:
    """Build Config from defaults <- YAML file <- env vars <- CLI args."""
    args = build_cli_parser().parse_args(argv)

    known = {f.name for f in fields(Config)}
    kwargs: dict = {f.name: getattr(Config, f.name) for f in fields(Config)
                    if f.name not in ("headers",)}
    kwargs["headers"] = {}

    for key, value in load_yaml_config(args.config).items():
        key = key.replace("-", "_")
        if key not in known or key == "command":
            logger.warning("Ignoring unknown config key %r", key)
            continue
        convert = _YAML_CONVERTERS.get(key)
        try:
            kwargs[key] = convert(value) if convert else value
        except (TypeError, ValueError):
            raise ConfigError(f"invalid value for {key} in {args.config}: {value!r}")

    for env_name, (key, convert) in _ENV_VARS.items():
        value = os.environ.get(env_name)
        if value is not None and value != "":
            try:
                kwargs[key] = convert(value)
            except ValueError:
                raise ConfigError(f"invalid value for {env_name}: {value!r}")

    cli = {
        "endpoint": args.endpoint,
        "protocol": args.protocol,
        "service_name": args.service_name,
        "service_version": args.service_version,
        "insecure": args.insecure,
        "timeout": parse_duration(args.timeout) if args.timeout else None,
        "json_prefix": args.json_prefix,
        "continuation_pattern": args.continuation_pattern,
        "batch_size": args.batch_size,
        "flush_interval": (
            parse_duration(args.flush_interval) if args.flush_interval else None
        ),
        "passthrough_stdout": args.passthrough_stdout,
        "passthrough_stderr": args.passthrough_stderr,
        "shutdown_grace": (
            parse_duration(args.shutdown_grace) if args.shutdown_grace else None
        ),
        "quiet": args.quiet,
    }
    if args.headers:
        kwargs["headers"] = {**kwargs["headers"], **parse_headers(args.headers)}
    for key in ("timestamp_fields", "level_fields", "message_fields"):
        names = _split_fields(getattr(args, key))
        if names:
            cli[key] = names
    kwargs.update({k: v for k, v in cli.items() if v is not None})

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    kwargs["command"] = tuple(command)

    for key in ("timestamp_fields", "level_fields", "message_fields"):
        kwargs[key] = tuple(kwargs[key])

    _validate(kwargs)
    return Config(**kwargs)
