"""Exporters — turn batches of LogRecords into OTLP messages and deliver them.

The OTLP ``ExportLogsServiceRequest`` is built with the generated
``opentelemetry-proto`` classes and shipped either as a binary protobuf body
over HTTP (``/v1/logs``) or through the gRPC ``LogsService``.
"""

import datetime
import json
import logging
import random
import sys
import time
from typing import Any, Optional, TextIO

import grpc
import httpx
from opentelemetry.proto.collector.logs.v1 import logs_service_pb2, logs_service_pb2_grpc
from opentelemetry.proto.common.v1.common_pb2 import (
    AnyValue,
    InstrumentationScope,
    KeyValue,
)
from opentelemetry.proto.logs.v1 import logs_pb2
from opentelemetry.proto.resource.v1.resource_pb2 import Resource

from otel_logger import __version__
from otel_logger.exceptions import ConfigError, ExportError
from otel_logger.models import LogRecord, record_to_dict

logger = logging.getLogger(__name__)

SCOPE_NAME = "otel-logger"
PROTOBUF_CONTENT_TYPE = "application/x-protobuf"

# ---------------------------------------------------------------------------
# Level mapping helpers
# ---------------------------------------------------------------------------

_SEVERITY_NUMBERS: dict[str, int] = {
    "trace": logs_pb2.SEVERITY_NUMBER_TRACE,
    "debug": logs_pb2.SEVERITY_NUMBER_DEBUG,
    "info": logs_pb2.SEVERITY_NUMBER_INFO,
    "warn": logs_pb2.SEVERITY_NUMBER_WARN,
    "warning": logs_pb2.SEVERITY_NUMBER_WARN,
    "error": logs_pb2.SEVERITY_NUMBER_ERROR,
    "fatal": logs_pb2.SEVERITY_NUMBER_FATAL,
}

_INT64_MIN = -(2 ** 63)
_INT64_MAX = 2 ** 63 - 1

# gRPC status codes worth another attempt.
_RETRYABLE_GRPC_CODES = frozenset({
    grpc.StatusCode.UNAVAILABLE,
    grpc.StatusCode.DEADLINE_EXCEEDED,
    grpc.StatusCode.RESOURCE_EXHAUSTED,
    grpc.StatusCode.ABORTED,
})


def level_to_severity(level: str) -> int:
    """Map a free-form level string to an OTLP SeverityNumber (default INFO)."""
    return _SEVERITY_NUMBERS.get(level.strip().lower(), logs_pb2.SEVERITY_NUMBER_INFO)


# ---------------------------------------------------------------------------
# Record -> proto converters
# ---------------------------------------------------------------------------


def to_any_value(value: Any) -> AnyValue:
    """Wrap a record value in an OTLP :class:`AnyValue`."""
    if isinstance(value, bool):
        return AnyValue(bool_value=value)
    if isinstance(value, int):
        if _INT64_MIN <= value <= _INT64_MAX:
            return AnyValue(int_value=value)
        return AnyValue(string_value=str(value))
    if isinstance(value, float):
        return AnyValue(double_value=value)
    if isinstance(value, str):
        return AnyValue(string_value=value)
    return AnyValue(
        string_value=json.dumps(value, separators=(",", ":"), default=str)
    )


def _key_value(key: str, value: Any) -> KeyValue:
    return KeyValue(key=key, value=to_any_value(value))


_EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def _to_unix_nano(timestamp: datetime.datetime) -> int:
    delta = timestamp - _EPOCH
    nanos = (delta.days * 86400 + delta.seconds) * 1_000_000_000
    # fixed64 on the wire; pre-epoch times clamp to zero
    return max(0, nanos + delta.microseconds * 1000)


def build_log_record(record: LogRecord, observed_nano: int) -> logs_pb2.LogRecord:
    attributes = [_key_value(k, v) for k, v in record.attributes.items()]
    attributes.append(_key_value("log.level", record.level))
    if record.stream is not None:
        attributes.append(_key_value("stream", record.stream))
    return logs_pb2.LogRecord(
        time_unix_nano=_to_unix_nano(record.timestamp),
        observed_time_unix_nano=observed_nano,
        severity_number=level_to_severity(record.level),
        severity_text=record.level,
        body=to_any_value(record.message),
        attributes=attributes,
    )


def build_export_request(
    records: list[LogRecord],
    service_name: str,
    service_version: str,
) -> logs_service_pb2.ExportLogsServiceRequest:
    """Build an OTLP ExportLogsServiceRequest holding *records*."""
    observed = time.time_ns()
    resource = Resource(attributes=[
        _key_value("service.name", service_name),
        _key_value("service.version", service_version),
    ])
    scope_logs = logs_pb2.ScopeLogs(
        scope=InstrumentationScope(name=SCOPE_NAME, version=__version__),
        log_records=[build_log_record(r, observed) for r in records],
    )
    return logs_service_pb2.ExportLogsServiceRequest(
        resource_logs=[logs_pb2.ResourceLogs(resource=resource, scope_logs=[scope_logs])]
    )


def logs_url(endpoint: str, insecure: bool) -> str:
    """Normalize *endpoint* into the full OTLP/HTTP logs URL."""
    url = endpoint
    if not url.startswith(("http://", "https://")):
        url = ("http://" if insecure else "https://") + url
    if not url.endswith("/v1/logs"):
        url = url.rstrip("/") + "/v1/logs"
    return url


def grpc_target(endpoint: str) -> str:
    """Strip any URL scheme and trailing slash; gRPC dials host:port."""
    for scheme in ("http://", "https://"):
        if endpoint.startswith(scheme):
            endpoint = endpoint[len(scheme):]
    return endpoint.rstrip("/")


def _backoff_delay(attempt: int) -> float:
    """Exponential backoff (0.1s, 0.2s, 0.4s, ... capped at 2s) with jitter."""
    base = min(0.1 * (2 ** attempt), 2.0)
    return base * random.uniform(0.8, 1.2)


# ---------------------------------------------------------------------------
# Exporters
# ---------------------------------------------------------------------------


class OTLPHTTPExporter:
    """Posts protobuf-encoded batches to an OTLP/HTTP collector with retry and backoff."""

    def __init__(
        self,
        endpoint: str,
        service_name: str,
        service_version: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        insecure: bool = False,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._url = logs_url(endpoint, insecure)
        self._service_name = service_name
        self._service_version = service_version
        self._max_retries = max_retries
        request_headers = {"Content-Type": PROTOBUF_CONTENT_TYPE}
        request_headers.update(headers or {})
        self._client = httpx.Client(
            headers=request_headers,
            timeout=timeout,
            verify=not insecure,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    def export(self, records: list[LogRecord]) -> None:
        """Send *records*; raises ExportError once all attempts are used up."""
        request = build_export_request(records, self._service_name, self._service_version)
        payload = request.SerializeToString()

        last_error = "no attempt made"
        for attempt in range(self._max_retries + 1):
            try:
                response = self._client.post(self._url, content=payload)
            except httpx.HTTPError as exc:
                last_error = f"failed to send request: {exc}"
            else:
                if response.status_code < 300:
                    logger.debug("Exported %d records to %s", len(records), self._url)
                    return
                last_error = (
                    f"server returned status {response.status_code}: {response.text}"
                )
                if response.status_code < 500 and response.status_code != 429:
                    raise ExportError(last_error, status_code=response.status_code)

            if attempt < self._max_retries:
                logger.warning(
                    "Export failed (attempt %d/%d): %s",
                    attempt + 1,
                    self._max_retries + 1,
                    last_error,
                )
                time.sleep(self._backoff_delay(attempt))

        raise ExportError(
            f"export failed after {self._max_retries + 1} attempts: {last_error}"
        )

    _backoff_delay = staticmethod(_backoff_delay)

    def close(self) -> None:
        self._client.close()


class OTLPGRPCExporter:
    """Calls ``LogsService/Export`` on an OTLP/gRPC collector with retry and backoff."""

    def __init__(
        self,
        endpoint: str,
        service_name: str,
        service_version: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        insecure: bool = False,
        max_retries: int = 3,
        channel: Optional[grpc.Channel] = None,
    ):
        self._target = grpc_target(endpoint)
        self._service_name = service_name
        self._service_version = service_version
        self._timeout = timeout
        self._max_retries = max_retries
        # gRPC metadata keys must be lowercase
        self._metadata = tuple((k.lower(), v) for k, v in (headers or {}).items())
        if channel is None:
            if insecure:
                channel = grpc.insecure_channel(self._target)
            else:
                channel = grpc.secure_channel(self._target, grpc.ssl_channel_credentials())
        self._channel = channel
        self._stub = logs_service_pb2_grpc.LogsServiceStub(channel)

    @property
    def target(self) -> str:
        return self._target

    def export(self, records: list[LogRecord]) -> None:
        """Send *records*; raises ExportError once all attempts are used up."""
        request = build_export_request(records, self._service_name, self._service_version)

        last_error = "no attempt made"
        for attempt in range(self._max_retries + 1):
            try:
                self._stub.Export(request, timeout=self._timeout, metadata=self._metadata)
            except grpc.RpcError as exc:
                code = exc.code()
                last_error = f"failed to export logs: {code.name}: {exc.details()}"
                if code not in _RETRYABLE_GRPC_CODES:
                    raise ExportError(last_error)
            else:
                logger.debug("Exported %d records to %s", len(records), self._target)
                return

            if attempt < self._max_retries:
                logger.warning(
                    "Export failed (attempt %d/%d): %s",
                    attempt + 1,
                    self._max_retries + 1,
                    last_error,
                )
                time.sleep(self._backoff_delay(attempt))

        raise ExportError(
            f"export failed after {self._max_retries + 1} attempts: {last_error}"
        )

    _backoff_delay = staticmethod(_backoff_delay)

    def close(self) -> None:
        self._channel.close()


class ConsoleExporter:
    """Writes each record as one compact JSON line, for local debugging."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream

    def export(self, records: list[LogRecord]) -> None:
        out = self._stream or sys.stdout
        for record in records:
            out.write(json.dumps(record_to_dict(record), separators=(",", ":")) + "\n")
        out.flush()

    def close(self) -> None:
        pass


_EXPORTERS = {
    "grpc": OTLPGRPCExporter,
    "http": OTLPHTTPExporter,
}


def create_exporter(config):
    """Pick an exporter for ``config.protocol``."""
    protocol = config.protocol.lower()
    if protocol == "console":
        return ConsoleExporter()
    exporter_cls = _EXPORTERS.get(protocol)
    if exporter_cls is None:
        raise ConfigError(
            f"unsupported protocol: {config.protocol} (supported: grpc, http, console)"
        )
    return exporter_cls(
        endpoint=config.endpoint,
        service_name=config.service_name,
        service_version=config.service_version,
        headers=dict(config.headers),
        timeout=config.timeout,
        insecure=config.insecure,
    )
