from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

import structlog

TELEMETRY_LOGGER_NAME = "senior_trends.telemetry"
REDACTED = "[redacted]"

# Attribute names containing any of these are never forwarded as-is.
_REDACTED_ATTRIBUTE_PARTS: tuple[str, ...] = (
    "api_key",
    "authorization",
    "credential",
    "description",
    "secret",
    "token",
)
_GOOGLE_API_KEY_PATTERN = re.compile(r"AIza[0-9A-Za-z_\-]{20,}")
_MAX_STRING_LENGTH = 160

TelemetryValue = bool | int | float | str | None


def redact_api_keys(text: str) -> str:
    """Replace anything shaped like a Google API key."""
    return _GOOGLE_API_KEY_PATTERN.sub(REDACTED, text)


class TelemetrySink(Protocol):
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        ...


class NoOpTelemetrySink:
    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        _ = (event_name, attributes)


class StructuredLogTelemetrySink:
    """Writes each event as one structlog line on the telemetry logger."""

    def __init__(self) -> None:
        self._logger = structlog.get_logger(TELEMETRY_LOGGER_NAME)

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self._logger.info("telemetry", telemetry_event=event_name, **dict(attributes))


@dataclass(frozen=True)
class TelemetryClient:
    """Scan lifecycle and HTTP events. Attributes are flattened and key-scrubbed."""

    enabled: bool
    sink: TelemetrySink

    @classmethod
    def disabled(cls) -> TelemetryClient:
        return cls(enabled=False, sink=NoOpTelemetrySink())

    def emit(self, event_name: str, **attributes: Any) -> None:
        if self.enabled:
            self.sink.emit(event_name=event_name, attributes=_scrub(attributes))


def build_telemetry_client(*, enabled: bool, sink: Literal["none", "log"]) -> TelemetryClient:
    if enabled and sink == "log":
        return TelemetryClient(enabled=True, sink=StructuredLogTelemetrySink())
    if enabled and sink != "none":
        logging.getLogger(TELEMETRY_LOGGER_NAME).warning(
            "unknown telemetry sink, telemetry stays off sink=%s",
            sink,
        )
    return TelemetryClient.disabled()


def _scrub(attributes: Mapping[str, Any]) -> dict[str, TelemetryValue]:
    scrubbed: dict[str, TelemetryValue] = {}
    for raw_name, raw_value in attributes.items():
        name = str(raw_name).strip().lower()
        if not name:
            continue
        if any(part in name for part in _REDACTED_ATTRIBUTE_PARTS):
            scrubbed[name] = REDACTED
        else:
            scrubbed[name] = _flatten(raw_value)
    return scrubbed


def _flatten(value: Any) -> TelemetryValue:
    """Scalars pass through, timestamps become ISO strings, collections their size."""
    if value is None or isinstance(value, bool | int | float):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list | tuple | set | frozenset | dict):
        return len(value)
    if not isinstance(value, str):
        return type(value).__name__
    text = redact_api_keys(" ".join(value.split()))
    if len(text) > _MAX_STRING_LENGTH:
        return f"{text[:_MAX_STRING_LENGTH]}..."
    return text
