"""In-process telemetry bus for exchange lifecycle events.

The orchestrator publishes ``exchange_state`` on every state transition,
``tool_invoked`` after each tool run and ``exchange_completed`` once per
exchange. Listeners receive a fresh copy of the payload, tagged with the
event name under ``"event"``.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Mapping

LOGGER = logging.getLogger(__name__)

EXCHANGE_STATE = "exchange_state"
TOOL_INVOKED = "tool_invoked"
EXCHANGE_COMPLETED = "exchange_completed"

Listener = Callable[[dict[str, Any]], None]

_listeners: dict[str, list[Listener]] = {}


def register_event_listener(event_name: str, callback: Listener) -> None:
    """Subscribe *callback* to *event_name*; subscribing twice has no effect."""

    if event_name and callback is not None and callback not in _listeners.get(event_name, ()):
        _listeners.setdefault(event_name, []).append(callback)


def unregister_event_listener(event_name: str, callback: Listener) -> None:
    subscribed = _listeners.get(event_name, [])
    if callback in subscribed:
        subscribed.remove(callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Publish *payload* to every listener of *event_name*.

    A listener that raises is logged and skipped; the remaining listeners
    still run.
    """

    if not event_name:
        return
    record = {"event": event_name, **(payload or {})}
    LOGGER.debug("telemetry %s %s", event_name, record)
    for callback in tuple(_listeners.get(event_name, ())):
        try:
            callback(dict(record))
        except Exception:
            LOGGER.warning("Telemetry listener %r failed on %s", callback, event_name, exc_info=True)


@dataclass(slots=True)
class TelemetryRecord:
    name: str
    payload: dict[str, Any]


class InMemoryTelemetrySink:
    """Ring-buffer listener for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._buffer: deque[TelemetryRecord] = deque(maxlen=max(10, capacity))
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen or 0

    def __call__(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(TelemetryRecord(name=str(payload.get("event", "")), payload=payload))

    def attach(self, *event_names: str) -> "InMemoryTelemetrySink":
        for name in event_names:
            register_event_listener(name, self)
        return self

    def detach(self, *event_names: str) -> None:
        for name in event_names:
            unregister_event_listener(name, self)

    def tail(self, limit: int | None = None) -> list[TelemetryRecord]:
        with self._lock:
            records = list(self._buffer)
        if limit is None or limit >= len(records):
            return records
        return records[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


__all__ = [
    "EXCHANGE_COMPLETED",
    "EXCHANGE_STATE",
    "InMemoryTelemetrySink",
    "TOOL_INVOKED",
    "Listener",
    "TelemetryRecord",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
