"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Iterator

import pytest

from parley.ai.client import ApproxByteCounter
from parley.services import telemetry as telemetry_service

_TELEMETRY_EVENTS = (
    telemetry_service.EXCHANGE_STATE,
    telemetry_service.TOOL_INVOKED,
    telemetry_service.EXCHANGE_COMPLETED,
)


@pytest.fixture
def telemetry_sink() -> Iterator[telemetry_service.InMemoryTelemetrySink]:
    sink = telemetry_service.InMemoryTelemetrySink(capacity=500).attach(*_TELEMETRY_EVENTS)
    try:
        yield sink
    finally:
        sink.detach(*_TELEMETRY_EVENTS)


@pytest.fixture
def tokenizer() -> ApproxByteCounter:
    """Offline counter: one token per four bytes."""

    return ApproxByteCounter()
