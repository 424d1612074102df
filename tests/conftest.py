"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest

from agent_relay.executor.sinks import MemoryRecordSink
from agent_relay.executor.supervisor import ProcessSupervisor


@pytest.fixture(autouse=True)
def _clean_agent_relay_env(monkeypatch):
    """Keep AGENT_RELAY_* settings from the developer shell out of tests."""
    for name in list(os.environ):
        if name.startswith("AGENT_RELAY_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def record_sink() -> MemoryRecordSink:
    return MemoryRecordSink()


@pytest.fixture()
def supervisor(record_sink):
    """Supervisor without a background sweeper; tests drive sweeps explicitly."""
    instance = ProcessSupervisor(
        sink=record_sink,
        graceful_shutdown_seconds=2,
        sweep_interval_seconds=None,
    )
    yield instance
    instance.shutdown()
