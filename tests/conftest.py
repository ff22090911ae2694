"""Shared fixtures: an in-memory transport, a controllable clock and a hub."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from progress import ProgressHub


class RecordingTransport:
    """Transport that keeps every chunk written to it."""

    def __init__(self):
        self.chunks: list[str] = []
        self.closed = False

    def write(self, chunk: str) -> None:
        if self.closed:
            raise ConnectionResetError("client went away")
        self.chunks.append(chunk)

    def events(self) -> list[tuple[str, dict]]:
        """Parsed (name, data) pairs, keepalive comments skipped."""
        return parse_events(self.chunks)

    def names(self) -> list[str]:
        return [name for name, _ in self.events()]


class BrokenTransport(RecordingTransport):
    def write(self, chunk: str) -> None:
        raise BrokenPipeError("socket is gone")


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def parse_events(chunks: list[str]) -> list[tuple[str, dict]]:
    events = []
    for chunk in chunks:
        if chunk.startswith(":"):
            continue
        name_line, data_line = chunk.strip("\n").split("\n")
        events.append((name_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))))
    return events


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hub(clock):
    hub = ProgressHub(
        keepalive_interval=30,
        sweep_interval=120,
        orphan_timeout=600,
        grace_period=0.05,
        stale_completed_after=60,
        clock=clock,
    )
    yield hub
    hub.connections.close_all()
    hub.processes.close()
