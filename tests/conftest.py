from __future__ import annotations

import threading
from typing import Any, Callable

import pytest

from library_tank.errors import TransportConnectionError
from library_tank.transport import Connection, Transport, TransportResponse


class StubConnection(Connection):
    def __init__(self, transport: "StubTransport") -> None:
        self._transport = transport
        self.closed = False

    def send(self, payload: dict[str, Any]) -> TransportResponse:
        with self._transport.lock:
            self._transport.payloads.append(payload)
        outcome = self._transport.responder(payload)
        if isinstance(outcome, BaseException):
            raise outcome
        return TransportResponse(status=outcome, body=None, latency_s=0.001)

    def close(self) -> None:
        self.closed = True
        with self._transport.lock:
            self._transport.closed += 1


class StubTransport(Transport):
    """In-memory transport answering every request through ``responder``."""

    protocol = "http"

    def __init__(self, responder: Callable[[dict[str, Any]], Any]) -> None:
        self.responder = responder
        self.lock = threading.Lock()
        self.payloads: list[dict[str, Any]] = []
        self.opened = 0
        self.closed = 0

    def _connect(self) -> Connection:
        with self.lock:
            self.opened += 1
        return StubConnection(self)


def failing_times(times: int, then: Any = 201) -> Callable[[dict[str, Any]], Any]:
    state = {"calls": 0}
    lock = threading.Lock()

    def responder(_payload: dict[str, Any]) -> Any:
        with lock:
            state["calls"] += 1
            calls = state["calls"]
        if calls <= times:
            return TransportConnectionError("connection refused")
        return then

    return responder


@pytest.fixture
def created_transport() -> StubTransport:
    return StubTransport(lambda _payload: 201)


@pytest.fixture
def erroring_transport() -> StubTransport:
    return StubTransport(lambda _payload: 500)
