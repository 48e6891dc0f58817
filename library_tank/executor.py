from __future__ import annotations

import dataclasses
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterable

from .errors import TransportConnectionError, TransportError
from .template import Iteration, RequestTemplate, build_payload, sample_identifier
from .transport import Connection, Transport, TransportResponse

LOGGER = logging.getLogger("library_tank.executor")


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    label: str
    vu: int
    iteration: int
    status: int | str | None = None
    identifier: str | None = None
    latency_s: float | None = None
    attempts: int = 1
    error: str | None = None
    unreachable: bool = False
    timestamp: float = dataclasses.field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def check_label(success_statuses: Iterable[int | str]) -> str:
    return "status is " + " or ".join(str(status) for status in sorted(success_statuses, key=str))


class RequestExecutor:
    """Builds, sends and checks the request for a single iteration."""

    def __init__(
        self,
        transport: Transport,
        success_statuses: Iterable[int | str],
        rng: random.Random | None = None,
        iteration_delay_s: float = 0.0,
        max_retries: int = 3,
        retry_backoff_s: float = 0.1,
        label: str | None = None,
    ) -> None:
        self._transport = transport
        self._success_statuses = frozenset(success_statuses)
        if not self._success_statuses:
            raise ValueError("at least one success status is required")
        self._rng = rng or random.Random()
        self._iteration_delay_s = iteration_delay_s
        self._max_retries = max_retries
        self._retry_backoff_s = retry_backoff_s
        self.label = label or check_label(self._success_statuses)

    @property
    def transport(self) -> Transport:
        return self._transport

    def execute(
        self,
        template: RequestTemplate,
        iteration: Iteration,
        connection: Connection | None = None,
        cancel: threading.Event | None = None,
    ) -> CheckResult:
        """Run one iteration and return its check.

        Without ``connection`` a connection is opened for this iteration only.
        The inter-iteration delay runs before returning and ends early when
        ``cancel`` is set.
        """
        identifier = sample_identifier(template, self._rng)
        payload = build_payload(template, iteration, identifier)

        if connection is None:
            with self._transport.open() as scoped:
                result = self._deliver(scoped, payload, iteration, identifier, cancel)
        else:
            result = self._deliver(connection, payload, iteration, identifier, cancel)

        LOGGER.debug(
            "vu=%d iter=%d status=%s passed=%s",
            iteration.vu,
            iteration.index,
            result.status,
            result.passed,
        )
        self._pause(cancel)
        return result

    def _deliver(
        self,
        connection: Connection,
        payload: dict[str, Any],
        iteration: Iteration,
        identifier: str,
        cancel: threading.Event | None,
    ) -> CheckResult:
        started = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            try:
                response = connection.send(payload)
            except TransportConnectionError as exc:
                if attempt > self._max_retries:
                    return self._failure(
                        iteration, identifier, started, attempt, exc, unreachable=True
                    )
                LOGGER.warning(
                    "vu=%d iter=%d connection failed (attempt %d/%d): %s",
                    iteration.vu,
                    iteration.index,
                    attempt,
                    self._max_retries + 1,
                    exc,
                )
                if self._backoff(attempt, cancel):
                    return self._failure(
                        iteration, identifier, started, attempt, exc, unreachable=True
                    )
            except TransportError as exc:
                return self._failure(iteration, identifier, started, attempt, exc)
            else:
                return self._check(response, iteration, identifier, attempt)

    def _check(
        self,
        response: TransportResponse,
        iteration: Iteration,
        identifier: str,
        attempts: int,
    ) -> CheckResult:
        return CheckResult(
            passed=response.status in self._success_statuses,
            label=self.label,
            vu=iteration.vu,
            iteration=iteration.index,
            status=response.status,
            identifier=identifier,
            latency_s=response.latency_s,
            attempts=attempts,
        )

    def _failure(
        self,
        iteration: Iteration,
        identifier: str,
        started: float,
        attempts: int,
        exc: Exception,
        unreachable: bool = False,
    ) -> CheckResult:
        return CheckResult(
            passed=False,
            label=self.label,
            vu=iteration.vu,
            iteration=iteration.index,
            identifier=identifier,
            latency_s=time.perf_counter() - started,
            attempts=attempts,
            error=str(exc),
            unreachable=unreachable,
        )

    def _backoff(self, attempt: int, cancel: threading.Event | None) -> bool:
        """Wait before the next attempt; returns True when the run was cancelled."""
        delay = self._retry_backoff_s * (2 ** (attempt - 1))
        return _wait(delay, cancel)

    def _pause(self, cancel: threading.Event | None) -> None:
        if self._iteration_delay_s > 0:
            _wait(self._iteration_delay_s, cancel)


def _wait(seconds: float, cancel: threading.Event | None) -> bool:
    if cancel is not None:
        return cancel.wait(timeout=seconds)
    if seconds > 0:
        time.sleep(seconds)
    return False


__all__ = ["CheckResult", "RequestExecutor", "check_label"]
