from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from .collector import ResultCollector
from .config import LoadProfile
from .errors import RunAborted
from .executor import CheckResult, RequestExecutor
from .template import Iteration, RequestTemplate

LOGGER = logging.getLogger("library_tank.scheduler")

POLL_INTERVAL_S = 0.05


@dataclass
class RunStatistics:
    iterations: int
    started_at: float
    finished_at: float
    virtual_users: int
    peak_workers: int
    abandoned_workers: int = 0
    aborted: bool = False

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def iterations_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.iterations / self.duration_s


class VirtualUserScheduler:
    """Runs one worker thread per virtual user until the profile's duration elapses."""

    def __init__(
        self,
        profile: LoadProfile,
        template: RequestTemplate,
        executor: RequestExecutor,
        collector: ResultCollector,
        grace_period_s: float = 5.0,
        abort_after_failures: int | None = None,
    ) -> None:
        self._profile = profile
        self._template = template
        self._executor = executor
        self._collector = collector
        self._grace_period_s = grace_period_s
        self._abort_after_failures = abort_after_failures

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0
        self._running = 0
        self._iterations = 0
        self._consecutive_unreachable = 0
        self._abort_reason: str | None = None
        self._worker_errors: list[BaseException] = []

    @property
    def active_workers(self) -> int:
        with self._lock:
            return self._active

    @property
    def peak_workers(self) -> int:
        with self._lock:
            return self._peak

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> RunStatistics:
        profile = self._profile
        LOGGER.info(
            "Starting %d virtual user(s) for %.2fs (ramp=%s) against %s",
            profile.virtual_users,
            profile.duration_s,
            profile.ramp.value,
            self._executor.transport.describe(),
        )
        started_at = time.time()
        deadline = time.monotonic() + profile.duration_s
        with self._lock:
            self._running = profile.virtual_users

        threads = []
        for vu in range(1, profile.virtual_users + 1):
            thread = threading.Thread(
                target=self._worker, args=(vu,), name=f"vu-{vu}", daemon=True
            )
            thread.start()
            threads.append(thread)

        try:
            self._wait_until(deadline)
        except KeyboardInterrupt:
            LOGGER.info("Interrupted, stopping virtual users")
        finally:
            self._stop_event.set()

        abandoned = self._join(threads)
        self._collector.close()
        finished_at = time.time()

        with self._lock:
            stats = RunStatistics(
                iterations=self._iterations,
                started_at=started_at,
                finished_at=finished_at,
                virtual_users=profile.virtual_users,
                peak_workers=self._peak,
                abandoned_workers=abandoned,
                aborted=self._abort_reason is not None,
            )
            abort_reason = self._abort_reason
            worker_errors = list(self._worker_errors)

        LOGGER.info(
            "Run finished: %d iteration(s) in %.2fs (%.2f it/s)",
            stats.iterations,
            stats.duration_s,
            stats.iterations_per_second,
        )
        if worker_errors:
            raise RunAborted(f"virtual user failed: {worker_errors[0]!r}") from worker_errors[0]
        if abort_reason is not None:
            raise RunAborted(abort_reason)
        return stats

    def _wait_until(self, deadline: float) -> None:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            with self._lock:
                if self._running == 0:
                    return
            if self._stop_event.wait(timeout=min(remaining, POLL_INTERVAL_S)):
                return

    def _join(self, threads: list[threading.Thread]) -> int:
        grace_deadline = time.monotonic() + self._grace_period_s
        for thread in threads:
            thread.join(timeout=max(grace_deadline - time.monotonic(), 0.0))
        abandoned = sum(1 for thread in threads if thread.is_alive())
        if abandoned:
            LOGGER.warning(
                "Abandoning %d virtual user(s) still in flight after %.2fs grace period",
                abandoned,
                self._grace_period_s,
            )
        return abandoned

    def _worker(self, vu: int) -> None:
        try:
            offset = self._profile.start_offset(vu)
            if offset > 0 and self._stop_event.wait(timeout=offset):
                return
            with self._lock:
                self._active += 1
                self._peak = max(self._peak, self._active)
            try:
                self._loop(vu)
            finally:
                with self._lock:
                    self._active -= 1
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("virtual user %d failed", vu)
            with self._lock:
                self._worker_errors.append(exc)
            self._stop_event.set()
        finally:
            with self._lock:
                self._running -= 1

    def _loop(self, vu: int) -> None:
        cap = self._profile.iterations
        with self._executor.transport.open() as connection:
            index = 0
            while not self._stop_event.is_set():
                if cap is not None and index >= cap:
                    return
                result = self._executor.execute(
                    self._template,
                    Iteration(vu=vu, index=index),
                    connection=connection,
                    cancel=self._stop_event,
                )
                if self._collector.record(result):
                    self._track(result)
                index += 1

    def _track(self, result: CheckResult) -> None:
        with self._lock:
            self._iterations += 1
            if self._abort_after_failures is None:
                return
            if not result.unreachable:
                self._consecutive_unreachable = 0
                return
            self._consecutive_unreachable += 1
            if (
                self._consecutive_unreachable < self._abort_after_failures
                or self._abort_reason is not None
            ):
                return
            self._abort_reason = (
                f"target unreachable for {self._consecutive_unreachable} consecutive "
                f"iteration(s): {result.error}"
            )
        LOGGER.error("Aborting run: %s", self._abort_reason)
        self._stop_event.set()


__all__ = ["RunStatistics", "VirtualUserScheduler"]
