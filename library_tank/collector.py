from __future__ import annotations

import collections
import logging
import threading
from pathlib import Path
from typing import Callable, Iterable

import pandas as pd

from .executor import CheckResult

LOGGER = logging.getLogger("library_tank.collector")

RESULT_COLUMNS: list[str] = [
    "passed",
    "label",
    "vu",
    "iteration",
    "status",
    "identifier",
    "latency_s",
    "attempts",
    "error",
    "unreachable",
    "timestamp",
]

ResultListener = Callable[[CheckResult], None]


class ResultCollector:
    """Append-only, thread-safe sink for the check results of one run."""

    def __init__(self, listeners: Iterable[ResultListener] = ()) -> None:
        self._lock = threading.Lock()
        self._results: list[CheckResult] = []
        self._listeners = list(listeners)
        self._closed = False
        self._dropped = 0

    def add_listener(self, listener: ResultListener) -> None:
        self._listeners.append(listener)

    def record(self, result: CheckResult) -> bool:
        """Store ``result``; returns False when the collector is already closed."""
        with self._lock:
            if self._closed:
                self._dropped += 1
                return False
            self._results.append(result)

        for listener in self._listeners:
            try:
                listener(result)
            except Exception:  # noqa: BLE001
                LOGGER.exception("result listener failed")
        return True

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    def results(self) -> list[CheckResult]:
        with self._lock:
            return list(self._results)

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def summaries(self) -> dict[str, dict[str, int]]:
        counts: dict[str, collections.Counter[str]] = collections.defaultdict(collections.Counter)
        for result in self.results():
            counts[result.label]["passed" if result.passed else "failed"] += 1
        return {
            label: {"passed": counter["passed"], "failed": counter["failed"]}
            for label, counter in counts.items()
        }

    def status_counts(self) -> dict[str, int]:
        counter = collections.Counter(
            "unreachable" if result.unreachable else str(result.status)
            for result in self.results()
        )
        return dict(counter)

    def pass_rate(self) -> float:
        results = self.results()
        if not results:
            return 0.0
        return sum(1 for result in results if result.passed) / len(results)

    def build_dataframe(self) -> pd.DataFrame:
        rows = [result.to_dict() for result in self.results()]
        if not rows:
            return pd.DataFrame(columns=RESULT_COLUMNS)
        return pd.DataFrame(rows, columns=RESULT_COLUMNS)

    def latency_summary(self) -> dict[str, float]:
        df = self.build_dataframe()
        latencies = pd.to_numeric(df["latency_s"], errors="coerce").dropna()
        if latencies.empty:
            return {}
        return {
            "min": float(latencies.min()),
            "avg": float(latencies.mean()),
            "med": float(latencies.median()),
            "p90": float(latencies.quantile(0.90)),
            "p95": float(latencies.quantile(0.95)),
            "max": float(latencies.max()),
        }

    def write_csv(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        df = self.build_dataframe()
        df.to_csv(path, index=False)
        LOGGER.info("Saved %d check results to %s", len(df), path)
        return path


__all__ = ["RESULT_COLUMNS", "ResultCollector", "ResultListener"]
