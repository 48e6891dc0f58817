import threading

import pandas as pd
import pytest

from library_tank.collector import RESULT_COLUMNS, ResultCollector
from library_tank.executor import CheckResult

LABEL = "status is 200 or 201"


def result(passed=True, status=201, vu=1, iteration=0, latency_s=0.01, **kwargs):
    return CheckResult(
        passed=passed,
        label=LABEL,
        vu=vu,
        iteration=iteration,
        status=status,
        identifier="A",
        latency_s=latency_s,
        **kwargs,
    )


def test_concurrent_appends_are_all_kept():
    collector = ResultCollector()

    def worker(vu):
        for index in range(200):
            collector.record(result(vu=vu, iteration=index))

    threads = [threading.Thread(target=worker, args=(vu,)) for vu in range(1, 9)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(collector) == 1600
    assert len({(r.vu, r.iteration) for r in collector.results()}) == 1600


def test_summaries_and_pass_rate():
    collector = ResultCollector()
    collector.record(result())
    collector.record(result(iteration=1))
    collector.record(result(passed=False, status=500, iteration=2))
    collector.record(
        result(passed=False, status=None, iteration=3, error="refused", unreachable=True)
    )

    assert collector.summaries() == {LABEL: {"passed": 2, "failed": 2}}
    assert collector.pass_rate() == pytest.approx(0.5)
    assert collector.status_counts() == {"201": 2, "500": 1, "unreachable": 1}


def test_empty_collector():
    collector = ResultCollector()

    assert collector.pass_rate() == 0.0
    assert collector.summaries() == {}
    assert collector.latency_summary() == {}
    df = collector.build_dataframe()
    assert df.empty
    assert list(df.columns) == RESULT_COLUMNS


def test_closed_collector_drops_late_results():
    collector = ResultCollector()
    assert collector.record(result()) is True
    collector.close()

    assert collector.record(result(iteration=1)) is False
    assert len(collector) == 1
    assert collector.dropped == 1


def test_listeners_see_every_result_and_failures_are_isolated():
    seen = []

    def broken(_result):
        raise RuntimeError("listener down")

    collector = ResultCollector(listeners=[broken, seen.append])
    collector.record(result())
    collector.record(result(iteration=1))

    assert [r.iteration for r in seen] == [0, 1]
    assert len(collector) == 2


def test_latency_summary():
    collector = ResultCollector()
    for index, latency in enumerate([0.1, 0.2, 0.3, 0.4]):
        collector.record(result(iteration=index, latency_s=latency))

    summary = collector.latency_summary()

    assert summary["min"] == pytest.approx(0.1)
    assert summary["max"] == pytest.approx(0.4)
    assert summary["avg"] == pytest.approx(0.25)
    assert summary["med"] == pytest.approx(0.25)


def test_write_csv(tmp_path):
    collector = ResultCollector()
    collector.record(result())
    collector.record(result(passed=False, status=500, iteration=1))

    path = collector.write_csv(tmp_path / "out" / "results.csv")

    df = pd.read_csv(path)
    assert list(df.columns) == RESULT_COLUMNS
    assert df["passed"].tolist() == [True, False]
    assert df["status"].tolist() == [201, 500]
