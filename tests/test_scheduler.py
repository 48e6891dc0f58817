import random
import threading
import time

import pytest
from conftest import StubTransport

from library_tank.collector import ResultCollector
from library_tank.config import LoadProfile, RampStrategy
from library_tank.errors import RunAborted, TransportConnectionError
from library_tank.executor import RequestExecutor
from library_tank.scheduler import VirtualUserScheduler
from library_tank.template import RequestTemplate

BOOK = {"name": "book-{vu}-{iter}"}


def make_scheduler(transport, profile, pool=("A",), delay=0.0, **kwargs):
    executor = RequestExecutor(
        transport,
        success_statuses={200, 201},
        rng=random.Random(0),
        iteration_delay_s=delay,
        max_retries=kwargs.pop("max_retries", 0),
        retry_backoff_s=0.0,
    )
    collector = ResultCollector()
    scheduler = VirtualUserScheduler(
        profile=profile,
        template=RequestTemplate(fields=BOOK, pool=list(pool)),
        executor=executor,
        collector=collector,
        **kwargs,
    )
    return scheduler, collector


@pytest.mark.parametrize("vus", [1, 3, 8])
def test_exactly_n_workers_run_concurrently(vus):
    arrived = threading.Barrier(vus, timeout=5)
    leaving = threading.Barrier(vus, timeout=5)
    observed = []
    holder = {}

    def responder(_payload):
        arrived.wait()
        observed.append(holder["scheduler"].active_workers)
        leaving.wait()
        return 201

    scheduler, collector = make_scheduler(
        StubTransport(responder),
        LoadProfile(virtual_users=vus, duration_s=10.0, iterations=1),
    )
    holder["scheduler"] = scheduler

    stats = scheduler.run()

    assert observed == [vus] * vus
    assert stats.peak_workers == vus
    assert stats.iterations == vus
    assert scheduler.active_workers == 0
    assert all(result.passed for result in collector.results())


def test_single_user_single_iteration_scenario(created_transport):
    scheduler, collector = make_scheduler(
        created_transport,
        LoadProfile(virtual_users=1, duration_s=1.0),
        pool=["A"],
        delay=5.0,
    )

    started = time.monotonic()
    stats = scheduler.run()

    assert time.monotonic() - started < 4.0
    results = collector.results()
    assert len(results) == 1
    assert results[0].passed is True
    assert results[0].identifier == "A"
    assert stats.iterations == 1
    assert stats.aborted is False


def test_failed_checks_do_not_stop_the_run(erroring_transport):
    scheduler, collector = make_scheduler(
        erroring_transport,
        LoadProfile(virtual_users=2, duration_s=0.5),
        delay=0.05,
    )

    stats = scheduler.run()

    results = collector.results()
    assert len(results) > 2
    assert not any(result.passed for result in results)
    assert stats.aborted is False
    assert stats.duration_s >= 0.5


def test_iteration_cap_ends_run_early(created_transport):
    scheduler, collector = make_scheduler(
        created_transport,
        LoadProfile(virtual_users=2, duration_s=30.0, iterations=3),
    )

    started = time.monotonic()
    stats = scheduler.run()

    assert time.monotonic() - started < 5.0
    assert stats.iterations == 6
    names = sorted(payload["name"] for payload in created_transport.payloads)
    assert names == ["book-1-0", "book-1-1", "book-1-2", "book-2-0", "book-2-1", "book-2-2"]


def test_each_worker_owns_one_connection(created_transport):
    scheduler, _ = make_scheduler(
        created_transport,
        LoadProfile(virtual_users=4, duration_s=10.0, iterations=5),
    )

    scheduler.run()

    assert created_transport.opened == 4
    assert created_transport.closed == 4


def test_stop_cancels_promptly(created_transport):
    scheduler, collector = make_scheduler(
        created_transport,
        LoadProfile(virtual_users=3, duration_s=60.0),
        delay=1.0,
    )
    threading.Timer(0.2, scheduler.stop).start()

    started = time.monotonic()
    stats = scheduler.run()

    assert time.monotonic() - started < 5.0
    assert stats.aborted is False
    assert collector.closed


def test_ramping_staggers_worker_starts(created_transport):
    scheduler, collector = make_scheduler(
        created_transport,
        LoadProfile(
            virtual_users=3,
            duration_s=10.0,
            ramp=RampStrategy.RAMPING,
            ramp_up_s=0.6,
            iterations=1,
        ),
    )

    scheduler.run()

    by_vu = {result.vu: result.timestamp for result in collector.results()}
    assert sorted(by_vu) == [1, 2, 3]
    assert by_vu[3] - by_vu[1] >= 0.3


def test_unreachable_target_fails_iterations_without_abort():
    transport = StubTransport(lambda _payload: TransportConnectionError("refused"))
    scheduler, collector = make_scheduler(
        transport,
        LoadProfile(virtual_users=1, duration_s=10.0, iterations=4),
        max_retries=1,
    )

    stats = scheduler.run()

    results = collector.results()
    assert len(results) == 4
    assert all(result.unreachable and not result.passed for result in results)
    assert stats.aborted is False


def test_consecutive_unreachable_iterations_abort_run():
    transport = StubTransport(lambda _payload: TransportConnectionError("refused"))
    scheduler, collector = make_scheduler(
        transport,
        LoadProfile(virtual_users=2, duration_s=30.0),
        abort_after_failures=3,
    )

    started = time.monotonic()
    with pytest.raises(RunAborted, match="unreachable"):
        scheduler.run()

    assert time.monotonic() - started < 5.0
    assert len(collector) >= 3


def test_in_flight_iterations_are_abandoned_after_grace_period():
    release = threading.Event()

    def responder(_payload):
        release.wait(timeout=10)
        return 201

    scheduler, collector = make_scheduler(
        StubTransport(responder),
        LoadProfile(virtual_users=1, duration_s=0.2),
        grace_period_s=0.1,
    )

    try:
        stats = scheduler.run()
        assert stats.abandoned_workers == 1
        assert collector.closed
        assert len(collector) == 0
    finally:
        release.set()


def test_worker_crash_aborts_run():
    def responder(_payload):
        raise RuntimeError("boom")

    scheduler, _ = make_scheduler(
        StubTransport(responder),
        LoadProfile(virtual_users=1, duration_s=10.0),
    )

    with pytest.raises(RunAborted, match="boom"):
        scheduler.run()
