from __future__ import annotations

import argparse
import logging
import os
import random
import sys
from typing import Any

from .collector import ResultCollector
from .config import (
    BUILTIN_SCENARIOS,
    PROTOCOLS,
    ScenarioConfig,
    default_scenario,
    load_scenario,
    load_scenario_file,
)
from .errors import ConfigError, RunAborted
from .executor import RequestExecutor
from .publisher import KafkaResultPublisher, ResultPublisherError
from .scheduler import RunStatistics, VirtualUserScheduler
from .transport import Transport, create_transport

LOGGER = logging.getLogger("library_tank")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    env = os.environ
    parser = argparse.ArgumentParser(description="Load generator for the library service")
    parser.add_argument(
        "--scenario",
        choices=sorted(BUILTIN_SCENARIOS),
        default=env.get("TANK_SCENARIO"),
        help="Built-in load shape to start from (default: rest)",
    )
    parser.add_argument(
        "--config",
        default=env.get("TANK_CONFIG"),
        help="JSON file describing the scenario; overrides the built-in scenario",
    )
    parser.add_argument("--protocol", choices=PROTOCOLS, help="Transport to use")
    parser.add_argument(
        "--target",
        default=env.get("TANK_TARGET"),
        help="URL for http, host:port for grpc",
    )
    parser.add_argument("--vus", default=env.get("TANK_VUS"), help="Virtual user count")
    parser.add_argument(
        "--duration",
        default=env.get("TANK_DURATION"),
        help="Run duration, e.g. 10s, 1m30s or plain seconds",
    )
    parser.add_argument("--ramp", choices=("constant", "ramping"), help="Ramp strategy")
    parser.add_argument("--ramp-up", help="Time over which virtual users are started")
    parser.add_argument("--iterations", help="Iteration cap per virtual user")
    parser.add_argument(
        "--author-id",
        action="append",
        dest="author_ids",
        help="Author id to sample from (repeatable); replaces the scenario pool",
    )
    parser.add_argument("--delay", help="Sleep between iterations of a virtual user")
    parser.add_argument("--timeout", help="Per-request timeout")
    parser.add_argument("--retries", help="Connection retries per iteration")
    parser.add_argument("--grace-period", help="Time to wait for in-flight iterations on stop")
    parser.add_argument(
        "--abort-after-failures",
        help="Abort once this many consecutive iterations could not reach the target",
    )
    parser.add_argument(
        "--success-status",
        action="append",
        dest="success_statuses",
        help="Status counted as a passed check (repeatable)",
    )
    parser.add_argument("--seed", type=int, help="Seed for identifier sampling")
    parser.add_argument("--output", help="Write every check result to this CSV file")
    parser.add_argument(
        "--kafka-broker",
        default=env.get("KAFKA_BROKER"),
        help="Publish check results to Kafka through this broker",
    )
    parser.add_argument(
        "--kafka-topic",
        default=env.get("KAFKA_RESULTS_TOPIC", "tank-results"),
        help="Kafka topic for published check results",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when any check failed",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the resolved scenario without sending traffic",
    )
    parser.add_argument(
        "--log-level",
        default=env.get("TANK_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def resolve_scenario(args: argparse.Namespace) -> ScenarioConfig:
    scenario = default_scenario(args.scenario or "rest")
    if args.config:
        scenario = load_scenario_file(args.config, base=scenario)

    overrides: dict[str, Any] = {}
    for option, key in (
        ("protocol", "protocol"),
        ("target", "target"),
        ("vus", "vus"),
        ("duration", "duration"),
        ("ramp", "ramp"),
        ("ramp_up", "ramp_up"),
        ("iterations", "iterations"),
        ("author_ids", "author_ids"),
        ("delay", "delay"),
        ("timeout", "timeout"),
        ("retries", "retries"),
        ("grace_period", "grace_period"),
        ("abort_after_failures", "abort_after_failures"),
        ("seed", "seed"),
    ):
        value = getattr(args, option)
        if value is not None:
            overrides[key] = value
    if args.success_statuses:
        overrides["success_statuses"] = args.success_statuses

    if not overrides:
        return scenario
    return load_scenario(overrides, base=scenario)


def run_scenario(
    scenario: ScenarioConfig,
    collector: ResultCollector | None = None,
    transport: Transport | None = None,
) -> tuple[RunStatistics, ResultCollector]:
    """Drive ``scenario`` to completion and return its statistics and results."""
    collector = collector or ResultCollector()
    executor = RequestExecutor(
        transport=transport or create_transport(scenario),
        success_statuses=scenario.statuses(),
        rng=random.Random(scenario.seed),
        iteration_delay_s=scenario.iteration_delay_s,
        max_retries=scenario.max_retries,
        retry_backoff_s=scenario.retry_backoff_s,
    )
    scheduler = VirtualUserScheduler(
        profile=scenario.profile,
        template=scenario.template,
        executor=executor,
        collector=collector,
        grace_period_s=scenario.grace_period_s,
        abort_after_failures=scenario.abort_after_failures,
    )
    return scheduler.run(), collector


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        scenario = resolve_scenario(args)
    except ConfigError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    if args.dry_run:
        _print_scenario(scenario)
        return EXIT_OK

    collector = ResultCollector()
    publisher: KafkaResultPublisher | None = None
    if args.kafka_broker:
        try:
            publisher = KafkaResultPublisher.connect(
                args.kafka_broker, args.kafka_topic, scenario.name
            )
        except ResultPublisherError:
            LOGGER.exception("failed to initialise Kafka result publisher")
            return EXIT_FAILED
        collector.add_listener(publisher)

    aborted: RunAborted | None = None
    stats: RunStatistics | None = None
    try:
        stats, _ = run_scenario(scenario, collector)
    except RunAborted as exc:
        aborted = exc
    finally:
        if publisher is not None:
            publisher.close()

    if args.output:
        collector.write_csv(args.output)

    _print_summary(scenario, collector, stats)

    if aborted is not None:
        print(f"\nTank status: ABORTED ({aborted})", file=sys.stderr)
        return EXIT_FAILED
    summaries = collector.summaries()
    failed = sum(counts["failed"] for counts in summaries.values())
    if args.strict and (failed or not len(collector)):
        print("\nTank status: FAILED", file=sys.stderr)
        return EXIT_FAILED
    print("\nTank status: OK", file=sys.stderr)
    return EXIT_OK


def main() -> None:
    sys.exit(run())


def _print_scenario(scenario: ScenarioConfig) -> None:
    profile = scenario.profile
    print(f"Scenario: {scenario.name} ({scenario.notes or 'custom'})")
    print(f"  - protocol={scenario.protocol} target={scenario.target}")
    print(
        f"  - vus={profile.virtual_users} duration={profile.duration_s}s "
        f"ramp={profile.ramp.value} ramp_up={profile.ramp_up_s}s "
        f"iterations={profile.iterations or 'unbounded'}"
    )
    print(f"  - author ids: {', '.join(scenario.template.pool)}")
    print(
        f"  - success={sorted(scenario.statuses(), key=str)} delay={scenario.iteration_delay_s}s "
        f"timeout={scenario.timeout_s}s retries={scenario.max_retries}"
    )


def _print_summary(
    scenario: ScenarioConfig,
    collector: ResultCollector,
    stats: RunStatistics | None,
) -> None:
    print(f"Scenario: {scenario.name}")
    if stats is not None:
        print(
            f"  iterations: {stats.iterations} in {stats.duration_s:.2f}s "
            f"({stats.iterations_per_second:.2f}/s), peak vus {stats.peak_workers}"
        )
    print("Checks:")
    for label, counts in sorted(collector.summaries().items()):
        mark = "ok" if counts["failed"] == 0 else "FAIL"
        print(f"  [{mark}] {label}: passed={counts['passed']} failed={counts['failed']}")
    print("Statuses:")
    for status, count in sorted(collector.status_counts().items()):
        print(f"  {status}: {count}")
    latency = collector.latency_summary()
    if latency:
        print(
            "Latency: "
            + " ".join(f"{name}={value * 1000:.1f}ms" for name, value in latency.items())
        )


if __name__ == "__main__":
    main()
