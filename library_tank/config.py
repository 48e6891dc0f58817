from __future__ import annotations

import dataclasses
import enum
import json
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

from .errors import ConfigError
from .template import RequestTemplate

PROTOCOLS: tuple[str, ...] = ("http", "grpc")

DEFAULT_TARGETS: dict[str, str] = {
    "http": "http://localhost:8080/v1/library/book",
    "grpc": "localhost:9090",
}

DEFAULT_SUCCESS_STATUSES: dict[str, frozenset] = {
    "http": frozenset({200, 201}),
    "grpc": frozenset({"OK"}),
}

BOOK_FIELDS: dict[str, Any] = {"name": "book-{vu}-{iter}"}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class RampStrategy(str, enum.Enum):
    CONSTANT = "constant"
    RAMPING = "ramping"


@dataclass(frozen=True)
class LoadProfile:
    """How many virtual users run, for how long, and how they are started."""

    virtual_users: int
    duration_s: float
    ramp: RampStrategy = RampStrategy.CONSTANT
    ramp_up_s: float = 0.0
    iterations: int | None = None

    def start_offset(self, vu: int) -> float:
        """Seconds after the run start at which virtual user ``vu`` begins."""
        if self.ramp is RampStrategy.CONSTANT or self.ramp_up_s <= 0:
            return 0.0
        return (vu - 1) * self.ramp_up_s / self.virtual_users


@dataclass(frozen=True)
class ScenarioConfig:
    """Everything needed to drive one run against the library service."""

    name: str
    protocol: str
    target: str
    profile: LoadProfile
    template: RequestTemplate
    success_statuses: frozenset = frozenset()
    iteration_delay_s: float = 0.1
    timeout_s: float = 10.0
    max_retries: int = 3
    retry_backoff_s: float = 0.1
    grace_period_s: float = 5.0
    abort_after_failures: int | None = None
    seed: int | None = None
    notes: str | None = None

    def statuses(self) -> frozenset:
        return self.success_statuses or DEFAULT_SUCCESS_STATUSES[self.protocol]


def parse_duration(value: Any) -> float:
    """Parse ``10``, ``"2s"``, ``"500ms"`` or ``"1m30s"`` into seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return _finite(float(value), value)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")

    text = value.strip().lower()
    try:
        return _finite(float(text), value)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position == 0 or position != len(text):
        raise ConfigError(f"invalid duration {value!r}")
    return _finite(total, value)


def parse_status(value: Any) -> int | str:
    """Normalise a success status: digits become HTTP codes, names become gRPC codes."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid success status {value!r}")
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"invalid success status {value!r}")
    value = value.strip()
    return int(value) if value.isdigit() else value.upper()


def load_profile(config: Mapping[str, Any]) -> LoadProfile:
    """Validate a raw mapping and turn it into a :class:`LoadProfile`."""
    raw_vus = config.get("vus", config.get("virtual_users"))
    if raw_vus is None:
        raise ConfigError("virtual user count is required")
    virtual_users = _as_int(raw_vus, "virtual user count")
    if virtual_users < 1:
        raise ConfigError(f"virtual user count must be >= 1, got {virtual_users}")

    if config.get("duration") is None:
        raise ConfigError("duration is required")
    duration_s = parse_duration(config["duration"])
    if duration_s <= 0:
        raise ConfigError(f"duration must be positive, got {config['duration']!r}")

    try:
        ramp = RampStrategy(config.get("ramp", RampStrategy.CONSTANT.value))
    except ValueError as exc:
        raise ConfigError(f"unknown ramp strategy {config.get('ramp')!r}") from exc

    ramp_up_s = parse_duration(config.get("ramp_up", 0))
    if ramp_up_s < 0:
        raise ConfigError("ramp_up must not be negative")

    iterations = config.get("iterations")
    if iterations is not None:
        iterations = _as_int(iterations, "iterations")
        if iterations < 1:
            raise ConfigError(f"iterations must be >= 1, got {iterations}")

    return LoadProfile(
        virtual_users=virtual_users,
        duration_s=duration_s,
        ramp=ramp,
        ramp_up_s=ramp_up_s,
        iterations=iterations,
    )


def load_scenario(
    config: Mapping[str, Any], base: ScenarioConfig | None = None
) -> ScenarioConfig:
    """Build a scenario from a raw mapping, filling gaps from ``base``."""
    protocol = config.get("protocol", base.protocol if base else "http")
    if protocol not in PROTOCOLS:
        raise ConfigError(f"unknown protocol {protocol!r}; expected one of {PROTOCOLS}")

    if base is None:
        profile_source: dict[str, Any] = {}
    else:
        profile_source = {
            "vus": base.profile.virtual_users,
            "duration": base.profile.duration_s,
            "ramp": base.profile.ramp.value,
            "ramp_up": base.profile.ramp_up_s,
            "iterations": base.profile.iterations,
        }
    for key in ("vus", "virtual_users", "duration", "ramp", "ramp_up", "iterations"):
        if key in config:
            profile_source["vus" if key == "virtual_users" else key] = config[key]
    profile = load_profile(profile_source)

    pool = config.get("author_ids", config.get("pool"))
    if pool is None:
        if base is None:
            raise ConfigError("an author id pool is required")
        pool = base.template.pool
    fields = config.get("fields", base.template.fields if base else BOOK_FIELDS)
    template = RequestTemplate(fields=fields, pool=pool)

    if "target" in config:
        target = config["target"]
    elif base is not None and base.protocol == protocol:
        target = base.target
    else:
        target = DEFAULT_TARGETS[protocol]

    if "success_statuses" in config:
        raw_statuses = config["success_statuses"]
        if isinstance(raw_statuses, str) or not isinstance(raw_statuses, Sequence):
            raise ConfigError(f"success_statuses must be a list, got {raw_statuses!r}")
        success_statuses = frozenset(parse_status(status) for status in raw_statuses)
    elif base is not None and base.protocol == protocol:
        success_statuses = base.success_statuses
    else:
        success_statuses = frozenset()

    defaults = base or ScenarioConfig(
        name="custom",
        protocol=protocol,
        target=target,
        profile=profile,
        template=template,
    )
    scenario = dataclasses.replace(
        defaults,
        name=config.get("name", defaults.name),
        protocol=protocol,
        target=target,
        profile=profile,
        template=template,
        success_statuses=success_statuses,
        iteration_delay_s=_seconds(config, "delay", defaults.iteration_delay_s),
        timeout_s=_seconds(config, "timeout", defaults.timeout_s),
        max_retries=_as_int(config.get("retries", defaults.max_retries), "retries"),
        retry_backoff_s=_seconds(config, "retry_backoff", defaults.retry_backoff_s),
        grace_period_s=_seconds(config, "grace_period", defaults.grace_period_s),
        abort_after_failures=_optional_int(
            config.get("abort_after_failures", defaults.abort_after_failures),
            "abort_after_failures",
        ),
        seed=config.get("seed", defaults.seed),
    )
    _validate_scenario(scenario)
    return scenario


def load_scenario_file(path: str | Path, base: ScenarioConfig | None = None) -> ScenarioConfig:
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read scenario file {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"scenario file {path} must contain a JSON object")
    return load_scenario(raw, base=base)


def _validate_scenario(scenario: ScenarioConfig) -> None:
    if scenario.iteration_delay_s < 0:
        raise ConfigError("delay must not be negative")
    if scenario.timeout_s <= 0:
        raise ConfigError("timeout must be positive")
    if scenario.max_retries < 0:
        raise ConfigError("retries must not be negative")
    if scenario.grace_period_s < 0:
        raise ConfigError("grace_period must not be negative")
    if scenario.abort_after_failures is not None and scenario.abort_after_failures < 1:
        raise ConfigError("abort_after_failures must be >= 1 when set")


def _seconds(config: Mapping[str, Any], key: str, default: float) -> float:
    if key not in config:
        return default
    return parse_duration(config[key])


def _finite(seconds: float, raw: Any) -> float:
    if not math.isfinite(seconds):
        raise ConfigError(f"invalid duration {raw!r}")
    return seconds


def _optional_int(value: Any, what: str) -> int | None:
    return None if value is None else _as_int(value, what)


def _as_int(value: Any, what: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{what} must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"{what} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{what} must be an integer, got {value!r}") from exc


def _book_template(*author_ids: str) -> RequestTemplate:
    return RequestTemplate(fields=BOOK_FIELDS, pool=author_ids)


BUILTIN_SCENARIOS: dict[str, ScenarioConfig] = {
    "rest": ScenarioConfig(
        name="rest",
        protocol="http",
        target=DEFAULT_TARGETS["http"],
        profile=LoadProfile(virtual_users=100, duration_s=2.0),
        template=_book_template(
            "1430e926-b935-4dd5-b0dc-07b0457149c6",
            "c57ebf06-004b-414e-9f06-76bb3000efc9",
        ),
        notes="Short REST burst against a pair of authors.",
    ),
    "auto": ScenarioConfig(
        name="auto",
        protocol="http",
        target=DEFAULT_TARGETS["http"],
        profile=LoadProfile(virtual_users=300, duration_s=10.0),
        template=_book_template(
            "bd0768a8-6dea-4e78-936c-e4f6d44a94d3",
            "9671ee22-8ab3-4fd2-93f3-2e6e8eb8cbd8",
            "68ce72ad-5e25-4db0-a3ab-3840519ec31e",
            "6541a244-6b43-4d5e-8c12-913b27eebf4e",
            "9f4d696d-daad-4e9a-95b5-9051c5791858",
        ),
        notes="Sustained REST load spread over five authors.",
    ),
    "grpc": ScenarioConfig(
        name="grpc",
        protocol="grpc",
        target=DEFAULT_TARGETS["grpc"],
        profile=LoadProfile(virtual_users=100, duration_s=2.0),
        template=_book_template("0404622f-aa36-481c-b64d-c93f87357ff5"),
        notes="Short gRPC burst against a single author.",
    ),
}


def default_scenario(name: str) -> ScenarioConfig:
    """Return one of the built-in scenarios by name."""
    try:
        return BUILTIN_SCENARIOS[name]
    except KeyError as exc:
        known = ", ".join(sorted(BUILTIN_SCENARIOS))
        raise ConfigError(f"unknown scenario {name!r}; expected one of: {known}") from exc
