from __future__ import annotations

import copy
import random
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from .errors import ConfigError


@dataclass(frozen=True)
class Iteration:
    """One pass of a virtual user's loop.

    Virtual user ids start at 1 and iteration indices at 0.
    """

    vu: int
    index: int

    @property
    def key(self) -> str:
        return f"{self.vu}-{self.index}"


@dataclass(frozen=True)
class RequestTemplate:
    """Payload fields plus the pool of identifiers sampled for each request.

    String values (including strings nested in lists) may reference ``{vu}``
    and ``{iter}``; they are substituted per iteration. The sampled identifier
    is written to ``parameter_field`` as a one-element list.
    """

    fields: Mapping[str, Any]
    pool: Sequence[str]
    parameter_field: str = "author_id"

    def __post_init__(self) -> None:
        if isinstance(self.pool, str) or not isinstance(self.pool, Sequence):
            raise ConfigError(f"identifier pool must be a list of strings, got {self.pool!r}")
        if not isinstance(self.fields, Mapping):
            raise ConfigError(f"payload fields must be a mapping, got {self.fields!r}")
        pool = tuple(self.pool)
        if not pool:
            raise ConfigError("identifier pool must not be empty")
        if not all(isinstance(item, str) and item for item in pool):
            raise ConfigError("identifier pool must contain non-empty strings")
        object.__setattr__(self, "pool", pool)
        object.__setattr__(self, "fields", copy.deepcopy(dict(self.fields)))
        if self.parameter_field in self.fields:
            raise ConfigError(
                f"field {self.parameter_field!r} is filled from the identifier pool"
            )
        try:
            _render(self.fields, vu=1, index=0)
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigError(f"invalid payload template: {exc!r}") from exc


def sample_identifier(template: RequestTemplate, rng: random.Random) -> str:
    return rng.choice(template.pool)


def build_payload(
    template: RequestTemplate, iteration: Iteration, identifier: str
) -> dict[str, Any]:
    """Render the payload for ``iteration`` with ``identifier`` as the parameter."""
    payload = _render(template.fields, vu=iteration.vu, index=iteration.index)
    payload[template.parameter_field] = [identifier]
    return payload


def _render(value: Any, vu: int, index: int) -> Any:
    if isinstance(value, str):
        return value.format(vu=vu, iter=index)
    if isinstance(value, Mapping):
        return {key: _render(item, vu, index) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_render(item, vu, index) for item in value]
    return value


__all__ = ["Iteration", "RequestTemplate", "build_payload", "sample_identifier"]
