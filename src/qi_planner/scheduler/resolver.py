from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Protocol, TypeVar

logger = logging.getLogger(__name__)


class Orderable(Protocol):
    artifact_id: str
    dependencies: tuple[str, ...]
    priority: int


T = TypeVar("T", bound=Orderable)


@dataclass(frozen=True)
class ResolveOutcome(Generic[T]):
    ordered: list[T]
    # Items appended by the fallback drain, in the order they were drained.
    forced: list[T] = field(default_factory=list)
    # (artifact_id, dependency_id) pairs whose dependency is absent from the input.
    dangling: list[tuple[str, str]] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.forced)

    def warnings(self) -> list[str]:
        out: list[str] = []
        for aid, dep in self.dangling:
            out.append(f"{aid} depends on {dep} which is not in the package")
        if self.forced:
            ids = ", ".join(str(a.artifact_id) for a in self.forced)
            out.append(f"dependency order could not be resolved; appended in input order: {ids}")
        return out


def _priority(item: Any) -> int:
    p = getattr(item, "priority", None)
    return int(p) if isinstance(p, int) else 0


def _deps(item: Any) -> tuple[str, ...]:
    return tuple(getattr(item, "dependencies", None) or ())


def resolve_order(items: Iterable[T]) -> ResolveOutcome[T]:
    """Order items so that every dependency present in the input precedes its dependants.

    Each pass emits every remaining item whose dependencies have all been
    emitted, sorted by ascending priority (stable, so input order breaks ties).
    A pass that finds nothing ready means a cycle or a dangling reference: the
    remaining items are then appended in their current order. The result is
    always a permutation of the input.
    """
    remaining: list[T] = list(items)
    present = {a.artifact_id for a in remaining}
    dangling = [(a.artifact_id, d) for a in remaining for d in _deps(a) if d not in present]

    ordered: list[T] = []
    emitted: set[str] = set()
    while remaining:
        ready = [a for a in remaining if all(d in emitted for d in _deps(a))]
        if not ready:
            forced = list(remaining)
            ordered.extend(forced)
            return ResolveOutcome(ordered=ordered, forced=forced, dangling=dangling)
        ready.sort(key=_priority)
        taken = {id(a) for a in ready}
        remaining = [a for a in remaining if id(a) not in taken]
        for a in ready:
            ordered.append(a)
            emitted.add(a.artifact_id)
    return ResolveOutcome(ordered=ordered, forced=[], dangling=dangling)


def order(items: Iterable[T]) -> list[T]:
    outcome = resolve_order(items)
    if outcome.forced:
        logger.warning(
            "dependency graph has a cycle or dangling reference; %d item(s) appended in input order: %s",
            len(outcome.forced),
            ", ".join(str(a.artifact_id) for a in outcome.forced),
        )
    return outcome.ordered
