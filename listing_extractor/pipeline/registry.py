"""
Step Definition Registry.

A registry is the ordered, declarative list of steps for one entity type.
It is pure configuration: no I/O and no hidden state, so every mapping can be
exercised by feeding it synthetic provider outputs.
"""

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from listing_extractor.core.models import DEPENDENCY_MET, EntityType, Source, StepState, StepStatus
from listing_extractor.pipeline.retry import DEFAULT_RETRY, RetryPolicy

# map(rawOutput, currentDraft) -> fieldPatch
Mapper = Callable[[Any, Mapping[str, Any]], dict[str, Any]]
# build_input(seed, draft, raw_outputs) -> provider payload, or None when there is nothing to fetch
InputBuilder = Callable[[Mapping[str, Any], Mapping[str, Any], Mapping[str, Any]], dict[str, Any] | None]


def seed_input(seed: Mapping[str, Any], draft: Mapping[str, Any], raw: Mapping[str, Any]) -> dict[str, Any]:
    return dict(seed)


@dataclass(frozen=True)
class StepDefinition:
    """
    One unit of provider interaction plus its deterministic mapping.

    `provider=None` marks a local step: its raw output is its own input, so
    the step stays reproducible from stored raw outputs like any other.
    """

    name: str
    display_name: str
    source: Source
    mapper: Mapper
    provider: str | None = None
    build_input: InputBuilder = seed_input
    required: bool = False
    depends_on: frozenset[str] = field(default_factory=frozenset)
    retry: RetryPolicy = DEFAULT_RETRY

    @property
    def is_local(self) -> bool:
        return self.provider is None


def chain(*steps: StepDefinition) -> list[StepDefinition]:
    """Link steps into a strict total order (each depends on its predecessor)."""
    linked: list[StepDefinition] = []
    for step in steps:
        deps = step.depends_on or (frozenset({linked[-1].name}) if linked else frozenset())
        linked.append(replace(step, depends_on=deps))
    return linked


class StepRegistry:
    """Ordered step definitions for one entity type."""

    def __init__(self, entity_type: EntityType, steps: Iterable[StepDefinition]):
        self.entity_type = entity_type
        self.steps: tuple[StepDefinition, ...] = tuple(steps)
        self._by_name: dict[str, StepDefinition] = {}

        for step in self.steps:
            if step.name in self._by_name:
                raise ValueError(f"Duplicate step '{step.name}' in {entity_type.value} registry")
            # Dependencies must be declared earlier, which also rules out cycles
            unknown = step.depends_on - self._by_name.keys()
            if unknown:
                raise ValueError(
                    f"Step '{step.name}' depends on undeclared or later steps: {sorted(unknown)}"
                )
            self._by_name[step.name] = step

        if not any(step.required for step in self.steps):
            raise ValueError(f"{entity_type.value} registry declares no required step")

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> StepDefinition:
        return self._by_name[name]

    def position(self, name: str) -> int:
        """Declaration index of a step; unknown names sort after every declared step."""
        try:
            return self.steps.index(self._by_name[name])
        except KeyError:
            return len(self.steps)

    @property
    def names(self) -> list[str]:
        return [step.name for step in self.steps]

    @property
    def required_names(self) -> list[str]:
        return [step.name for step in self.steps if step.required]

    def ready(self, states: Mapping[str, StepState], exclude: Iterable[str] = ()) -> list[StepDefinition]:
        """
        Steps that may start now: still pending, and every dependency is
        completed or skipped. A dependency that is running, pending or failed
        blocks its dependents.
        """
        excluded = set(exclude)
        ready = []
        for step in self.steps:
            if step.name in excluded:
                continue
            state = states.get(step.name)
            if state is None or state.status != StepStatus.PENDING:
                continue
            if all(
                states.get(dep) is not None and states[dep].status in DEPENDENCY_MET
                for dep in step.depends_on
            ):
                ready.append(step)
        return ready
