"""
Annotation stages and their prerequisite graph
"""
from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from nlp_pipeline.exceptions import ConfigurationError


class NlpStage(Enum):
    """Phases of linguistic analysis, in canonical order"""
    SENTENCE = "sentence"
    TOKEN = "token"
    POS = "pos"
    NER = "ner"

    @classmethod
    def parse(cls, value) -> "NlpStage":
        """Accept a stage, its value or its name (case-insensitive)"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for stage in cls:
                if key.lower() == stage.value or key.upper() == stage.name:
                    return stage
        raise ValueError(f"Unknown NLP stage: {value!r}")

    @property
    def order(self) -> int:
        return _STAGE_ORDER[self]


_STAGE_ORDER = {stage: index for index, stage in enumerate(NlpStage)}

# Prerequisites shared by every backend; backends add their own on registration
DEFAULT_STAGE_DEPENDENCIES: Mapping[NlpStage, FrozenSet[NlpStage]] = MappingProxyType({
    NlpStage.SENTENCE: frozenset(),
    NlpStage.TOKEN: frozenset(),
    NlpStage.POS: frozenset({NlpStage.TOKEN}),
    NlpStage.NER: frozenset(),
})


class StageDependencyGraph:
    """
    Immutable prerequisite graph over NlpStage values.

    The graph is checked for cycles when built, which happens once per
    backend at registration time. A cycle is a ConfigurationError.
    """

    def __init__(self, dependencies: Optional[Mapping[NlpStage, Iterable[NlpStage]]] = None,
                 include_defaults: bool = True):
        merged: Dict[NlpStage, set] = {stage: set() for stage in NlpStage}
        if include_defaults:
            for stage, prerequisites in DEFAULT_STAGE_DEPENDENCIES.items():
                merged[stage].update(prerequisites)

        for stage, prerequisites in (dependencies or {}).items():
            stage = self._check_stage(stage)
            for prerequisite in prerequisites:
                prerequisite = self._check_stage(prerequisite)
                if prerequisite == stage:
                    raise ConfigurationError(f"Stage {stage.name} cannot depend on itself")
                merged[stage].add(prerequisite)

        self._dependencies: Mapping[NlpStage, FrozenSet[NlpStage]] = MappingProxyType(
            {stage: frozenset(prerequisites) for stage, prerequisites in merged.items()}
        )
        self._order = self._topological_order()

    @staticmethod
    def _check_stage(stage) -> NlpStage:
        try:
            return NlpStage.parse(stage)
        except ValueError as e:
            raise ConfigurationError(str(e), original_error=e)

    def _topological_order(self) -> Tuple[NlpStage, ...]:
        """Kahn's algorithm, ties broken by canonical stage order"""
        in_degree = {stage: len(prerequisites) for stage, prerequisites in self._dependencies.items()}
        dependents: Dict[NlpStage, List[NlpStage]] = {stage: [] for stage in NlpStage}
        for stage, prerequisites in self._dependencies.items():
            for prerequisite in prerequisites:
                dependents[prerequisite].append(stage)

        ready = sorted((s for s, degree in in_degree.items() if degree == 0), key=lambda s: s.order)
        order = []
        while ready:
            stage = ready.pop(0)
            order.append(stage)
            for dependent in dependents[stage]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
            ready.sort(key=lambda s: s.order)

        if len(order) != len(self._dependencies):
            cyclic = sorted((s.name for s, degree in in_degree.items() if degree > 0))
            raise ConfigurationError(f"Cyclic stage dependencies between: {', '.join(cyclic)}")
        return tuple(order)

    def prerequisites(self, stage: NlpStage) -> FrozenSet[NlpStage]:
        """Direct prerequisites of a stage"""
        return self._dependencies[stage]

    def closure(self, stage: NlpStage) -> FrozenSet[NlpStage]:
        """Stage plus all transitive prerequisites"""
        seen = set()
        pending = [stage]
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self._dependencies[current])
        return frozenset(seen)

    def resolve(self, target) -> Tuple[NlpStage, ...]:
        """
        Stages to execute for a target stage, prerequisites first.

        The target appears exactly once, as the last element; the ordering is
        the graph-wide topological order restricted to the target's closure,
        so it is the same on every call.
        """
        target = NlpStage.parse(target)
        required = self.closure(target)
        return tuple(stage for stage in self._order if stage in required)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            stage.value: sorted(p.value for p in self._dependencies[stage])
            for stage in self._order
        }

    def __eq__(self, other):
        if not isinstance(other, StageDependencyGraph):
            return NotImplemented
        return dict(self._dependencies) == dict(other._dependencies)

    def __hash__(self):
        return hash(frozenset(self._dependencies.items()))

    def __repr__(self):
        return f"StageDependencyGraph({self.to_dict()})"
