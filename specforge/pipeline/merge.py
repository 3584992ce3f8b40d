from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from ..domain.models import (
    EdgeCase,
    Feature,
    FunctionalRequirement,
    KeyEntity,
    Specification,
    SuccessCriterion,
    TestSuite,
    UserScenario,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdCounters:
    """Next sequence value per id family."""

    requirement: int = 1
    scenario: int = 1
    criterion: int = 1
    feature: int = 1
    test_case: int = 1


def format_id(prefix: str, number: int) -> str:
    return f"{prefix}-{number:03d}"


class _IdMap:
    def __init__(self, prefix: str, start: int) -> None:
        self.prefix = prefix
        self.next_value = start
        self._by_batch: dict[tuple[int, str], str] = {}
        self._latest: dict[str, str] = {}

    def assign(self, batch_index: int, local_id: str) -> str:
        new_id = format_id(self.prefix, self.next_value)
        self.next_value += 1
        if local_id:
            self._by_batch.setdefault((batch_index, local_id), new_id)
            self._latest[local_id] = new_id
        return new_id

    def resolve(self, batch_index: int, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        return self._by_batch.get((batch_index, ref)) or self._latest.get(ref)


def merge_specifications(
    parts: Sequence[Specification],
    *,
    counters: Optional[IdCounters] = None,
    title: str = "",
) -> tuple[Specification, IdCounters]:
    counters = counters or IdCounters()
    fr_map = _IdMap("FR", counters.requirement)
    us_map = _IdMap("US", counters.scenario)
    sc_map = _IdMap("SC", counters.criterion)

    # Phase 1: every local id gets its global id before any link is rewritten.
    fr_ids = [[fr_map.assign(b, fr.id) for fr in part.functional_requirements] for b, part in enumerate(parts)]
    us_ids = [[us_map.assign(b, us.id) for us in part.user_scenarios] for b, part in enumerate(parts)]
    sc_ids = [[sc_map.assign(b, sc.id) for sc in part.success_criteria] for b, part in enumerate(parts)]

    # Phase 2: rewrite records and their cross-references.
    requirements: list[FunctionalRequirement] = []
    scenarios: list[UserScenario] = []
    criteria: list[SuccessCriterion] = []
    edge_cases: list[EdgeCase] = []
    entities: list[KeyEntity] = []
    entity_names: set[str] = set()
    clarifications = []
    story_ids: list[str] = []
    unresolved = 0

    for b, part in enumerate(parts):
        for fr, new_id in zip(part.functional_requirements, fr_ids[b]):
            parent = fr_map.resolve(b, fr.parent_requirement)
            if fr.parent_requirement and parent is None:
                unresolved += 1
            requirements.append(replace(fr, id=new_id, parent_requirement=parent))
        for us, new_id in zip(part.user_scenarios, us_ids[b]):
            scenarios.append(replace(us, id=new_id, acceptance_scenarios=list(us.acceptance_scenarios)))
        for sc, new_id in zip(part.success_criteria, sc_ids[b]):
            criteria.append(replace(sc, id=new_id))
        for ec in part.edge_cases:
            related = us_map.resolve(b, ec.related_scenario)
            if ec.related_scenario and related is None:
                unresolved += 1
            edge_cases.append(replace(ec, related_scenario=related))
        for entity in part.key_entities:
            name = entity.name.strip().lower()
            if name and name in entity_names:
                continue
            entity_names.add(name)
            entities.append(entity)
        clarifications.extend(part.clarifications)
        for story_id in part.source_story_ids:
            if story_id not in story_ids:
                story_ids.append(story_id)

    if unresolved:
        logger.info("merge: %d cross-reference(s) did not resolve and were cleared", unresolved)

    merged = Specification(
        title=title or next((p.title for p in parts if p.title), ""),
        user_scenarios=scenarios,
        functional_requirements=requirements,
        key_entities=entities,
        edge_cases=edge_cases,
        success_criteria=criteria,
        clarifications=clarifications,
        source_story_ids=story_ids,
    )
    next_counters = replace(
        counters,
        requirement=fr_map.next_value,
        scenario=us_map.next_value,
        criterion=sc_map.next_value,
    )
    return merged, next_counters


def merge_test_suites(
    parts: Sequence[TestSuite],
    *,
    counters: Optional[IdCounters] = None,
    base: Optional[TestSuite] = None,
) -> tuple[TestSuite, IdCounters]:
    counters = counters or IdCounters()
    next_feature = counters.feature
    next_case = counters.test_case
    features: list[Feature] = list(base.features) if base is not None else []

    for part in parts:
        for feature in part.features:
            scenarios = []
            for scenario in feature.scenarios:
                scenarios.append(replace(scenario, id=format_id("TC", next_case)))
                next_case += 1
            features.append(replace(feature, id=format_id("F", next_feature), scenarios=scenarios))
            next_feature += 1

    return TestSuite(features=features), replace(counters, feature=next_feature, test_case=next_case)


__all__ = ["IdCounters", "format_id", "merge_specifications", "merge_test_suites"]
