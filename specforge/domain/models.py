from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Optional

logger = logging.getLogger(__name__)

PRIORITIES = ("P1", "P2", "P3")
CATEGORIES = ("Functional", "NonFunctional", "Constraint", "Interface")
VERIFICATION_METHODS = ("Test", "Analysis", "Inspection", "Demonstration")
RISK_LEVELS = ("High", "Medium", "Low")
QUALITY_CHARACTERISTICS = (
    "FunctionalSuitability",
    "PerformanceEfficiency",
    "Compatibility",
    "Usability",
    "Reliability",
    "Security",
    "Maintainability",
    "Portability",
)
STEP_KEYWORDS = ("Given", "When", "Then", "And", "But")
SCENARIO_TYPES = ("happy_path", "edge_case", "error_scenario", "boundary_condition")
TEST_LEVELS = ("unit", "integration", "system", "acceptance")
COVERAGE_TECHNIQUES = ("EP", "BVA", "DT", "ST", "EG")


def _norm(raw: Any) -> str:
    return str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")


def _fallback(kind: str, raw: Any, default: str) -> str:
    if str(raw or "").strip():
        logger.warning("unrecognised %s %r, using %s", kind, raw, default)
    return default


def parse_priority(raw: Any) -> str:
    value = _norm(raw)
    if value in {"p1", "must", "high", "critical", "1"}:
        return "P1"
    if value in {"p2", "should", "medium", "2"}:
        return "P2"
    if value in {"p3", "could", "low", "wont", "won't", "3"}:
        return "P3"
    return _fallback("priority", raw, "P3")


def parse_category(raw: Any) -> str:
    value = _norm(raw).replace("_", "")
    if value in {"functional", "fonctionnel", "fr"}:
        return "Functional"
    if value in {"nonfunctional", "nonfonctionnel", "nfr", "quality"}:
        return "NonFunctional"
    if value in {"constraint", "contrainte"}:
        return "Constraint"
    if value in {"interface", "interfaces"}:
        return "Interface"
    return _fallback("category", raw, "Functional")


def parse_verification_method(raw: Any) -> str:
    value = _norm(raw)
    if value in {"test", "testing", ""}:
        return "Test"
    if value in {"analysis", "analyse"}:
        return "Analysis"
    if value in {"inspection", "review"}:
        return "Inspection"
    if value in {"demonstration", "demo"}:
        return "Demonstration"
    return _fallback("verification method", raw, "Test")


def parse_risk_level(raw: Any) -> Optional[str]:
    value = _norm(raw)
    if not value:
        return None
    if value in {"high", "haut", "eleve", "critical"}:
        return "High"
    if value in {"medium", "moyen", "moderate"}:
        return "Medium"
    if value in {"low", "bas", "faible"}:
        return "Low"
    return _fallback("risk level", raw, "Medium")


def parse_quality_characteristic(raw: Any) -> Optional[str]:
    value = _norm(raw).replace("_", "")
    if not value:
        return None
    for name in QUALITY_CHARACTERISTICS:
        if name.lower() == value:
            return name
    aliases = {"performance": "PerformanceEfficiency", "functional": "FunctionalSuitability"}
    if value in aliases:
        return aliases[value]
    return _fallback("quality characteristic", raw, "FunctionalSuitability")


def parse_step_keyword(raw: Any) -> str:
    value = _norm(raw)
    table = {
        "given": "Given",
        "soit": "Given",
        "etant_donne": "Given",
        "when": "When",
        "quand": "When",
        "lorsque": "When",
        "then": "Then",
        "alors": "Then",
        "and": "And",
        "et": "And",
        "but": "But",
        "mais": "But",
    }
    if value in table:
        return table[value]
    return _fallback("step keyword", raw, "And")


def parse_scenario_type(raw: Any) -> str:
    value = _norm(raw)
    compact = value.replace("_", "")
    for name in SCENARIO_TYPES:
        if compact == name.replace("_", ""):
            return name
    if compact in {"error", "negative", "failure"}:
        return "error_scenario"
    if compact in {"boundary", "limit"}:
        return "boundary_condition"
    return _fallback("scenario type", raw, "happy_path")


def parse_test_level(raw: Any) -> str:
    value = _norm(raw)
    if value in TEST_LEVELS:
        return value
    return _fallback("test level", raw, "acceptance")


def parse_coverage_technique(raw: Any) -> str:
    value = str(raw or "").strip().upper()
    aliases = {
        "EQUIVALENCE_PARTITIONING": "EP",
        "BOUNDARY_VALUE_ANALYSIS": "BVA",
        "DECISION_TABLE": "DT",
        "STATE_TRANSITION": "ST",
        "ERROR_GUESSING": "EG",
    }
    value = aliases.get(value.replace(" ", "_").replace("-", "_"), value)
    if value in COVERAGE_TECHNIQUES:
        return value
    return _fallback("coverage technique", raw, "EP")


def _text(obj: dict[str, Any], key: str, default: str = "") -> str:
    value = obj.get(key)
    return default if value is None else str(value).strip()


def _opt_text(obj: dict[str, Any], key: str) -> Optional[str]:
    value = _text(obj, key)
    return value or None


def _text_list(raw: Any) -> list[str]:
    if isinstance(raw, str):
        return [raw.strip()] if raw.strip() else []
    if not isinstance(raw, list):
        return []
    return [str(v).strip() for v in raw if str(v).strip()]


def _objects(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [v for v in raw if isinstance(v, dict)]


def _require_mapping(obj: Any, what: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise TypeError(f"{what} must be an object")
    return obj


@dataclass
class UserStory:
    external_id: str
    title: str
    actor: str = ""
    action: str = ""
    benefit: str = ""
    priority: str = "P3"
    acceptance_criteria: list[str] = field(default_factory=list)
    raw_text: str = ""
    tags: list[str] = field(default_factory=list)
    stakeholder: Optional[str] = None

    @classmethod
    def from_obj(cls, obj: Any) -> "UserStory":
        obj = _require_mapping(obj, "user story")
        external_id = _text(obj, "external_id") or _text(obj, "id")
        if not external_id:
            raise ValueError("missing external_id")
        return cls(
            external_id=external_id,
            title=_text(obj, "title") or external_id,
            actor=_text(obj, "actor"),
            action=_text(obj, "action"),
            benefit=_text(obj, "benefit"),
            priority=parse_priority(obj.get("priority")),
            acceptance_criteria=_text_list(obj.get("acceptance_criteria")),
            raw_text=_text(obj, "raw_text"),
            tags=_text_list(obj.get("tags")),
            stakeholder=_opt_text(obj, "stakeholder"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FunctionalRequirement:
    id: str
    statement: str
    priority: str = "P3"
    category: str = "Functional"
    testable: bool = True
    rationale: Optional[str] = None
    source: Optional[str] = None
    verification_method: str = "Test"
    risk_level: Optional[str] = None
    parent_requirement: Optional[str] = None
    allocated_to: list[str] = field(default_factory=list)
    quality_characteristic: Optional[str] = None

    @classmethod
    def from_obj(cls, obj: Any) -> "FunctionalRequirement":
        obj = _require_mapping(obj, "functional requirement")
        testable = obj.get("testable")
        return cls(
            id=_text(obj, "id"),
            statement=_text(obj, "statement"),
            priority=parse_priority(obj.get("priority")),
            category=parse_category(obj.get("category") or "Functional"),
            testable=True if testable is None else bool(testable),
            rationale=_opt_text(obj, "rationale"),
            source=_opt_text(obj, "source"),
            verification_method=parse_verification_method(obj.get("verification_method")),
            risk_level=parse_risk_level(obj.get("risk_level")),
            parent_requirement=_opt_text(obj, "parent_requirement"),
            allocated_to=_text_list(obj.get("allocated_to")),
            quality_characteristic=parse_quality_characteristic(obj.get("quality_characteristic")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AcceptanceScenario:
    given: str = ""
    when: str = ""
    then: str = ""

    @classmethod
    def from_obj(cls, obj: Any) -> "AcceptanceScenario":
        obj = _require_mapping(obj, "acceptance scenario")
        return cls(given=_text(obj, "given"), when=_text(obj, "when"), then=_text(obj, "then"))


@dataclass
class UserScenario:
    id: str
    title: str
    priority: str = "P3"
    description: str = ""
    why_priority: str = ""
    independent_test: str = ""
    acceptance_scenarios: list[AcceptanceScenario] = field(default_factory=list)

    @classmethod
    def from_obj(cls, obj: Any) -> "UserScenario":
        obj = _require_mapping(obj, "user scenario")
        return cls(
            id=_text(obj, "id"),
            title=_text(obj, "title"),
            priority=parse_priority(obj.get("priority")),
            description=_text(obj, "description"),
            why_priority=_text(obj, "why_priority"),
            independent_test=_text(obj, "independent_test"),
            acceptance_scenarios=[AcceptanceScenario.from_obj(a) for a in _objects(obj.get("acceptance_scenarios"))],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EdgeCase:
    description: str
    related_scenario: Optional[str] = None
    severity: str = "P2"

    @classmethod
    def from_obj(cls, obj: Any) -> "EdgeCase":
        obj = _require_mapping(obj, "edge case")
        return cls(
            description=_text(obj, "description"),
            related_scenario=_opt_text(obj, "related_scenario"),
            severity=parse_priority(obj.get("severity") or "P2"),
        )


@dataclass
class SuccessCriterion:
    id: str
    description: str = ""
    measurable_metric: str = ""

    @classmethod
    def from_obj(cls, obj: Any) -> "SuccessCriterion":
        obj = _require_mapping(obj, "success criterion")
        return cls(
            id=_text(obj, "id"),
            description=_text(obj, "description"),
            measurable_metric=_text(obj, "measurable_metric"),
        )


@dataclass
class KeyEntity:
    name: str
    description: str = ""
    attributes: list[str] = field(default_factory=list)
    relationships: list[str] = field(default_factory=list)

    @classmethod
    def from_obj(cls, obj: Any) -> "KeyEntity":
        obj = _require_mapping(obj, "key entity")
        return cls(
            name=_text(obj, "name"),
            description=_text(obj, "description"),
            attributes=_text_list(obj.get("attributes")),
            relationships=_text_list(obj.get("relationships")),
        )


@dataclass
class Clarification:
    question: str
    context: str = ""
    suggested_options: list[str] = field(default_factory=list)
    impact: str = ""

    @classmethod
    def from_obj(cls, obj: Any) -> "Clarification":
        obj = _require_mapping(obj, "clarification")
        return cls(
            question=_text(obj, "question"),
            context=_text(obj, "context"),
            suggested_options=_text_list(obj.get("suggested_options")),
            impact=_text(obj, "impact"),
        )


@dataclass
class Specification:
    title: str = ""
    user_scenarios: list[UserScenario] = field(default_factory=list)
    functional_requirements: list[FunctionalRequirement] = field(default_factory=list)
    key_entities: list[KeyEntity] = field(default_factory=list)
    edge_cases: list[EdgeCase] = field(default_factory=list)
    success_criteria: list[SuccessCriterion] = field(default_factory=list)
    clarifications: list[Clarification] = field(default_factory=list)
    source_story_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_obj(cls, obj: Any) -> "Specification":
        obj = _require_mapping(obj, "specification")
        clarifications_raw = obj.get("clarifications")
        if clarifications_raw is None:
            clarifications_raw = obj.get("clarifications_needed")
        return cls(
            title=_text(obj, "title"),
            user_scenarios=[UserScenario.from_obj(v) for v in _objects(obj.get("user_scenarios"))],
            functional_requirements=[
                FunctionalRequirement.from_obj(v) for v in _objects(obj.get("functional_requirements"))
            ],
            key_entities=[KeyEntity.from_obj(v) for v in _objects(obj.get("key_entities"))],
            edge_cases=[EdgeCase.from_obj(v) for v in _objects(obj.get("edge_cases"))],
            success_criteria=[SuccessCriterion.from_obj(v) for v in _objects(obj.get("success_criteria"))],
            clarifications=[Clarification.from_obj(v) for v in _objects(clarifications_raw)],
            source_story_ids=_text_list(obj.get("source_story_ids")),
        )

    def requirement_ids(self) -> list[str]:
        return [fr.id for fr in self.functional_requirements]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Step:
    keyword: str
    text: str
    doc_string: Optional[str] = None
    data_table: Optional[list[list[str]]] = None

    @classmethod
    def from_obj(cls, obj: Any) -> "Step":
        obj = _require_mapping(obj, "step")
        table_raw = obj.get("data_table")
        data_table = None
        if isinstance(table_raw, list):
            data_table = [[str(c) for c in row] for row in table_raw if isinstance(row, list)]
        return cls(
            keyword=parse_step_keyword(obj.get("keyword")),
            text=_text(obj, "text"),
            doc_string=_opt_text(obj, "doc_string"),
            data_table=data_table,
        )


@dataclass
class Scenario:
    name: str
    id: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    scenario_type: str = "happy_path"
    steps: list[Step] = field(default_factory=list)
    examples: Optional[dict[str, Any]] = None
    test_data_suggestions: list[str] = field(default_factory=list)
    verification_of: list[str] = field(default_factory=list)
    coverage_technique: str = "EP"

    @classmethod
    def from_obj(cls, obj: Any) -> "Scenario":
        obj = _require_mapping(obj, "scenario")
        examples = obj.get("examples")
        return cls(
            name=_text(obj, "name"),
            id=_opt_text(obj, "id"),
            tags=_text_list(obj.get("tags")),
            scenario_type=parse_scenario_type(obj.get("scenario_type") or "happy_path"),
            steps=[Step.from_obj(s) for s in _objects(obj.get("steps"))],
            examples=examples if isinstance(examples, dict) else None,
            test_data_suggestions=_text_list(obj.get("test_data_suggestions")),
            verification_of=_text_list(obj.get("verification_of")),
            coverage_technique=parse_coverage_technique(obj.get("coverage_technique") or "EP"),
        )

    def tag_ids(self) -> set[str]:
        return {t[1:] if t.startswith("@") else t for t in self.tags}


@dataclass
class Feature:
    name: str
    id: Optional[str] = None
    description: str = ""
    tags: list[str] = field(default_factory=list)
    background: Optional[list[Step]] = None
    scenarios: list[Scenario] = field(default_factory=list)
    source_scenario_ids: list[str] = field(default_factory=list)
    covered_requirements: list[str] = field(default_factory=list)
    test_level: str = "acceptance"

    @classmethod
    def from_obj(cls, obj: Any) -> "Feature":
        obj = _require_mapping(obj, "feature")
        background_raw = obj.get("background")
        if isinstance(background_raw, dict):
            background_raw = background_raw.get("steps")
        background = [Step.from_obj(s) for s in _objects(background_raw)] or None
        return cls(
            name=_text(obj, "name"),
            id=_opt_text(obj, "id"),
            description=_text(obj, "description"),
            tags=_text_list(obj.get("tags")),
            background=background,
            scenarios=[Scenario.from_obj(s) for s in _objects(obj.get("scenarios"))],
            source_scenario_ids=_text_list(obj.get("source_scenario_ids")),
            covered_requirements=_text_list(obj.get("covered_requirements")),
            test_level=parse_test_level(obj.get("test_level") or "acceptance"),
        )


@dataclass
class TestSuite:
    __test__ = False  # not a pytest class

    features: list[Feature] = field(default_factory=list)

    @classmethod
    def from_obj(cls, obj: Any) -> "TestSuite":
        obj = _require_mapping(obj, "test suite")
        return cls(features=[Feature.from_obj(f) for f in _objects(obj.get("features"))])

    def iter_scenarios(self) -> Iterable[Scenario]:
        for feature in self.features:
            yield from feature.scenarios

    @property
    def total_scenarios(self) -> int:
        return sum(len(f.scenarios) for f in self.features)

    def covered_requirement_ids(self) -> set[str]:
        covered: set[str] = set()
        for feature in self.features:
            covered.update(feature.covered_requirements)
            for scenario in feature.scenarios:
                covered.update(scenario.verification_of)
        return covered

    def scenarios_by_type(self) -> dict[str, int]:
        counts = {name: 0 for name in SCENARIO_TYPES}
        for scenario in self.iter_scenarios():
            counts[scenario.scenario_type] = counts.get(scenario.scenario_type, 0) + 1
        return counts

    def coverage(self, requirement_ids: Iterable[str]) -> dict[str, Any]:
        known = list(dict.fromkeys(requirement_ids))
        covered = sorted(self.covered_requirement_ids() & set(known))
        pct = (len(covered) / len(known) * 100.0) if known else 0.0
        return {
            "requirements_covered": covered,
            "requirements_total": len(known),
            "coverage_percentage": round(pct, 2),
            "scenarios_by_type": self.scenarios_by_type(),
            "total_scenarios": self.total_scenarios,
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = [
    "AcceptanceScenario",
    "CATEGORIES",
    "Clarification",
    "EdgeCase",
    "Feature",
    "FunctionalRequirement",
    "KeyEntity",
    "PRIORITIES",
    "Scenario",
    "Specification",
    "Step",
    "SuccessCriterion",
    "TestSuite",
    "UserScenario",
    "UserStory",
    "parse_category",
    "parse_coverage_technique",
    "parse_priority",
    "parse_quality_characteristic",
    "parse_risk_level",
    "parse_scenario_type",
    "parse_step_keyword",
    "parse_test_level",
    "parse_verification_method",
]
