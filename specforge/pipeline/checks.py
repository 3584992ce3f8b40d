from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Any

from ..domain.models import Specification, TestSuite

NORMATIVE_KEYWORDS = ("MUST", "SHOULD", "COULD", "SHALL", "WILL", "DOIT", "DEVRAIT", "POURRAIT")

AMBIGUOUS_WORDS = (
    "environ",
    "quelques",
    "peut-etre",
    "certains",
    "parfois",
    "souvent",
    "approximativement",
    "approximately",
    "some",
    "maybe",
    "sometimes",
    "usually",
    "often",
    "few",
    "several",
    "many",
    "etc",
    "adequate",
    "as appropriate",
)


@dataclass(frozen=True)
class CheckWarning:
    rule: str
    element_id: str
    severity: str  # "error" | "warning" | "info"
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def contains_word(text: str, word: str) -> bool:
    if " " in word:
        return word in text
    return re.search(rf"(?<![A-Za-z0-9]){re.escape(word)}(?![A-Za-z0-9])", text) is not None


def has_normative_keyword(statement: str) -> bool:
    upper = statement.upper()
    return any(contains_word(upper, kw) for kw in NORMATIVE_KEYWORDS)


def ambiguous_words(statement: str) -> list[str]:
    lower = statement.lower()
    return [w for w in AMBIGUOUS_WORDS if contains_word(lower, w)]


def check_specification(spec: Specification) -> list[CheckWarning]:
    warnings: list[CheckWarning] = []

    seen: set[str] = set()
    for fr in spec.functional_requirements:
        if fr.id in seen:
            warnings.append(CheckWarning("ISO-29148-ID-UNIQUE", fr.id, "error", f"duplicate id: {fr.id}"))
        seen.add(fr.id)

    for fr in spec.functional_requirements:
        if not fr.statement.strip():
            warnings.append(CheckWarning("ISO-29148-COMPLETE", fr.id, "error", f"{fr.id}: empty statement"))
        elif not has_normative_keyword(fr.statement):
            warnings.append(
                CheckWarning("ISO-29148-NORMATIVE", fr.id, "warning", f"{fr.id}: no normative keyword (MUST/SHOULD/COULD)")
            )
        for word in ambiguous_words(fr.statement):
            warnings.append(
                CheckWarning("ISO-29148-UNAMBIGUOUS", fr.id, "warning", f'{fr.id}: ambiguous word "{word}"')
            )
        if not fr.id.startswith("FR-"):
            warnings.append(CheckWarning("ISO-29148-CONFORMING", fr.id, "warning", f"{fr.id}: id is not FR-NNN"))
        if fr.priority == "P1" and fr.risk_level is None:
            warnings.append(CheckWarning("ISO-29148-RISK", fr.id, "info", f"{fr.id}: P1 requirement without risk level"))
        if fr.category == "NonFunctional" and fr.quality_characteristic is None:
            warnings.append(
                CheckWarning(
                    "ISO-25010-NFR", fr.id, "info", f"{fr.id}: non-functional requirement without quality characteristic"
                )
            )

    for us in spec.user_scenarios:
        for index, ac in enumerate(us.acceptance_scenarios, 1):
            if not (ac.given.strip() and ac.when.strip() and ac.then.strip()):
                warnings.append(
                    CheckWarning(
                        "ISO-29148-TESTABLE",
                        us.id,
                        "warning",
                        f"{us.id}: acceptance scenario {index} is missing given/when/then",
                    )
                )
    return warnings


def check_test_suite(suite: TestSuite, spec: Specification) -> list[CheckWarning]:
    warnings: list[CheckWarning] = []
    known = spec.requirement_ids()
    known_set = set(known)
    covered = suite.covered_requirement_ids()

    for fr_id in known:
        if fr_id not in covered:
            warnings.append(CheckWarning("ISO-29119-COVERAGE", fr_id, "warning", f"{fr_id}: not covered by any test"))

    scenarios = list(suite.iter_scenarios())
    for fr in spec.functional_requirements:
        if fr.priority != "P1":
            continue
        count = sum(1 for s in scenarios if fr.id in s.verification_of or fr.id in s.tag_ids())
        if count < 2:
            warnings.append(
                CheckWarning(
                    "ISO-29119-P1-DEPTH",
                    fr.id,
                    "info",
                    f"{fr.id}: P1 requirement with only {count} scenario(s), at least 2 recommended",
                )
            )

    for scenario in scenarios:
        name = scenario.id or scenario.name
        if not scenario.verification_of and not any(t.lstrip("@").startswith("FR-") for t in scenario.tags):
            warnings.append(
                CheckWarning("ISO-29119-TRACEABILITY", name, "info", f'scenario "{scenario.name}" has no requirement link')
            )
        for ref in scenario.verification_of:
            if ref not in known_set:
                warnings.append(
                    CheckWarning(
                        "ISO-29119-REF-VALID",
                        name,
                        "warning",
                        f'scenario "{scenario.name}" references unknown requirement {ref}',
                    )
                )
    return warnings


__all__ = [
    "AMBIGUOUS_WORDS",
    "CheckWarning",
    "NORMATIVE_KEYWORDS",
    "ambiguous_words",
    "check_specification",
    "check_test_suite",
    "contains_word",
    "has_normative_keyword",
]
