from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from ..domain.models import Specification, TestSuite
from .checks import ambiguous_words, has_normative_keyword


class CoverageStatus:
    FULLY_COVERED = "fully_covered"
    PARTIALLY_COVERED = "partially_covered"
    NOT_COVERED = "not_covered"
    VERIFIED_ALTERNATE = "verified_alternate"


def coverage_status(*, priority: str, verification_method: str, covering_count: int) -> str:
    if covering_count == 0:
        if verification_method != "Test":
            return CoverageStatus.VERIFIED_ALTERNATE
        return CoverageStatus.NOT_COVERED
    if priority == "P1" and covering_count < 2:
        return CoverageStatus.PARTIALLY_COVERED
    return CoverageStatus.FULLY_COVERED


@dataclass(frozen=True)
class TraceabilityEntry:
    requirement_id: str
    statement: str
    priority: str
    verification_method: str
    status: str
    covering_scenarios: tuple[str, ...] = ()
    covering_features: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["covering_scenarios"] = list(self.covering_scenarios)
        data["covering_features"] = list(self.covering_features)
        return data


@dataclass(frozen=True)
class TraceabilitySummary:
    total: int
    fully_covered: int
    partially_covered: int
    not_covered: int
    verified_alternate: int
    orphans: int

    @property
    def forward_coverage(self) -> float:
        if self.total == 0:
            return 1.0
        return (self.total - self.not_covered) / self.total

    @property
    def forward_coverage_pct(self) -> float:
        return self.forward_coverage * 100.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["forward_coverage"] = self.forward_coverage
        data["forward_coverage_pct"] = round(self.forward_coverage_pct, 2)
        return data


@dataclass(frozen=True)
class ComplianceNote:
    standard: str
    section: str
    status: str  # "compliant" | "partially_compliant" | "non_compliant"
    details: str


@dataclass
class TraceabilityMatrix:
    entries: list[TraceabilityEntry]
    orphans: list[str]
    summary: TraceabilitySummary
    compliance_notes: list[ComplianceNote] = field(default_factory=list)

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.entries:
            counts[entry.status] = counts.get(entry.status, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "orphans": list(self.orphans),
            "summary": self.summary.to_dict(),
            "compliance_notes": [asdict(n) for n in self.compliance_notes],
        }


def _compliance_notes(spec: Specification, summary: TraceabilitySummary) -> list[ComplianceNote]:
    pct = summary.forward_coverage_pct
    if pct >= 100.0:
        trace_status = "compliant"
    elif pct >= 80.0:
        trace_status = "partially_compliant"
    else:
        trace_status = "non_compliant"

    well_formed = all(
        has_normative_keyword(fr.statement) and not ambiguous_words(fr.statement)
        for fr in spec.functional_requirements
    )
    return [
        ComplianceNote(
            standard="ISO/IEC/IEEE 29148:2018",
            section="6.5 Traceability",
            status=trace_status,
            details=f"forward coverage {pct:.1f}% ({summary.total - summary.not_covered}/{summary.total})",
        ),
        ComplianceNote(
            standard="ISO/IEC/IEEE 29148:2018",
            section="5.2.5 Well-formed requirements",
            status="compliant" if well_formed else "partially_compliant",
            details=f"{summary.total} requirement(s) in the matrix",
        ),
    ]


def build_traceability(spec: Specification, suite: TestSuite) -> TraceabilityMatrix:
    known = set(spec.requirement_ids())
    scenarios = [(s.id or s.name, s) for s in suite.iter_scenarios()]

    entries: list[TraceabilityEntry] = []
    for fr in spec.functional_requirements:
        covering = tuple(
            name for name, s in scenarios if fr.id in s.verification_of or fr.id in s.tag_ids()
        )
        features = tuple(f.id or f.name for f in suite.features if fr.id in f.covered_requirements)
        entries.append(
            TraceabilityEntry(
                requirement_id=fr.id,
                statement=fr.statement,
                priority=fr.priority,
                verification_method=fr.verification_method,
                status=coverage_status(
                    priority=fr.priority,
                    verification_method=fr.verification_method,
                    covering_count=len(covering),
                ),
                covering_scenarios=covering,
                covering_features=features,
            )
        )

    orphans = [name for name, s in scenarios if not s.verification_of and not (s.tag_ids() & known)]

    def count(status: str) -> int:
        return sum(1 for e in entries if e.status == status)

    summary = TraceabilitySummary(
        total=len(entries),
        fully_covered=count(CoverageStatus.FULLY_COVERED),
        partially_covered=count(CoverageStatus.PARTIALLY_COVERED),
        not_covered=count(CoverageStatus.NOT_COVERED),
        verified_alternate=count(CoverageStatus.VERIFIED_ALTERNATE),
        orphans=len(orphans),
    )
    return TraceabilityMatrix(
        entries=entries,
        orphans=orphans,
        summary=summary,
        compliance_notes=_compliance_notes(spec, summary),
    )


__all__ = [
    "ComplianceNote",
    "CoverageStatus",
    "TraceabilityEntry",
    "TraceabilityMatrix",
    "TraceabilitySummary",
    "build_traceability",
    "coverage_status",
]
