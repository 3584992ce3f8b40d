from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Sequence

from ..domain.errors import PipelineCancelled, PipelineError, PlanningError
from ..domain.models import Specification, TestSuite, UserStory
from ..llm.port import GenerationPort
from ..llm.tracing import EventLogger
from .cancel import CancelToken
from .checks import CheckWarning, check_specification, check_test_suite
from .gap_fill import GapFillReport
from .generate import GenerateStage
from .planner import Batch
from .refine import RefineStage
from .settings import PipelineSettings
from .traceability import TraceabilityMatrix, build_traceability

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    run_id: str
    specification: Specification
    test_suite: TestSuite
    traceability: TraceabilityMatrix
    warnings: list[CheckWarning] = field(default_factory=list)
    gap_fill: Optional[GapFillReport] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "specification": self.specification.to_dict(),
            "test_suite": self.test_suite.to_dict(),
            "coverage": self.test_suite.coverage(self.specification.requirement_ids()),
            "traceability": self.traceability.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
            "gap_fill": self.gap_fill.to_dict() if self.gap_fill is not None else None,
        }


class _Run:
    def __init__(self, *, run_id: str, cancel: CancelToken, events: Optional[EventLogger]) -> None:
        self.run_id = run_id
        self.cancel = cancel
        self.events = events
        self.span_id: Optional[str] = None

    def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.events is None:
            return
        span = self.events.log(
            event_type=event_type,
            payload={"run_id": self.run_id, **payload},
            parent_span_id=self.span_id,
        )
        if event_type == "pipeline.start":
            self.span_id = span

    @contextmanager
    def stage(self, phase: str, stage: str) -> Iterator[None]:
        self.cancel.raise_if_cancelled()
        logger.debug("%s: entering %s", phase, stage)
        self.emit("pipeline.stage", {"phase": phase, "stage": stage})
        try:
            yield
        except PipelineCancelled:
            raise
        except Exception as e:
            self.emit("pipeline.failed", {"phase": phase, "stage": stage, "error": str(e)})
            raise PipelineError(stage=stage, phase=phase, cause=e) from e

    def on_split(self, phase: str) -> Callable[[Batch, Batch, Batch], None]:
        def hook(batch: Batch, left: Batch, right: Batch) -> None:
            self.emit("batch.split", {"phase": phase, "batch": batch.keys, "left": left.keys, "right": right.keys})

        return hook

    def on_chunk_failed(self, failure: dict[str, Any]) -> None:
        self.emit("gap_fill.chunk_failed", failure)


def _log_warnings(warnings: Sequence[CheckWarning]) -> None:
    for w in warnings:
        level = logging.WARNING if w.severity in {"error", "warning"} else logging.DEBUG
        logger.log(level, "[%s] %s", w.rule, w.message)


def run_pipeline(
    stories: Sequence[UserStory],
    *,
    port: GenerationPort,
    settings: PipelineSettings,
    cancel: Optional[CancelToken] = None,
    events: Optional[EventLogger] = None,
    sleep: Optional[Callable[[float], Any]] = None,
    run_id: Optional[str] = None,
) -> PipelineResult:
    run = _Run(run_id=run_id or uuid.uuid4().hex[:12], cancel=cancel or CancelToken(), events=events)
    run.emit("pipeline.start", {"stories": len(stories), "token_budget": settings.token_budget})

    refine = RefineStage(port, settings=settings, sleep=sleep, on_split=run.on_split("refine"))
    generate = GenerateStage(
        port,
        settings=settings,
        sleep=sleep,
        on_split=run.on_split("generate"),
        on_chunk_failed=run.on_chunk_failed,
    )

    with run.stage("refine", "planning"):
        if not stories:
            raise PlanningError("no user stories to process")
        batches = refine.plan(stories)
    with run.stage("refine", "retry"):
        parts = refine.execute(batches, cancel=run.cancel)
    with run.stage("refine", "merge"):
        spec, counters = refine.merge(parts)
    spec_warnings = check_specification(spec)

    with run.stage("generate", "planning"):
        batches = generate.plan(spec)
    with run.stage("generate", "retry"):
        suites = generate.execute(batches, cancel=run.cancel)
    with run.stage("generate", "merge"):
        suite, counters = generate.merge(suites, counters=counters)

    report: Optional[GapFillReport] = None
    if settings.gap_fill_enabled:
        with run.stage("generate", "gap-fill"):
            suite, counters, report = generate.fill_gaps(spec, suite, counters=counters, cancel=run.cancel)

    with run.stage("generate", "traceability"):
        matrix = build_traceability(spec, suite)

    warnings = spec_warnings + check_test_suite(suite, spec)
    _log_warnings(warnings)
    summary = matrix.summary
    logger.info(
        "pipeline %s: %d requirement(s), %d scenario(s), forward coverage %.1f%%, %d orphan(s)",
        run.run_id,
        summary.total,
        suite.total_scenarios,
        summary.forward_coverage_pct,
        summary.orphans,
    )
    run.emit("pipeline.done", {"summary": summary.to_dict(), "warnings": len(warnings)})
    return PipelineResult(
        run_id=run.run_id,
        specification=spec,
        test_suite=suite,
        traceability=matrix,
        warnings=warnings,
        gap_fill=report,
    )


__all__ = ["PipelineResult", "run_pipeline"]
