from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence

from ..domain.models import EdgeCase, FunctionalRequirement, Specification, TestSuite, UserScenario
from ..llm.port import GenerationPort, GenerationRequest
from .cancel import CancelToken
from .executor import execute
from .gap_fill import GapFillReport, fill_gaps
from .merge import IdCounters, merge_test_suites
from .planner import Batch, ContextItem, WorkItem, plan_batches
from .recovery import run_queue
from .schemas import TESTS_OUTPUT, decode
from .settings import PipelineSettings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a test engineer. Write Gherkin acceptance tests for the specification and answer with one JSON "
    'object of the form {"features": [...]}; every scenario lists the requirement ids it verifies in verification_of.'
)


def scenario_text(us: UserScenario) -> str:
    lines = [f"### {us.id} - {us.title} (Priority: {us.priority})", ""]
    if us.description:
        lines.extend([us.description, ""])
    if us.acceptance_scenarios:
        lines.append("Acceptance scenarios:")
        lines.extend(f"- Given {ac.given}, When {ac.when}, Then {ac.then}" for ac in us.acceptance_scenarios)
    return "\n".join(lines).strip() + "\n"


def requirement_text(fr: FunctionalRequirement) -> str:
    return f"- {fr.id}: {fr.statement} ({fr.priority}, verified by {fr.verification_method})"


def edge_case_text(ec: EdgeCase) -> str:
    suffix = f" [{ec.related_scenario}]" if ec.related_scenario else ""
    return f"- {ec.description}{suffix}"


def render_generate_prompt(spec: Specification) -> str:
    parts = ["Generate Gherkin test scenarios for the following specification.", ""]
    if spec.user_scenarios:
        parts.extend(["## User scenarios", ""])
        parts.extend(scenario_text(us) for us in spec.user_scenarios)
    parts.extend(["## Functional requirements", ""])
    parts.extend(requirement_text(fr) for fr in spec.functional_requirements)
    parts.append("")
    if spec.edge_cases:
        parts.extend(["## Edge cases", ""])
        parts.extend(edge_case_text(ec) for ec in spec.edge_cases)
        parts.append("")
    if spec.functional_requirements:
        parts.extend(
            [
                "## Coverage checklist (mandatory)",
                "",
                "Every requirement id below MUST appear in `verification_of` of at least one scenario:",
            ]
        )
        parts.extend(f"- [ ] {fr.id}" for fr in spec.functional_requirements)
    return "\n".join(parts).strip() + "\n"


def batch_specification(batch: Batch) -> Specification:
    context = [*batch.shared, *batch.context]
    return Specification(
        user_scenarios=[i.payload for i in batch.items],
        functional_requirements=[c.payload for c in context if isinstance(c.payload, FunctionalRequirement)],
        edge_cases=[c.payload for c in context if isinstance(c.payload, EdgeCase)],
    )


class GenerateStage:
    def __init__(
        self,
        port: GenerationPort,
        *,
        settings: PipelineSettings,
        sleep: Optional[Callable[[float], Any]] = None,
        on_split: Optional[Callable[[Batch, Batch, Batch], None]] = None,
        on_chunk_failed: Optional[Callable[[dict[str, Any]], None]] = None,
    ) -> None:
        self.port = port
        self.settings = settings
        self.system_prompt = settings.generate_system_prompt or DEFAULT_SYSTEM_PROMPT
        self.sleep = sleep
        self.on_split = on_split
        self.on_chunk_failed = on_chunk_failed

    def plan(self, spec: Specification) -> list[Batch]:
        items = [WorkItem(key=us.id, payload=us, text=scenario_text(us)) for us in spec.user_scenarios]
        shared = [ContextItem(payload=fr, text=requirement_text(fr)) for fr in spec.functional_requirements]
        linked = [ContextItem(payload=ec, text=edge_case_text(ec), link=ec.related_scenario) for ec in spec.edge_cases]
        batches = plan_batches(items, budget=self.settings.token_budget, shared=shared, linked=linked)
        if not items and shared:
            # requirements without user scenarios still get one whole-spec batch
            context = [*shared, *linked]
            batches = [Batch(items=[], shared=context, cost=sum(c.cost for c in context))]
        logger.info("generate: %d user scenario(s) in %d batch(es)", len(items), len(batches))
        return batches

    def _generate(self, spec: Specification, *, label: str, cancel: Optional[CancelToken]) -> TestSuite:
        request = GenerationRequest(
            system_prompt=self.system_prompt,
            user_prompt=render_generate_prompt(spec),
            label=label,
        )
        return execute(
            self.port,
            request,
            max_retries=self.settings.max_retries,
            decode=lambda text: decode(text, TESTS_OUTPUT, build=TestSuite.from_obj),
            sleep=self.sleep,
            cancel=cancel,
        )

    def run_batch(self, batch: Batch, cancel: Optional[CancelToken]) -> TestSuite:
        keys = batch.keys or [c.payload.id for c in batch.shared if isinstance(c.payload, FunctionalRequirement)]
        label = f"generate[{keys[0]}]" if len(keys) == 1 else f"generate[{keys[0]}..{keys[-1]}]"
        return self._generate(batch_specification(batch), label=label, cancel=cancel)

    def generate_chunk(self, spec: Specification, cancel: Optional[CancelToken]) -> TestSuite:
        ids = spec.requirement_ids()
        return self._generate(spec, label=f"gap-fill[{ids[0]}..{ids[-1]}]", cancel=cancel)

    def execute(self, batches: Sequence[Batch], *, cancel: Optional[CancelToken] = None) -> list[TestSuite]:
        results = run_queue(
            batches,
            self.run_batch,
            cancel=cancel,
            workers=self.settings.workers,
            label="generate",
            progress=self.settings.progress,
            on_split=self.on_split,
        )
        return [suite for _, suite in results]

    def merge(self, parts: Sequence[TestSuite], *, counters: IdCounters) -> tuple[TestSuite, IdCounters]:
        suite, counters = merge_test_suites(parts, counters=counters)
        logger.info("generate: merged %d feature(s), %d scenario(s)", len(suite.features), suite.total_scenarios)
        return suite, counters

    def fill_gaps(
        self,
        spec: Specification,
        suite: TestSuite,
        *,
        counters: IdCounters,
        cancel: Optional[CancelToken] = None,
    ) -> tuple[TestSuite, IdCounters, GapFillReport]:
        return fill_gaps(
            spec,
            suite,
            self.generate_chunk,
            counters=counters,
            chunk_size=self.settings.gap_fill_chunk_size,
            max_passes=self.settings.gap_fill_max_passes,
            cancel=cancel,
            on_chunk_failed=self.on_chunk_failed,
        )


__all__ = ["GenerateStage", "batch_specification", "render_generate_prompt"]
