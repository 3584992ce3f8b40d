from __future__ import annotations

import json
import re
import tempfile
import unittest
from pathlib import Path
from typing import Any, Optional

from specforge.domain.errors import PipelineCancelled, PipelineError, RetryExhausted, UnsplittableBatch
from specforge.domain.models import UserStory
from specforge.llm.port import Completion, GenerationRequest, GenerationResponse
from specforge.llm.tracing import EventLogger
from specforge.pipeline.cancel import CancelToken
from specforge.pipeline.runner import run_pipeline
from specforge.pipeline.schemas import RESULT, load_schema, schema_errors
from specforge.pipeline.settings import PipelineSettings
from specforge.pipeline.traceability import CoverageStatus

_STORY_RE = re.compile(r"^### (\S+) - ", flags=re.MULTILINE)
_CHECKLIST_RE = re.compile(r"^- \[ \] (FR-\d+)$", flags=re.MULTILINE)


class FakeLLM:
    """Answers refine and test-generation prompts with small deterministic JSON documents."""

    def __init__(
        self,
        *,
        max_refine_stories: Optional[int] = None,
        skip: tuple[str, ...] = (),
        broken_generate: bool = False,
        requirements_only: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.max_refine_stories = max_refine_stories
        self.skip = set(skip)
        self.broken_generate = broken_generate
        self.requirements_only = requirements_only
        self.cancel = cancel
        self.labels: list[str] = []

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.labels.append(request.label)
        if self.cancel is not None:
            self.cancel.cancel()
        if request.label.startswith("refine"):
            return self._refine(request.user_prompt)
        if self.broken_generate:
            return GenerationResponse(content="I cannot help with that.")
        return self._tests(request.user_prompt, gap_fill=request.label.startswith("gap-fill"))

    def _refine(self, prompt: str) -> GenerationResponse:
        story_ids = _STORY_RE.findall(prompt)
        if self.max_refine_stories is not None and len(story_ids) > self.max_refine_stories:
            return GenerationResponse(content='{"user_scenarios": [', completion=Completion.LENGTH_LIMITED)

        scenarios: list[dict[str, Any]] = []
        requirements: list[dict[str, Any]] = []
        edge_cases: list[dict[str, Any]] = []
        for n, story_id in enumerate(story_ids, 1):
            us_id = f"US-{n:03d}"
            scenarios.append(
                {
                    "id": us_id,
                    "title": f"Scenario for {story_id}",
                    "priority": "P1",
                    "acceptance_scenarios": [{"given": "a user", "when": f"they use {story_id}", "then": "it works"}],
                }
            )
            requirements.append(
                {
                    "id": f"FR-{2 * n - 1:03d}",
                    "statement": f"The system MUST support {story_id}",
                    "priority": "P1",
                    "risk_level": "High",
                    "source": story_id,
                }
            )
            requirements.append(
                {
                    "id": f"FR-{2 * n:03d}",
                    "statement": f"The system SHOULD audit {story_id}",
                    "priority": "P2",
                    "parent_requirement": f"FR-{2 * n - 1:03d}",
                    "source": story_id,
                }
            )
            edge_cases.append({"description": f"{story_id} while offline", "related_scenario": us_id})
        body = {"user_scenarios": scenarios, "functional_requirements": requirements, "edge_cases": edge_cases}
        if self.requirements_only:
            body = {"functional_requirements": requirements}
        return GenerationResponse(content="```json\n" + json.dumps(body) + "\n```", consumed_size=100)

    def _tests(self, prompt: str, *, gap_fill: bool) -> GenerationResponse:
        requirement_ids = [r for r in _CHECKLIST_RE.findall(prompt) if gap_fill or r not in self.skip]
        scenarios = []
        for fr_id in requirement_ids:
            for kind in ("happy_path", "error_scenario"):
                scenarios.append(
                    {
                        "name": f"{kind} for {fr_id}",
                        "scenario_type": kind,
                        "tags": [f"@{fr_id}"],
                        "verification_of": [fr_id],
                        "steps": [
                            {"keyword": "Given", "text": "a configured system"},
                            {"keyword": "When", "text": f"{fr_id} is exercised"},
                            {"keyword": "Then", "text": "the outcome is correct"},
                        ],
                    }
                )
        body = {"features": [{"name": "Gap fill" if gap_fill else "Generated", "scenarios": scenarios}]}
        return GenerationResponse(content=json.dumps(body), consumed_size=100)


def _stories(count: int) -> list[UserStory]:
    return [
        UserStory(external_id=f"S{n}", title=f"Story {n}", actor="shopper", action=f"do thing {n}")
        for n in range(1, count + 1)
    ]


def _settings(**overrides: Any) -> PipelineSettings:
    settings = PipelineSettings(max_retries=1, token_budget=100_000)
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _no_sleep(_delay: float) -> None:
    return None


class TestRunPipeline(unittest.TestCase):
    def test_end_to_end_with_split_and_gap_fill(self) -> None:
        llm = FakeLLM(max_refine_stories=2, skip=("FR-003",))
        with tempfile.TemporaryDirectory() as tmpdir:
            events_path = Path(tmpdir) / "events.jsonl"
            result = run_pipeline(
                _stories(4),
                port=llm,
                settings=_settings(),
                events=EventLogger(path=events_path),
                sleep=_no_sleep,
                run_id="run-1",
            )
            event_types = [json.loads(line)["event_type"] for line in events_path.read_text(encoding="utf-8").splitlines()]

        self.assertEqual(llm.labels[:3], ["refine[S1..S4]", "refine[S1..S2]", "refine[S3..S4]"])
        self.assertIn("gap-fill[FR-003..FR-003]", llm.labels)

        spec = result.specification
        self.assertEqual(spec.requirement_ids(), [f"FR-{n:03d}" for n in range(1, 9)])
        self.assertIn("S3", spec.functional_requirements[4].statement)
        self.assertEqual(spec.functional_requirements[5].parent_requirement, "FR-005")
        self.assertEqual([us.id for us in spec.user_scenarios], ["US-001", "US-002", "US-003", "US-004"])
        self.assertEqual(spec.edge_cases[2].related_scenario, "US-003")
        self.assertEqual(spec.source_story_ids, ["S1", "S2", "S3", "S4"])

        case_ids = [s.id for s in result.test_suite.iter_scenarios()]
        self.assertEqual(case_ids, [f"TC-{n:03d}" for n in range(1, len(case_ids) + 1)])

        self.assertIsNotNone(result.gap_fill)
        assert result.gap_fill is not None
        self.assertEqual(result.gap_fill.initial, ["FR-003"])
        self.assertEqual(result.gap_fill.filled, ["FR-003"])

        summary = result.traceability.summary
        self.assertEqual(summary.total, 8)
        self.assertEqual(summary.not_covered, 0)
        self.assertEqual(summary.forward_coverage, 1.0)
        self.assertTrue(all(e.status == CoverageStatus.FULLY_COVERED for e in result.traceability.entries))

        self.assertEqual(event_types[0], "pipeline.start")
        self.assertIn("batch.split", event_types)
        self.assertEqual(event_types[-1], "pipeline.done")

        self.assertEqual(schema_errors(result.to_dict(), load_schema(RESULT)), [])

    def test_gap_fill_can_be_disabled(self) -> None:
        llm = FakeLLM(skip=("FR-001",))
        result = run_pipeline(_stories(2), port=llm, settings=_settings(gap_fill_enabled=False), sleep=_no_sleep)
        self.assertIsNone(result.gap_fill)
        self.assertFalse(any(label.startswith("gap-fill") for label in llm.labels))
        self.assertEqual(result.traceability.summary.not_covered, 1)
        self.assertIn("ISO-29119-COVERAGE", {w.rule for w in result.warnings})

    def test_requirements_without_user_scenarios_still_generate(self) -> None:
        llm = FakeLLM(requirements_only=True)
        result = run_pipeline(_stories(1), port=llm, settings=_settings(gap_fill_enabled=False), sleep=_no_sleep)

        self.assertEqual(result.specification.user_scenarios, [])
        self.assertEqual(llm.labels, ["refine[S1]", "generate[FR-001..FR-002]"])
        self.assertEqual(result.test_suite.total_scenarios, 4)
        self.assertEqual(result.traceability.summary.not_covered, 0)

    def test_concurrent_workers_give_the_same_ids(self) -> None:
        serial = run_pipeline(_stories(5), port=FakeLLM(), settings=_settings(token_budget=60), sleep=_no_sleep)
        parallel = run_pipeline(
            _stories(5), port=FakeLLM(), settings=_settings(token_budget=60, workers=3), sleep=_no_sleep
        )
        self.assertEqual(serial.specification.to_dict(), parallel.specification.to_dict())
        self.assertEqual(serial.test_suite.to_dict(), parallel.test_suite.to_dict())

    def test_retry_failure_names_phase_and_stage(self) -> None:
        with self.assertRaises(PipelineError) as cm:
            run_pipeline(_stories(1), port=FakeLLM(broken_generate=True), settings=_settings(), sleep=_no_sleep)
        self.assertEqual((cm.exception.phase, cm.exception.stage), ("generate", "retry"))
        self.assertIsInstance(cm.exception.cause, RetryExhausted)
        self.assertIn("generate failed at stage retry", str(cm.exception))

    def test_single_story_truncation_is_fatal(self) -> None:
        with self.assertRaises(PipelineError) as cm:
            run_pipeline(_stories(1), port=FakeLLM(max_refine_stories=0), settings=_settings(), sleep=_no_sleep)
        self.assertEqual((cm.exception.phase, cm.exception.stage), ("refine", "retry"))
        self.assertIsInstance(cm.exception.cause, UnsplittableBatch)

    def test_empty_input_is_a_planning_error(self) -> None:
        with self.assertRaises(PipelineError) as cm:
            run_pipeline([], port=FakeLLM(), settings=_settings())
        self.assertEqual(cm.exception.stage, "planning")

    def test_cancellation_is_not_wrapped(self) -> None:
        token = CancelToken()
        with self.assertRaises(PipelineCancelled):
            run_pipeline(_stories(2), port=FakeLLM(cancel=token), settings=_settings(), cancel=token, sleep=_no_sleep)


if __name__ == "__main__":
    unittest.main()
