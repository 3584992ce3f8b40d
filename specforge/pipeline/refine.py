from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Optional, Sequence

from ..domain.models import Specification, UserStory
from ..llm.port import GenerationPort, GenerationRequest
from .cancel import CancelToken
from .executor import execute
from .merge import IdCounters, merge_specifications
from .planner import Batch, ContextItem, WorkItem, plan_batches
from .recovery import run_queue
from .schemas import REFINE_OUTPUT, decode
from .settings import PipelineSettings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a requirements engineer. Turn the user stories into a specification and answer with one JSON object "
    "holding user_scenarios, functional_requirements, key_entities, edge_cases, success_criteria and "
    "clarifications_needed."
)


def story_text(story: UserStory) -> str:
    lines = [f"### {story.external_id} - {story.title} (Priority: {story.priority})", ""]
    if story.actor or story.action or story.benefit:
        lines.append(f"As a {story.actor or 'user'}, I want {story.action or '...'}, so that {story.benefit or '...'}.")
    if story.stakeholder:
        lines.append(f"Stakeholder: {story.stakeholder}")
    if story.tags:
        lines.append(f"Tags: {', '.join(story.tags)}")
    if story.acceptance_criteria:
        lines.append("Acceptance criteria:")
        lines.extend(f"- {ac}" for ac in story.acceptance_criteria)
    if story.raw_text:
        lines.extend(["", story.raw_text])
    return "\n".join(lines).strip() + "\n"


def render_refine_prompt(batch: Batch) -> str:
    parts = ["Refine the following user stories into a structured specification.", ""]
    context = [c.text for c in batch.shared if c.text.strip()]
    if context:
        parts.extend(["## Project context", "", *context, ""])
    parts.extend(["## User stories", ""])
    parts.extend(item.text for item in batch.items)
    return "\n".join(parts)


def requires_requirements(spec: Specification, attempt: int, max_retries: int) -> Optional[str]:
    if spec.user_scenarios and not spec.functional_requirements and attempt < max_retries:
        return (
            f"output has {len(spec.user_scenarios)} user scenario(s) but no functional requirements"
        )
    return None


class RefineStage:
    def __init__(
        self,
        port: GenerationPort,
        *,
        settings: PipelineSettings,
        sleep: Optional[Callable[[float], Any]] = None,
        on_split: Optional[Callable[[Batch, Batch, Batch], None]] = None,
    ) -> None:
        self.port = port
        self.settings = settings
        self.system_prompt = settings.refine_system_prompt or DEFAULT_SYSTEM_PROMPT
        self.sleep = sleep
        self.on_split = on_split

    def plan(self, stories: Sequence[UserStory]) -> list[Batch]:
        items = [WorkItem(key=s.external_id, payload=s, text=story_text(s)) for s in stories]
        shared = []
        if self.settings.project_context.strip():
            shared.append(ContextItem(payload=None, text=self.settings.project_context.strip()))
        batches = plan_batches(items, budget=self.settings.token_budget, shared=shared)
        logger.info("refine: %d story(ies) in %d batch(es)", len(items), len(batches))
        return batches

    def run_batch(self, batch: Batch, cancel: Optional[CancelToken]) -> Specification:
        label = f"refine[{batch.keys[0]}]" if len(batch.items) == 1 else f"refine[{batch.keys[0]}..{batch.keys[-1]}]"
        request = GenerationRequest(
            system_prompt=self.system_prompt,
            user_prompt=render_refine_prompt(batch),
            label=label,
        )
        spec = execute(
            self.port,
            request,
            max_retries=self.settings.max_retries,
            decode=lambda text: decode(text, REFINE_OUTPUT, build=Specification.from_obj),
            validate=requires_requirements,
            sleep=self.sleep,
            cancel=cancel,
        )
        return replace(spec, source_story_ids=batch.keys)

    def execute(self, batches: Sequence[Batch], *, cancel: Optional[CancelToken] = None) -> list[Specification]:
        results = run_queue(
            batches,
            self.run_batch,
            cancel=cancel,
            workers=self.settings.workers,
            label="refine",
            progress=self.settings.progress,
            on_split=self.on_split,
        )
        return [spec for _, spec in results]

    def merge(self, parts: Sequence[Specification]) -> tuple[Specification, IdCounters]:
        spec, counters = merge_specifications(parts)
        logger.info(
            "refine: merged %d requirement(s), %d user scenario(s) from %d batch(es)",
            len(spec.functional_requirements),
            len(spec.user_scenarios),
            len(parts),
        )
        return spec, counters


__all__ = ["RefineStage", "render_refine_prompt", "requires_requirements", "story_text"]
