from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from ..domain.errors import PlanningError
from ..utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkItem:
    key: str
    payload: Any
    text: str

    @property
    def cost(self) -> int:
        return estimate_tokens(self.text)


@dataclass(frozen=True)
class ContextItem:
    payload: Any
    text: str
    link: Optional[str] = None

    @property
    def cost(self) -> int:
        return estimate_tokens(self.text)


def _total(items: Iterable[Any]) -> int:
    return sum(i.cost for i in items)


@dataclass
class Batch:
    items: list[WorkItem]
    context: list[ContextItem] = field(default_factory=list)
    shared: list[ContextItem] = field(default_factory=list)
    cost: int = 0

    @property
    def keys(self) -> list[str]:
        return [i.key for i in self.items]

    def _subset(self, items: Sequence[WorkItem]) -> "Batch":
        keys = {i.key for i in items}
        context = [c for c in self.context if c.link in keys]
        return Batch(
            items=list(items),
            context=context,
            shared=list(self.shared),
            cost=_total(self.shared) + _total(items) + _total(context),
        )

    def split(self) -> tuple["Batch", "Batch"]:
        if len(self.items) < 2:
            raise ValueError("cannot split a batch with fewer than two items")
        mid = len(self.items) // 2
        return self._subset(self.items[:mid]), self._subset(self.items[mid:])


def plan_batches(
    items: Sequence[WorkItem],
    *,
    budget: int,
    shared: Sequence[ContextItem] = (),
    linked: Sequence[ContextItem] = (),
) -> list[Batch]:
    if budget <= 0:
        raise PlanningError(f"token budget must be positive, got {budget}")

    items = list(items)
    keys = {i.key for i in items}
    by_link: dict[str, list[ContextItem]] = defaultdict(list)
    replicated = list(shared)
    for ctx in linked:
        if ctx.link is not None and ctx.link in keys:
            by_link[ctx.link].append(ctx)
        else:
            replicated.append(ctx)

    base_cost = _total(replicated)
    if items and base_cost >= budget:
        logger.warning("shared context costs %d, at or above the budget of %d", base_cost, budget)

    def close(group: list[WorkItem], cost: int) -> Batch:
        context: list[ContextItem] = []
        seen: set[str] = set()
        for item in group:
            if item.key in seen:
                continue
            seen.add(item.key)
            context.extend(by_link.get(item.key, ()))
        return Batch(items=group, context=context, shared=list(replicated), cost=cost)

    batches: list[Batch] = []
    current: list[WorkItem] = []
    current_cost = base_cost
    for item in items:
        item_cost = item.cost + _total(by_link.get(item.key, ()))
        if current and current_cost + item_cost > budget:
            batches.append(close(current, current_cost))
            current = []
            current_cost = base_cost
        current.append(item)
        current_cost += item_cost
    if current:
        batches.append(close(current, current_cost))

    logger.debug("planned %d batch(es) for %d item(s), budget=%d base=%d", len(batches), len(items), budget, base_cost)
    return batches


__all__ = ["Batch", "ContextItem", "WorkItem", "plan_batches"]
