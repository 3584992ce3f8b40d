from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterator, Optional, Sequence

from ..domain.errors import ParseFailure, PortFailure, RetryExhausted, TruncatedError
from ..domain.models import Specification, TestSuite
from .cancel import CancelToken
from .merge import IdCounters, merge_test_suites

logger = logging.getLogger(__name__)

MAX_GAP_REQUIREMENTS_PER_CHUNK = 20
MAX_GAP_PASSES = 2

ChunkGenerator = Callable[[Specification, Optional[CancelToken]], TestSuite]

_RECOVERABLE = (TruncatedError, RetryExhausted, PortFailure, ParseFailure)


@dataclass
class GapFillReport:
    passes: int = 0
    initial: list[str] = field(default_factory=list)
    filled: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    failed_chunks: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passes": self.passes,
            "initial": list(self.initial),
            "filled": list(self.filled),
            "remaining": list(self.remaining),
            "failed_chunks": [dict(c) for c in self.failed_chunks],
        }


def uncovered_requirements(spec: Specification, suite: TestSuite) -> list[str]:
    covered = suite.covered_requirement_ids()
    return [fr.id for fr in spec.functional_requirements if fr.id not in covered]


def _chunks(ids: Sequence[str], size: int) -> Iterator[list[str]]:
    for start in range(0, len(ids), size):
        yield list(ids[start : start + size])


def fill_gaps(
    spec: Specification,
    suite: TestSuite,
    generate_chunk: ChunkGenerator,
    *,
    counters: IdCounters,
    chunk_size: int = MAX_GAP_REQUIREMENTS_PER_CHUNK,
    max_passes: int = MAX_GAP_PASSES,
    cancel: Optional[CancelToken] = None,
    on_chunk_failed: Optional[Callable[[dict[str, Any]], None]] = None,
) -> tuple[TestSuite, IdCounters, GapFillReport]:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    gaps = uncovered_requirements(spec, suite)
    report = GapFillReport(initial=list(gaps), remaining=list(gaps))
    by_id = {fr.id: fr for fr in spec.functional_requirements}

    while gaps and report.passes < max_passes:
        if cancel is not None:
            cancel.raise_if_cancelled()
        report.passes += 1
        logger.info("gap-fill pass %d/%d: %d uncovered requirement(s)", report.passes, max_passes, len(gaps))

        for chunk in _chunks(gaps, chunk_size):
            if cancel is not None:
                cancel.raise_if_cancelled()
            reduced = replace(spec, functional_requirements=[by_id[i] for i in chunk])
            try:
                chunk_suite = generate_chunk(reduced, cancel)
            except _RECOVERABLE as e:
                failure = {"pass": report.passes, "requirements": chunk, "error": str(e)}
                logger.warning("gap-fill chunk %s..%s skipped: %s", chunk[0], chunk[-1], e)
                report.failed_chunks.append(failure)
                if on_chunk_failed is not None:
                    on_chunk_failed(failure)
                continue
            suite, counters = merge_test_suites([chunk_suite], counters=counters, base=suite)

        gaps = uncovered_requirements(spec, suite)

    remaining = set(gaps)
    report.filled = [i for i in report.initial if i not in remaining]
    report.remaining = list(gaps)
    if gaps:
        logger.warning("gap-fill finished with %d uncovered requirement(s)", len(gaps))
    return suite, counters, report


__all__ = [
    "GapFillReport",
    "MAX_GAP_PASSES",
    "MAX_GAP_REQUIREMENTS_PER_CHUNK",
    "fill_gaps",
    "uncovered_requirements",
]
