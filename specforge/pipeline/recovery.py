from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Sequence

from tqdm import tqdm

from ..domain.errors import PipelineCancelled, TruncatedError, UnsplittableBatch
from .cancel import CancelToken
from .planner import Batch

logger = logging.getLogger(__name__)

BatchRunner = Callable[[Batch, Optional[CancelToken]], Any]
SplitHook = Callable[[Batch, Batch, Batch], None]


def _drain(
    queue: deque[Batch],
    run_batch: BatchRunner,
    *,
    cancel: Optional[CancelToken],
    label: str,
    bar: Optional[tqdm] = None,
    bar_lock: Optional[threading.Lock] = None,
    on_split: Optional[SplitHook] = None,
) -> list[tuple[Batch, Any]]:
    lock = bar_lock or threading.Lock()
    results: list[tuple[Batch, Any]] = []
    while queue:
        if cancel is not None:
            cancel.raise_if_cancelled()
        batch = queue.popleft()
        try:
            result = run_batch(batch, cancel)
        except TruncatedError as e:
            if len(batch.items) <= 1:
                raise UnsplittableBatch(batch.keys, detail=str(e)) from e
            left, right = batch.split()
            logger.warning(
                "%s: truncated on %d item(s), retrying as %d + %d",
                label,
                len(batch.items),
                len(left.items),
                len(right.items),
            )
            queue.appendleft(right)
            queue.appendleft(left)
            if on_split is not None:
                on_split(batch, left, right)
            if bar is not None:
                with lock:
                    bar.total += 1
                    bar.refresh()
            continue
        results.append((batch, result))
        if bar is not None:
            with lock:
                bar.update(1)
    return results


def run_queue(
    batches: Sequence[Batch],
    run_batch: BatchRunner,
    *,
    cancel: Optional[CancelToken] = None,
    workers: int = 1,
    label: str = "batch",
    progress: bool = False,
    on_split: Optional[SplitHook] = None,
) -> list[tuple[Batch, Any]]:
    batches = list(batches)
    with tqdm(total=len(batches), desc=label, unit="batch", disable=not progress, leave=False) as bar:
        if workers <= 1 or len(batches) <= 1:
            return _drain(deque(batches), run_batch, cancel=cancel, label=label, bar=bar, on_split=on_split)

        stop = cancel.child() if cancel is not None else CancelToken()
        bar_lock = threading.Lock()

        def run_root(batch: Batch) -> list[tuple[Batch, Any]]:
            try:
                return _drain(
                    deque([batch]),
                    run_batch,
                    cancel=stop,
                    label=label,
                    bar=bar,
                    bar_lock=bar_lock,
                    on_split=on_split,
                )
            except Exception:
                stop.cancel()
                raise

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(run_root, b) for b in batches]
            errors = [f.exception() for f in futures]

    if cancel is not None and cancel.cancelled:
        raise PipelineCancelled()
    failures = [e for e in errors if e is not None and not isinstance(e, PipelineCancelled)]
    if failures:
        raise failures[0]
    stopped = [e for e in errors if e is not None]
    if stopped:
        raise stopped[0]

    results: list[tuple[Batch, Any]] = []
    for f in futures:
        results.extend(f.result())
    return results


__all__ = ["run_queue"]
