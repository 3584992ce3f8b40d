from __future__ import annotations

from typing import Optional, Sequence


class SpecForgeError(Exception):
    pass


class TruncatedError(SpecForgeError):
    def __init__(self, detail: str = "", *, consumed_size: Optional[int] = None) -> None:
        message = "response truncated by the generation limit"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.detail = detail
        self.consumed_size = consumed_size


class PortFailure(SpecForgeError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message if status_code is None else f"[{status_code}] {message}")
        self.status_code = status_code


class ParseFailure(SpecForgeError):
    def __init__(self, message: str, *, preview: str = "") -> None:
        super().__init__(message)
        self.preview = preview


class ValidationRejected(SpecForgeError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"validation rejected: {reason}")
        self.reason = reason


class RetryExhausted(SpecForgeError):
    def __init__(self, last_reason: str, *, attempts: int) -> None:
        super().__init__(f"failed after {attempts} attempt(s): {last_reason}")
        self.last_reason = last_reason
        self.attempts = attempts


class UnsplittableBatch(RetryExhausted):
    def __init__(self, batch_keys: Sequence[str], *, detail: str = "") -> None:
        keys = ", ".join(batch_keys) or "<empty>"
        reason = f"truncated on a single-item batch ({keys})"
        if detail:
            reason = f"{reason}: {detail}"
        super().__init__(reason, attempts=1)
        self.batch_keys = list(batch_keys)


class PlanningError(SpecForgeError):
    pass


class PipelineCancelled(SpecForgeError):
    def __init__(self, message: str = "pipeline cancelled") -> None:
        super().__init__(message)


class PipelineError(SpecForgeError):
    STAGES = ("planning", "retry", "merge", "gap-fill", "traceability")

    def __init__(self, *, stage: str, phase: str, cause: BaseException) -> None:
        if stage not in self.STAGES:
            raise ValueError(f"unknown pipeline stage: {stage}")
        super().__init__(f"{phase} failed at stage {stage}: {cause}")
        self.stage = stage
        self.phase = phase
        self.cause = cause


__all__ = [
    "ParseFailure",
    "PipelineCancelled",
    "PipelineError",
    "PlanningError",
    "PortFailure",
    "RetryExhausted",
    "SpecForgeError",
    "TruncatedError",
    "UnsplittableBatch",
    "ValidationRejected",
]
