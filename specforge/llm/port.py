from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


class Completion:
    NORMAL = "normal"
    LENGTH_LIMITED = "length_limited"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationRequest:
    system_prompt: str
    user_prompt: str
    label: str = ""


@dataclass
class GenerationResponse:
    content: str
    consumed_size: int = 0
    completion: str = Completion.NORMAL
    detail: str = ""
    usage: dict[str, Any] = field(default_factory=dict)
    replayed: bool = False


class GenerationPort(Protocol):
    def generate(self, request: GenerationRequest) -> GenerationResponse: ...


__all__ = ["Completion", "GenerationPort", "GenerationRequest", "GenerationResponse"]
