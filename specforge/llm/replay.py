from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..domain.errors import PortFailure
from ..utils.tokens import sha256_text, utc_ts
from .port import Completion, GenerationPort, GenerationRequest, GenerationResponse


@dataclass
class ReplayConfig:
    mode: str  # "off" | "record" | "replay"
    path: Path


def _prompt_key(request: GenerationRequest) -> str:
    return sha256_text(request.system_prompt + "\n\x00\n" + request.user_prompt)


class ReplayStore:
    def __init__(self, cfg: Optional[ReplayConfig]) -> None:
        self.cfg = cfg
        self._loaded: Optional[dict[tuple[str, str, int], dict[str, Any]]] = None
        self._seen: dict[tuple[str, str], int] = {}
        self._lock = threading.Lock()

    @property
    def mode(self) -> str:
        return self.cfg.mode if self.cfg else "off"

    def _ensure_loaded(self) -> dict[tuple[str, str, int], dict[str, Any]]:
        if self._loaded is not None:
            return self._loaded
        self._loaded = {}
        cfg = self.cfg
        if cfg is None or cfg.mode != "replay":
            return self._loaded
        if not cfg.path.exists():
            raise FileNotFoundError(cfg.path)
        with cfg.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                obj = json.loads(line)
                key = (str(obj.get("label") or ""), str(obj.get("prompt_sha256") or ""), int(obj.get("occurrence") or 0))
                self._loaded[key] = obj
        return self._loaded

    def _next_occurrence(self, request: GenerationRequest) -> tuple[str, str, int]:
        base = (request.label, _prompt_key(request))
        with self._lock:
            occurrence = self._seen.get(base, 0)
            self._seen[base] = occurrence + 1
        return base[0], base[1], occurrence

    def lookup(self, request: GenerationRequest) -> Optional[dict[str, Any]]:
        if self.mode != "replay":
            return None
        loaded = self._ensure_loaded()
        return loaded.get(self._next_occurrence(request))

    def record(self, request: GenerationRequest, response: GenerationResponse, *, extra: dict[str, Any]) -> None:
        cfg = self.cfg
        if cfg is None or cfg.mode != "record":
            return
        label, prompt_sha, occurrence = self._next_occurrence(request)
        entry = {
            "label": label,
            "prompt_sha256": prompt_sha,
            "occurrence": occurrence,
            "response": response.content,
            "completion": response.completion,
            "consumed_size": response.consumed_size,
            "usage": response.usage,
            "ts": utc_ts(),
            **extra,
        }
        with self._lock:
            cfg.path.parent.mkdir(parents=True, exist_ok=True)
            with cfg.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")


class ReplayPort:
    def __init__(self, port: Optional[GenerationPort], *, store: ReplayStore, model: str = "") -> None:
        if port is None and store.mode != "replay":
            raise ValueError("a live port is required unless replaying")
        self.port = port
        self.store = store
        self.model = model

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        replayed = self.store.lookup(request)
        if replayed is not None:
            return GenerationResponse(
                content=str(replayed.get("response") or ""),
                consumed_size=int(replayed.get("consumed_size") or 0),
                completion=str(replayed.get("completion") or Completion.NORMAL),
                usage=dict(replayed.get("usage") or {}),
                replayed=True,
            )
        if self.port is None:
            raise PortFailure(f"no recorded response for {request.label or 'request'}")

        response = self.port.generate(request)
        self.store.record(request, response, extra={"model": self.model})
        return response


__all__ = ["ReplayConfig", "ReplayPort", "ReplayStore"]
