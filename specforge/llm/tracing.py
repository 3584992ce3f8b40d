from __future__ import annotations

import csv
import json
import threading
import uuid
from pathlib import Path
from typing import Any, Iterable, Optional

from ..domain.errors import PortFailure
from ..utils.tokens import estimate_tokens, utc_ts
from .port import GenerationPort, GenerationRequest, GenerationResponse


class EventLogger:
    def __init__(self, *, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(
        self,
        *,
        event_type: str,
        payload: dict[str, Any],
        token: Optional[dict[str, Any]] = None,
        span_id: Optional[str] = None,
        parent_span_id: Optional[str] = None,
    ) -> str:
        span = span_id or uuid.uuid4().hex
        obj: dict[str, Any] = {
            "ts": utc_ts(),
            "event_type": event_type,
            "span_id": span,
            "parent_span_id": parent_span_id,
            "payload": payload,
        }
        if token is not None:
            obj["token"] = token
        line = json.dumps(obj, ensure_ascii=False, default=str) + "\n"
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(line)
        return span


class TokenLedger:
    REQUIRED_COLUMNS = [
        "ts",
        "event_type",
        "span_id",
        "label",
        "completion",
        "prompt_est",
        "prompt_actual",
        "completion_actual",
        "total_actual",
        "consumed_size",
        "delta_vs_prev",
    ]

    def __init__(self, *, csv_path: Path) -> None:
        self.csv_path = csv_path
        self.csv_path.parent.mkdir(parents=True, exist_ok=True)
        self._fieldnames: list[str] = []
        self._lock = threading.Lock()
        self._ensure_header()

    def _read_header(self) -> list[str]:
        if not self.csv_path.exists() or self.csv_path.stat().st_size <= 0:
            return []
        with self.csv_path.open("r", newline="", encoding="utf-8") as f:
            header = next(csv.reader(f), [])
        return [str(c).strip() for c in header if str(c).strip()]

    def _rewrite_with_fieldnames(self, fieldnames: list[str]) -> None:
        rows: list[dict[str, Any]] = []
        if self.csv_path.exists() and self.csv_path.stat().st_size > 0:
            with self.csv_path.open("r", newline="", encoding="utf-8") as f:
                rows = list(csv.DictReader(f))
        tmp_path = self.csv_path.with_suffix(self.csv_path.suffix + ".tmp")
        with tmp_path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for row in rows:
                writer.writerow({k: row.get(k) for k in fieldnames})
        tmp_path.replace(self.csv_path)

    def _ensure_header(self) -> None:
        existing = self._read_header()
        if not existing:
            self._fieldnames = list(self.REQUIRED_COLUMNS)
        else:
            missing = [c for c in self.REQUIRED_COLUMNS if c not in existing]
            self._fieldnames = existing + missing
            if not missing:
                return
        self._rewrite_with_fieldnames(self._fieldnames)

    def _ensure_columns(self, columns: Iterable[str]) -> None:
        new_cols = [c for c in columns if c not in self._fieldnames]
        if not new_cols:
            return
        self._fieldnames = self._fieldnames + new_cols
        self._rewrite_with_fieldnames(self._fieldnames)

    def append(self, row: dict[str, Any]) -> None:
        with self._lock:
            self._ensure_columns(row.keys())
            with self.csv_path.open("a", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=self._fieldnames, extrasaction="ignore")
                writer.writerow({k: row.get(k) for k in self._fieldnames})


class TracedPort:
    """Wraps a port and writes one event and one ledger row per call."""

    def __init__(
        self,
        port: GenerationPort,
        *,
        events: EventLogger,
        ledger: Optional[TokenLedger] = None,
        model: str = "",
        parent_span_id: Optional[str] = None,
    ) -> None:
        self.port = port
        self.events = events
        self.ledger = ledger
        self.model = model
        self.parent_span_id = parent_span_id
        self._lock = threading.Lock()
        self._prev_total: Optional[int] = None

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        span_id = uuid.uuid4().hex
        messages = [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.user_prompt},
        ]
        prompt_est = estimate_tokens(request.system_prompt) + estimate_tokens(request.user_prompt)
        try:
            response = self.port.generate(request)
        except PortFailure as e:
            self.events.log(
                event_type="llm.error",
                span_id=span_id,
                parent_span_id=self.parent_span_id,
                payload={"label": request.label, "model": self.model, "error": str(e), "status_code": e.status_code},
            )
            raise

        event_type = "llm.replay" if response.replayed else "llm.call"
        total_actual = response.usage.get("total_tokens")
        delta = None
        with self._lock:
            if isinstance(total_actual, int) and self._prev_total is not None:
                delta = total_actual - self._prev_total
            if isinstance(total_actual, int):
                self._prev_total = total_actual

        token_payload = {
            "prompt_est": prompt_est,
            "prompt_actual": response.usage.get("prompt_tokens"),
            "completion_actual": response.usage.get("completion_tokens"),
            "total_actual": total_actual,
            "consumed_size": response.consumed_size,
            "delta_vs_prev": delta,
        }
        self.events.log(
            event_type=event_type,
            span_id=span_id,
            parent_span_id=self.parent_span_id,
            payload={
                "label": request.label,
                "model": self.model,
                "completion": response.completion,
                "detail": response.detail,
                "prompt": {"messages": messages},
                "response": response.content,
            },
            token=token_payload,
        )
        if self.ledger is not None:
            self.ledger.append(
                {
                    "ts": utc_ts(),
                    "event_type": event_type,
                    "span_id": span_id,
                    "label": request.label,
                    "completion": response.completion,
                    **token_payload,
                }
            )
        return response


__all__ = ["EventLogger", "TokenLedger", "TracedPort"]
