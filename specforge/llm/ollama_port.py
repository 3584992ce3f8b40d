from __future__ import annotations

import logging
from typing import Any

import requests

from ..domain.errors import PortFailure
from .port import Completion, GenerationRequest, GenerationResponse

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY = 4096


class OllamaPort:
    def __init__(
        self,
        *,
        model: str,
        base_url: str = "http://localhost:11434",
        temperature: float = 0.1,
        max_tokens: int = 4096,
        context_size: int = 8192,
        timeout: float = 300,
        json_format: bool = True,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.context_size = context_size
        self.timeout = timeout
        self.json_format = json_format

    def _payload(self, request: GenerationRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "prompt": request.user_prompt,
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
                "num_ctx": self.context_size,
            },
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt
        if self.json_format:
            payload["format"] = "json"
            payload["think"] = False
        return payload

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        url = f"{self.base_url}/api/generate"
        logger.debug("ollama request model=%s prompt_len=%d", self.model, len(request.user_prompt))
        try:
            response = requests.post(url, json=self._payload(request), timeout=self.timeout)
        except requests.Timeout as e:
            raise PortFailure(f"ollama timed out after {self.timeout}s (raise llm.timeout)") from e
        except requests.RequestException as e:
            raise PortFailure(f"connection to {url} failed: {e}") from e

        if response.status_code >= 400:
            body = response.text or ""
            if len(body) > _MAX_ERROR_BODY:
                body = body[:_MAX_ERROR_BODY] + "... (truncated)"
            raise PortFailure(body or "ollama error", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise PortFailure(f"ollama returned a non-JSON body: {e}") from e

        if data.get("thinking"):
            logger.warning("ollama thinking mode still active despite think=false")

        prompt_tokens = int(data.get("prompt_eval_count") or 0)
        completion_tokens = int(data.get("eval_count") or 0)
        done_reason = str(data.get("done_reason") or "")
        status = Completion.LENGTH_LIMITED if done_reason == "length" else Completion.NORMAL
        return GenerationResponse(
            content=str(data.get("response") or ""),
            consumed_size=prompt_tokens + completion_tokens,
            completion=status,
            detail=done_reason,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )


__all__ = ["OllamaPort"]
