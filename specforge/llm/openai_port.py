from __future__ import annotations

from typing import Any, Optional

from ..domain.errors import PortFailure
from .port import Completion, GenerationRequest, GenerationResponse


class OpenAIChatPort:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: Optional[str],
        model: str,
        temperature: float,
        max_tokens: int,
        timeout: Optional[float] = None,
    ) -> None:
        import openai  # local import to keep CLI import light

        kwargs: dict[str, Any] = {"api_key": api_key}
        if base_url:
            kwargs["base_url"] = base_url
        if timeout:
            kwargs["timeout"] = float(timeout)
        self._errors = openai.OpenAIError
        self.client = openai.OpenAI(**kwargs)
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        messages = [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": request.user_prompt},
        ]
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                stream=False,
            )
        except self._errors as e:
            raise PortFailure(str(e), status_code=getattr(e, "status_code", None)) from e

        usage_raw = getattr(completion, "usage", None)
        usage = dict(usage_raw.model_dump()) if usage_raw is not None else {}
        consumed = int(usage.get("total_tokens") or 0)
        choices = list(getattr(completion, "choices", None) or [])
        if not choices:
            return GenerationResponse(content="", consumed_size=consumed, completion=Completion.FAILED, detail="no choices")

        choice = choices[0]
        finish_reason = str(getattr(choice, "finish_reason", None) or "")
        status = Completion.LENGTH_LIMITED if finish_reason == "length" else Completion.NORMAL
        return GenerationResponse(
            content=choice.message.content or "",
            consumed_size=consumed,
            completion=status,
            detail=finish_reason,
            usage=usage,
        )


__all__ = ["OpenAIChatPort"]
