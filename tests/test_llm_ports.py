from __future__ import annotations

import types
import unittest
from typing import Any
from unittest.mock import patch

import openai
import requests

from specforge.domain.errors import PortFailure
from specforge.llm.ollama_port import OllamaPort
from specforge.llm.openai_port import OpenAIChatPort
from specforge.llm.port import Completion, GenerationRequest

_REQUEST = GenerationRequest(system_prompt="SYSTEM", user_prompt="USER", label="refine[S1..S2]")


class _Usage:
    def __init__(self, prompt_tokens: int, completion_tokens: int) -> None:
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens

    def model_dump(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.prompt_tokens + self.completion_tokens,
        }


def _fake_openai(*, content: str = "{}", finish_reason: str = "stop", error: Exception | None = None) -> type:
    calls: list[dict[str, Any]] = []

    class _FakeCompletions:
        def create(self, **kwargs: Any) -> Any:
            calls.append(kwargs)
            if error is not None:
                raise error
            message = types.SimpleNamespace(content=content)
            choice = types.SimpleNamespace(message=message, finish_reason=finish_reason)
            return types.SimpleNamespace(choices=[choice], usage=_Usage(10, 3))

    class _FakeOpenAI:
        init_kwargs: dict[str, Any] = {}

        def __init__(self, **kwargs: Any) -> None:
            type(self).init_kwargs = kwargs
            self.chat = types.SimpleNamespace(completions=_FakeCompletions())

    _FakeOpenAI.calls = calls  # type: ignore[attr-defined]
    return _FakeOpenAI


def _openai_port() -> OpenAIChatPort:
    return OpenAIChatPort(
        api_key="k", base_url="http://example.invalid/v1", model="m", temperature=0.1, max_tokens=64, timeout=5
    )


class TestOpenAIChatPort(unittest.TestCase):
    def test_normal_completion(self) -> None:
        fake = _fake_openai(content='{"ok": true}')
        with patch("openai.OpenAI", fake):
            response = _openai_port().generate(_REQUEST)

        self.assertEqual(response.content, '{"ok": true}')
        self.assertEqual(response.completion, Completion.NORMAL)
        self.assertEqual(response.consumed_size, 13)
        self.assertEqual(response.usage["prompt_tokens"], 10)
        self.assertEqual(fake.init_kwargs["base_url"], "http://example.invalid/v1")
        sent = fake.calls[0]
        self.assertEqual(sent["messages"][0], {"role": "system", "content": "SYSTEM"})
        self.assertEqual(sent["max_tokens"], 64)

    def test_length_finish_is_truncation(self) -> None:
        with patch("openai.OpenAI", _fake_openai(content='{"a": ', finish_reason="length")):
            response = _openai_port().generate(_REQUEST)
        self.assertEqual(response.completion, Completion.LENGTH_LIMITED)

    def test_sdk_errors_become_port_failures(self) -> None:
        class _Boom(openai.OpenAIError):
            pass

        with patch("openai.OpenAI", _fake_openai(error=_Boom("rate limited"))):
            with self.assertRaises(PortFailure) as cm:
                _openai_port().generate(_REQUEST)
        self.assertIn("rate limited", str(cm.exception))


class _FakeHTTPResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body
        self.text = body if isinstance(body, str) else ""

    def json(self) -> Any:
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body


class TestOllamaPort(unittest.TestCase):
    def test_payload_and_response_mapping(self) -> None:
        body = {"response": '{"x": 1}', "done_reason": "stop", "prompt_eval_count": 40, "eval_count": 8}
        with patch("specforge.llm.ollama_port.requests.post", return_value=_FakeHTTPResponse(200, body)) as post:
            response = OllamaPort(model="qwen3:8b", base_url="http://host:11434/", max_tokens=99).generate(_REQUEST)

        url = post.call_args.args[0]
        payload = post.call_args.kwargs["json"]
        self.assertEqual(url, "http://host:11434/api/generate")
        self.assertEqual(payload["system"], "SYSTEM")
        self.assertEqual(payload["format"], "json")
        self.assertFalse(payload["think"])
        self.assertEqual(payload["options"]["num_predict"], 99)
        self.assertEqual(response.content, '{"x": 1}')
        self.assertEqual(response.consumed_size, 48)
        self.assertEqual(response.completion, Completion.NORMAL)

    def test_length_done_reason_is_truncation(self) -> None:
        body = {"response": "{", "done_reason": "length"}
        with patch("specforge.llm.ollama_port.requests.post", return_value=_FakeHTTPResponse(200, body)):
            response = OllamaPort(model="m").generate(_REQUEST)
        self.assertEqual(response.completion, Completion.LENGTH_LIMITED)

    def test_http_error_carries_status(self) -> None:
        with patch("specforge.llm.ollama_port.requests.post", return_value=_FakeHTTPResponse(500, "model not loaded")):
            with self.assertRaises(PortFailure) as cm:
                OllamaPort(model="m").generate(_REQUEST)
        self.assertEqual(cm.exception.status_code, 500)
        self.assertIn("model not loaded", str(cm.exception))

    def test_connection_errors_become_port_failures(self) -> None:
        with patch("specforge.llm.ollama_port.requests.post", side_effect=requests.ConnectionError("refused")):
            with self.assertRaises(PortFailure):
                OllamaPort(model="m").generate(_REQUEST)
        with patch("specforge.llm.ollama_port.requests.post", side_effect=requests.Timeout()):
            with self.assertRaises(PortFailure) as cm:
                OllamaPort(model="m", timeout=1).generate(_REQUEST)
        self.assertIn("timed out", str(cm.exception))

    def test_non_json_body(self) -> None:
        with patch("specforge.llm.ollama_port.requests.post", return_value=_FakeHTTPResponse(200, "<html>")):
            with self.assertRaises(PortFailure):
                OllamaPort(model="m").generate(_REQUEST)


if __name__ == "__main__":
    unittest.main()
