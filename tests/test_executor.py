from __future__ import annotations

import json
import unittest
from typing import Any

from specforge.domain.errors import (
    ParseFailure,
    PipelineCancelled,
    PortFailure,
    RetryExhausted,
    TruncatedError,
    ValidationRejected,
)
from specforge.llm.port import Completion, GenerationRequest, GenerationResponse
from specforge.pipeline.cancel import CancelToken
from specforge.pipeline.executor import Outcome, RetryState, backoff_delay, execute, transition


class _ScriptedPort:
    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.calls: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.calls.append(request)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, GenerationResponse):
            return item
        return GenerationResponse(content=str(item), consumed_size=10)


def _decode(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"invalid JSON: {e}") from e


_REQUEST = GenerationRequest(system_prompt="sys", user_prompt="user", label="unit")


class TestTransition(unittest.TestCase):
    def test_accepted_and_truncated_are_terminal(self) -> None:
        self.assertEqual(transition(Outcome.ACCEPTED, attempt=0, max_retries=3), RetryState.ACCEPTED)
        self.assertEqual(transition(Outcome.TRUNCATED, attempt=0, max_retries=3), RetryState.TRUNCATED)

    def test_errors_back_off_until_budget_is_spent(self) -> None:
        for outcome in (Outcome.PORT_ERROR, Outcome.PARSE_ERROR, Outcome.REJECTED):
            self.assertEqual(transition(outcome, attempt=2, max_retries=3), RetryState.BACKING_OFF)
            self.assertEqual(transition(outcome, attempt=3, max_retries=3), RetryState.EXHAUSTED)

    def test_zero_retries_exhausts_on_first_error(self) -> None:
        self.assertEqual(transition(Outcome.PARSE_ERROR, attempt=0, max_retries=0), RetryState.EXHAUSTED)

    def test_unknown_outcome(self) -> None:
        with self.assertRaises(ValueError):
            transition("weird", attempt=0, max_retries=1)

    def test_backoff_delay_doubles_and_caps(self) -> None:
        self.assertEqual([backoff_delay(n) for n in range(0, 7)], [0.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0])


class TestExecute(unittest.TestCase):
    def setUp(self) -> None:
        self.sleeps: list[float] = []

    def _run(self, port: _ScriptedPort, **kwargs: Any) -> Any:
        kwargs.setdefault("max_retries", 3)
        return execute(port, _REQUEST, decode=_decode, sleep=self.sleeps.append, **kwargs)

    def test_accepts_first_valid_response(self) -> None:
        port = _ScriptedPort(['{"ok": true}'])
        self.assertEqual(self._run(port), {"ok": True})
        self.assertEqual(self.sleeps, [])

    def test_decodes_through_sanitizer(self) -> None:
        port = _ScriptedPort(['<think>hmm</think>Sure:\n```json\n{"n": 1}\n```'])
        self.assertEqual(self._run(port), {"n": 1})

    def test_truncation_is_raised_without_retry(self) -> None:
        port = _ScriptedPort(
            [GenerationResponse(content='{"partial": ', consumed_size=4096, completion=Completion.LENGTH_LIMITED)]
        )
        with self.assertRaises(TruncatedError) as cm:
            self._run(port)
        self.assertEqual(len(port.calls), 1)
        self.assertEqual(self.sleeps, [])
        self.assertEqual(cm.exception.consumed_size, 4096)

    def test_parse_errors_back_off_exponentially(self) -> None:
        port = _ScriptedPort(["nope", "still nope", "no", '{"ok": 1}'])
        self.assertEqual(self._run(port), {"ok": 1})
        self.assertEqual(self.sleeps, [2.0, 4.0, 8.0])
        self.assertEqual(len(port.calls), 4)

    def test_port_failure_is_retried(self) -> None:
        port = _ScriptedPort([PortFailure("connection refused"), '{"ok": 1}'])
        self.assertEqual(self._run(port), {"ok": 1})
        self.assertEqual(self.sleeps, [2.0])

    def test_failed_completion_is_retried_as_port_error(self) -> None:
        port = _ScriptedPort([GenerationResponse(content="", completion=Completion.FAILED, detail="no choices"), "{}"])
        self.assertEqual(self._run(port), {})
        self.assertEqual(len(port.calls), 2)

    def test_exhaustion_carries_last_reason(self) -> None:
        port = _ScriptedPort([PortFailure("down"), "garbage", "garbage"])
        with self.assertRaises(RetryExhausted) as cm:
            self._run(port, max_retries=2)
        self.assertEqual(cm.exception.attempts, 3)
        self.assertIsInstance(cm.exception.__cause__, ParseFailure)
        self.assertIn("invalid JSON", cm.exception.last_reason)
        self.assertEqual(self.sleeps, [2.0, 4.0])

    def test_validation_rejection_is_retried(self) -> None:
        seen: list[tuple[Any, int, int]] = []

        def validate(value: Any, attempt: int, max_retries: int) -> Any:
            seen.append((value, attempt, max_retries))
            return "empty result" if not value.get("items") else None

        port = _ScriptedPort(['{"items": []}', '{"items": [1]}'])
        self.assertEqual(self._run(port, validate=validate), {"items": [1]})
        self.assertEqual(seen, [({"items": []}, 0, 3), ({"items": [1]}, 1, 3)])
        self.assertEqual(self.sleeps, [2.0])

    def test_validation_rejection_exhausts(self) -> None:
        port = _ScriptedPort(["{}", "{}"])
        with self.assertRaises(RetryExhausted) as cm:
            self._run(port, max_retries=1, validate=lambda v, a, m: "always wrong")
        self.assertIsInstance(cm.exception.__cause__, ValidationRejected)
        self.assertIn("always wrong", cm.exception.last_reason)

    def test_cancelled_before_first_attempt(self) -> None:
        token = CancelToken()
        token.cancel()
        port = _ScriptedPort(["{}"])
        with self.assertRaises(PipelineCancelled):
            self._run(port, cancel=token)
        self.assertEqual(port.calls, [])

    def test_cancelled_during_backoff(self) -> None:
        token = CancelToken()
        port = _ScriptedPort(["bad", "{}"])
        with self.assertRaises(PipelineCancelled):
            execute(port, _REQUEST, max_retries=3, decode=_decode, sleep=lambda d: token.cancel(), cancel=token)
        self.assertEqual(len(port.calls), 1)

    def test_cancel_token_wait_is_interruptible(self) -> None:
        parent = CancelToken()
        child = parent.child()
        parent.cancel()
        self.assertTrue(child.wait(5.0))
        self.assertFalse(CancelToken().wait(0.0))


if __name__ == "__main__":
    unittest.main()
