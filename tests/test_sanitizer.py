from __future__ import annotations

import unittest

from hypothesis import given, settings
from hypothesis import strategies as st

from specforge.pipeline.sanitizer import extract, strip_reasoning


class TestSanitizer(unittest.TestCase):
    def test_strips_closed_reasoning_block(self) -> None:
        text = '<think>maybe {"wrong": 1}</think>\n{"a": 1}'
        self.assertEqual(extract(text), '{"a": 1}')

    def test_strips_every_reasoning_block(self) -> None:
        text = '<think>one</think>{"a": <think>two</think>1}'
        self.assertEqual(strip_reasoning(text), '{"a": 1}')

    def test_unclosed_reasoning_drops_the_tail(self) -> None:
        text = 'prefix <think> cut off {"a": 1}'
        self.assertEqual(extract(text), "prefix")

    def test_prefers_json_fence(self) -> None:
        text = 'intro\n```python\nprint(1)\n```\n```json\n{"b": 2}\n```\noutro'
        self.assertEqual(extract(text), '{"b": 2}')

    def test_generic_fence_skips_language_tag(self) -> None:
        text = 'answer:\n```javascript\n{"c": 3}\n```'
        self.assertEqual(extract(text), '{"c": 3}')

    def test_inline_generic_fence(self) -> None:
        self.assertEqual(extract('```{"d": 4}```'), '{"d": 4}')

    def test_unclosed_json_fence_falls_back_to_brace_span(self) -> None:
        self.assertEqual(extract('```json\n{"e": 5}\nHope this helps!'), '{"e": 5}')

    def test_unclosed_generic_fence_falls_back_to_brace_span(self) -> None:
        self.assertEqual(extract('```\n{"f": 6} and more prose'), '{"f": 6}')

    def test_unclosed_fence_without_braces_returns_trimmed_input(self) -> None:
        self.assertEqual(extract('```json\n[1, 2'), '```json\n[1, 2')

    def test_brace_span_fallback(self) -> None:
        text = 'Here you go: {"a": {"b": 1}} hope it helps'
        self.assertEqual(extract(text), '{"a": {"b": 1}}')

    def test_inverted_braces_return_trimmed_input(self) -> None:
        self.assertEqual(extract("  } oops {  "), "} oops {")

    def test_plain_text_is_trimmed(self) -> None:
        self.assertEqual(extract("  nothing structured \n"), "nothing structured")

    def test_empty_input(self) -> None:
        self.assertEqual(extract(""), "")

    @given(text=st.text(max_size=300))
    @settings(max_examples=200, deadline=None)
    def test_extract_is_total_for_arbitrary_text(self, text: str) -> None:
        self.assertIsInstance(extract(text), str)

    @given(
        parts=st.lists(
            st.sampled_from(["{", "}", "<think>", "</think>", "```", "```json", "\n", "a", " ", '"k": 1']),
            max_size=30,
        )
    )
    @settings(max_examples=200, deadline=None)
    def test_extract_is_total_for_marker_soup(self, parts: list[str]) -> None:
        result = extract("".join(parts))
        self.assertIsInstance(result, str)
        self.assertNotIn("<think>", result)


if __name__ == "__main__":
    unittest.main()
