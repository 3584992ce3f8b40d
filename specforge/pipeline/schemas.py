from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from jsonschema import Draft202012Validator

from ..domain.errors import ParseFailure

T = TypeVar("T")

REFINE_OUTPUT = "refine.output.v1"
TESTS_OUTPUT = "tests.output.v1"
RESULT = "result.v1"

_PREVIEW_CHARS = 500


def contracts_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "resource" / "contracts"


@lru_cache(maxsize=8)
def load_schema(name: str) -> dict[str, Any]:
    path = contracts_dir() / f"{name}.schema.json"
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def schema_errors(instance: Any, schema: dict[str, Any]) -> list[str]:
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(instance), key=lambda e: e.json_path)
    return [f"{e.json_path or '$'}: {e.message}" for e in errors]


def decode(text: str, schema_name: str, *, build: Optional[Callable[[Any], T]] = None, max_errors: int = 5) -> Any:
    preview = text[:_PREVIEW_CHARS]
    try:
        instance = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"invalid JSON: {e}", preview=preview) from e

    errors = schema_errors(instance, load_schema(schema_name))
    if errors:
        shown = "; ".join(errors[:max_errors])
        more = f" (+{len(errors) - max_errors} more)" if len(errors) > max_errors else ""
        raise ParseFailure(f"{schema_name} schema mismatch: {shown}{more}", preview=preview)

    if build is None:
        return instance
    try:
        return build(instance)
    except (TypeError, ValueError) as e:
        raise ParseFailure(f"{schema_name} decode failed: {e}", preview=preview) from e


__all__ = ["REFINE_OUTPUT", "RESULT", "TESTS_OUTPUT", "decode", "load_schema", "schema_errors"]
