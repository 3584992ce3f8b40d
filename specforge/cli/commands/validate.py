from __future__ import annotations

from pathlib import Path
from typing import Any

from ...io.stories import load_json
from ...pipeline.schemas import RESULT, load_schema, schema_errors


def validate_result_cmd(*, args: Any, config: dict[str, Any], repo_root: Path) -> int:
    _ = repo_root
    input_path = Path(args.input).expanduser()
    errors = schema_errors(load_json(input_path), load_schema(RESULT))
    total = len(errors)
    if total:
        print(f"INVALID: {input_path}")
        max_errors_arg = getattr(args, "max_errors", None)
        if max_errors_arg is None:
            max_errors_arg = (config.get("validate") or {}).get("max_errors")
        max_errors = int(max_errors_arg if max_errors_arg is not None else 50)
        for err in errors[:max_errors]:
            print(f"- {err}")
        if max_errors and total > max_errors:
            print(f"... {total - max_errors} more")
        return 1
    print(f"OK: {input_path}")
    return 0


__all__ = ["validate_result_cmd"]
