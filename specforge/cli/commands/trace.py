from __future__ import annotations

from pathlib import Path
from typing import Any

from ...io.stories import artifacts_from_result, load_json, write_json
from ...pipeline.traceability import build_traceability


def trace_cmd(*, args: Any, config: dict[str, Any], repo_root: Path) -> int:
    _ = config, repo_root
    input_path = Path(args.input).expanduser()
    spec, suite = artifacts_from_result(load_json(input_path))
    matrix = build_traceability(spec, suite)

    for entry in matrix.entries:
        covering = ", ".join(entry.covering_scenarios) or "-"
        print(f"{entry.requirement_id:<8} {entry.priority:<3} {entry.status:<18} {covering}")
    for orphan in matrix.orphans:
        print(f"orphan   {orphan}")

    summary = matrix.summary
    print(
        f"forward coverage {summary.forward_coverage_pct:.1f}% over {summary.total} requirement(s), "
        f"{summary.orphans} orphan(s)"
    )

    output = getattr(args, "output", None)
    if output:
        write_json(Path(output).expanduser(), matrix.to_dict())
        print(f"Wrote {output}")

    fail_under = getattr(args, "fail_under", None)
    if fail_under is not None and summary.forward_coverage_pct < float(fail_under):
        print(f"FAIL: coverage below {float(fail_under):.1f}%")
        return 1
    return 0


__all__ = ["trace_cmd"]
