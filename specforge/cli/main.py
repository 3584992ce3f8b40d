from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import Any, Optional, Sequence

from .. import __version__
from ..config.loaders import load_config_for_command
from ..utils.paths import find_repo_root
from .commands.pipeline import pipeline_run_cmd
from .commands.trace import trace_cmd
from .commands.validate import validate_result_cmd

_DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="specforge",
        description="Batch refinement, test generation and traceability for requirement documents.",
        argument_default=argparse.SUPPRESS,
    )
    parser.add_argument("--version", action="version", version=f"specforge {__version__}")
    parser.add_argument("--config", type=str, help="Path to YAML/JSON config file.")
    parser.add_argument("--cwd", type=str, help="Working directory.")
    parser.add_argument("--verbose", action="store_true")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")

    pipeline_parser = subparsers.add_parser(
        "pipeline",
        help="End-to-end pipeline commands.",
        argument_default=argparse.SUPPRESS,
    )
    pipeline_sub = pipeline_parser.add_subparsers(dest="pipeline_cmd", metavar="<subcommand>")
    pipeline_run = pipeline_sub.add_parser(
        "run",
        help="Refine user stories, generate tests and compute traceability.",
        argument_default=argparse.SUPPRESS,
    )
    pipeline_run.add_argument(
        "--input",
        action="append",
        dest="input_paths",
        help="User story file (.json/.yaml) or directory; repeatable.",
    )
    pipeline_run.add_argument("--provider", type=str, choices=["openai", "ollama"])
    pipeline_run.add_argument("--api-key", type=str)
    pipeline_run.add_argument("--base-url", type=str)
    pipeline_run.add_argument("--model", type=str)
    pipeline_run.add_argument("--max-retries", type=int, help="Retries per request after the first attempt.")
    pipeline_run.add_argument("--token-budget", type=int, help="Estimated token budget per batch.")
    pipeline_run.add_argument("--workers", type=int, help="Concurrent batches (default: 1).")
    pipeline_run.add_argument("--no-gap-fill", action="store_true", dest="no_gap_fill", help="Skip the gap-fill pass.")
    pipeline_run.add_argument("--record", type=str, help="Record LLM responses to a JSONL file.")
    pipeline_run.add_argument("--replay", type=str, help="Replay LLM responses from a JSONL file.")
    pipeline_run.add_argument("--out-dir", type=str)
    pipeline_run.add_argument("--run-id", type=str, help="Run id (default: timestamp based).")
    pipeline_run.set_defaults(handler=pipeline_run_cmd, _command_path=("pipeline", "run"))

    trace_parser = subparsers.add_parser(
        "trace",
        help="Recompute traceability from a result.json.",
        argument_default=argparse.SUPPRESS,
    )
    trace_parser.add_argument("--input", type=str, required=True)
    trace_parser.add_argument("--output", type=str, help="Write the traceability matrix as JSON.")
    trace_parser.add_argument("--fail-under", type=float, dest="fail_under", help="Exit 1 below this coverage %%.")
    trace_parser.set_defaults(handler=trace_cmd, _command_path=("trace",))

    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate artifacts against bundled schemas.",
        argument_default=argparse.SUPPRESS,
    )
    validate_sub = validate_parser.add_subparsers(dest="validate_cmd", metavar="<artifact>")
    validate_result = validate_sub.add_parser("result", help="Validate result.json.", argument_default=argparse.SUPPRESS)
    validate_result.add_argument("--input", type=str, required=True)
    validate_result.add_argument(
        "--max-errors",
        type=int,
        help="Maximum number of schema errors to print (0 = print none).",
    )
    validate_result.set_defaults(handler=validate_result_cmd, _command_path=("validate", "result"))

    return parser


def _configure_logging(config: dict[str, Any], *, verbose: bool) -> None:
    log_cfg = config.get("logging") or {}
    level_name = "DEBUG" if verbose else str(log_cfg.get("level") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=str(log_cfg.get("format") or _DEFAULT_LOG_FORMAT),
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if getattr(args, "cwd", None):
        os.chdir(args.cwd)

    repo_root = find_repo_root(Path.cwd())

    if not hasattr(args, "handler"):
        parser.print_help()
        return 2

    config = load_config_for_command(
        repo_root=repo_root,
        command_path=getattr(args, "_command_path", ()),
        config_path=getattr(args, "config", None),
    )
    _configure_logging(config, verbose=bool(getattr(args, "verbose", False)))

    return int(args.handler(args=args, config=config, repo_root=repo_root))


__all__ = ["main"]
