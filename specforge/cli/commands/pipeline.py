from __future__ import annotations

import signal
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from ...domain.errors import PipelineCancelled, PipelineError
from ...io.stories import load_stories, write_json
from ...llm.ollama_port import OllamaPort
from ...llm.openai_port import OpenAIChatPort
from ...llm.port import GenerationPort
from ...llm.replay import ReplayConfig, ReplayPort, ReplayStore
from ...llm.tracing import EventLogger, TokenLedger, TracedPort
from ...pipeline.cancel import CancelToken
from ...pipeline.runner import run_pipeline
from ...pipeline.settings import PipelineSettings
from ...utils.paths import resolve_repo_relative


def _arg(args: Any, name: str, fallback: Any) -> Any:
    value = getattr(args, name, None)
    return value if value is not None else fallback


def _new_run_id() -> str:
    return time.strftime("%Y%m%d-%H%M%S", time.gmtime()) + "-" + uuid.uuid4().hex[:6]


def _live_port(*, args: Any, llm_cfg: dict[str, Any]) -> tuple[GenerationPort, str]:
    provider = str(_arg(args, "provider", llm_cfg.get("provider") or "ollama")).strip().lower()
    model = str(_arg(args, "model", llm_cfg.get("model") or ""))
    base_url = _arg(args, "base_url", llm_cfg.get("base_url"))
    max_tokens = int(llm_cfg.get("max_tokens") or 4096)
    temperature = float(llm_cfg.get("temperature") if llm_cfg.get("temperature") is not None else 0.1)
    timeout = float(llm_cfg.get("timeout") or 300)

    if provider == "openai":
        api_key = _arg(args, "api_key", llm_cfg.get("api_key"))
        if not api_key:
            raise SystemExit("missing LLM api key: pass --api-key or set SPECFORGE_API_KEY/OPENAI_API_KEY")
        port = OpenAIChatPort(
            api_key=api_key,
            base_url=base_url,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
        )
        return port, model
    if provider == "ollama":
        port = OllamaPort(
            model=model,
            base_url=str(base_url or "http://localhost:11434"),
            temperature=temperature,
            max_tokens=max_tokens,
            context_size=int(llm_cfg.get("context_size") or 8192),
            timeout=timeout,
        )
        return port, model
    raise SystemExit(f"unknown llm provider: {provider} (expected openai or ollama)")


def _replay_config(args: Any) -> Optional[ReplayConfig]:
    record_path = getattr(args, "record", None)
    replay_path = getattr(args, "replay", None)
    if record_path and replay_path:
        raise SystemExit("--record and --replay are mutually exclusive")
    if record_path:
        return ReplayConfig(mode="record", path=Path(record_path).expanduser())
    if replay_path:
        return ReplayConfig(mode="replay", path=Path(replay_path).expanduser())
    return None


def _settings(args: Any, config: dict[str, Any]) -> PipelineSettings:
    settings = PipelineSettings.from_config(config)
    settings.max_retries = int(_arg(args, "max_retries", settings.max_retries))
    settings.token_budget = int(_arg(args, "token_budget", settings.token_budget))
    settings.workers = max(1, int(_arg(args, "workers", settings.workers)))
    if getattr(args, "no_gap_fill", False):
        settings.gap_fill_enabled = False
    settings.progress = True
    return settings


def pipeline_run_cmd(*, args: Any, config: dict[str, Any], repo_root: Path) -> int:
    input_paths = [Path(p).expanduser() for p in (getattr(args, "input_paths", None) or [])]
    if not input_paths:
        raise SystemExit("missing input: pass --input <file-or-dir> (repeatable)")
    stories = load_stories(input_paths)
    print(f"Loaded {len(stories)} user story(ies) from {len(input_paths)} path(s)")

    llm_cfg = dict(config.get("llm") or {})
    replay = _replay_config(args)
    if replay is not None and replay.mode == "replay":
        live: Optional[GenerationPort] = None
        model = str(_arg(args, "model", llm_cfg.get("model") or ""))
    else:
        live, model = _live_port(args=args, llm_cfg=llm_cfg)

    paths_cfg = config.get("paths") or {}
    out_dir = resolve_repo_relative(repo_root, _arg(args, "out_dir", paths_cfg.get("out_dir") or "out"))
    run_id = str(_arg(args, "run_id", _new_run_id()))
    run_dir = out_dir / run_id

    events = EventLogger(path=run_dir / "events.jsonl")
    ledger = TokenLedger(csv_path=run_dir / "token_trace.csv")
    port: GenerationPort = ReplayPort(live, store=ReplayStore(replay), model=model) if replay is not None else live
    port = TracedPort(port, events=events, ledger=ledger, model=model)

    cancel = CancelToken()

    def on_sigint(_signum: int, _frame: Any) -> None:
        print("Cancelling after the in-flight request...")
        cancel.cancel()

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        result = run_pipeline(
            stories,
            port=port,
            settings=_settings(args, config),
            cancel=cancel,
            events=events,
            run_id=run_id,
        )
    except PipelineCancelled:
        print(f"CANCELLED: run {run_id} (no result written)")
        return 130
    except PipelineError as e:
        print(f"ERROR: {e}")
        print(f"Trace: {run_dir / 'events.jsonl'}")
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    result_path = run_dir / "result.json"
    write_json(result_path, result.to_dict())

    summary = result.traceability.summary
    print(f"Requirements: {summary.total}  Scenarios: {result.test_suite.total_scenarios}")
    print(
        f"Coverage: {summary.forward_coverage_pct:.1f}% "
        f"(full={summary.fully_covered} partial={summary.partially_covered} "
        f"none={summary.not_covered} alternate={summary.verified_alternate}) orphans={summary.orphans}"
    )
    if result.warnings:
        print(f"Warnings: {len(result.warnings)}")
    print(f"Result: {result_path}")
    return 0


__all__ = ["pipeline_run_cmd"]
