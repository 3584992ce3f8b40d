from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..utils.dicts import section


@dataclass
class PipelineSettings:
    max_retries: int = 3
    token_budget: int = 6000
    workers: int = 1
    gap_fill_enabled: bool = True
    gap_fill_chunk_size: int = 20
    gap_fill_max_passes: int = 2
    refine_system_prompt: str = ""
    generate_system_prompt: str = ""
    project_context: str = ""
    progress: bool = False

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "PipelineSettings":
        pipeline_cfg = section(config, "pipeline")
        gap_cfg = section(config, "pipeline", "gap_fill")
        enabled = gap_cfg.get("enabled")
        return cls(
            max_retries=int(pipeline_cfg.get("max_retries") if pipeline_cfg.get("max_retries") is not None else 3),
            token_budget=int(pipeline_cfg.get("token_budget") or 6000),
            workers=max(1, int(pipeline_cfg.get("workers") or 1)),
            gap_fill_enabled=True if enabled is None else bool(enabled),
            gap_fill_chunk_size=int(gap_cfg.get("chunk_size") or 20),
            gap_fill_max_passes=int(gap_cfg.get("max_passes") if gap_cfg.get("max_passes") is not None else 2),
            refine_system_prompt=str(section(config, "pipeline", "refine").get("system_prompt") or ""),
            generate_system_prompt=str(section(config, "pipeline", "generate").get("system_prompt") or ""),
            project_context=str(pipeline_cfg.get("project_context") or ""),
        )


__all__ = ["PipelineSettings"]
