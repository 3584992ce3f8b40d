from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

from ..utils.dicts import deep_merge
from ..utils.paths import PROJECT_CONFIG_NAME, resolve_repo_relative


def _load_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f)
    return loaded if isinstance(loaded, dict) else {}


def _load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        loaded = json.load(f)
    return loaded if isinstance(loaded, dict) else {}


def load_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        return _load_yaml(path)
    if suffix == ".json":
        return _load_json(path)
    raise ValueError(f"unsupported config extension: {path}")


def resource_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "resource"


def default_params_path() -> Path:
    return resource_dir() / "specforge.params.v1.yaml"


def params_path(repo_root: Path) -> Path:
    raw = os.environ.get("SPECFORGE_PARAMS_FILE")
    return resolve_repo_relative(repo_root, raw) if raw else default_params_path()


@lru_cache(maxsize=16)
def _load_defaults_from_params(path_str: str) -> dict[str, Any]:
    path = Path(path_str)
    if not path.is_file():
        return {}
    defaults = _load_yaml(path).get("defaults")
    return dict(defaults) if isinstance(defaults, dict) else {}


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    llm = dict(config.get("llm") or {})

    if not llm.get("api_key"):
        llm["api_key"] = os.environ.get("SPECFORGE_API_KEY") or os.environ.get("OPENAI_API_KEY")

    for env_name, key in (
        ("SPECFORGE_BASE_URL", "base_url"),
        ("SPECFORGE_PROVIDER", "provider"),
        ("SPECFORGE_MODEL", "model"),
    ):
        if os.environ.get(env_name):
            llm[key] = os.environ[env_name]

    config = dict(config)
    config["llm"] = llm
    return config


def load_config_for_command(
    *,
    repo_root: Path,
    command_path: tuple[str, ...],
    config_path: Optional[str],
) -> dict[str, Any]:
    _ = command_path
    config: dict[str, Any] = dict(_load_defaults_from_params(str(params_path(repo_root))))

    if config_path:
        config = deep_merge(config, load_config_file(Path(config_path).expanduser()))
    elif (repo_root / PROJECT_CONFIG_NAME).is_file():
        config = deep_merge(config, load_config_file(repo_root / PROJECT_CONFIG_NAME))

    config = _apply_env_overrides(config)
    from .templating import apply_resource_templating

    return apply_resource_templating(config=config, repo_root=repo_root)


__all__ = ["load_config_file", "load_config_for_command", "params_path", "resource_dir"]
