from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator

import yaml

from ..utils.dicts import deep_merge, section
from ..utils.paths import resolve_repo_relative
from .loaders import params_path, resource_dir

PROMPT_REF_PREFIX = "@prompt:"
_VAR_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_.-]+)\s*\}\}")
# vars may expand to text holding further placeholders
_MAX_RENDER_PASSES = 3


def _read_resource(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f)
    return loaded if isinstance(loaded, dict) else {}


def _iter_prompts(node: Any, prefix: str = "") -> Iterator[tuple[str, str]]:
    """Yield ``(prompt_id, template)`` pairs; a mapping with a string ``template`` is a leaf."""
    if isinstance(node, str):
        if prefix:
            yield prefix, node
        return
    if not isinstance(node, dict):
        return
    if prefix and isinstance(node.get("template"), str):
        yield prefix, node["template"]
        return
    for key, child in node.items():
        if isinstance(key, str):
            yield from _iter_prompts(child, f"{prefix}.{key}" if prefix else key)


@dataclass
class PromptLibrary:
    path: Path
    templates: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, repo_root: Path, config: dict[str, Any]) -> "PromptLibrary":
        raw = section(config, "resource").get("prompts_file") or os.environ.get("SPECFORGE_PROMPTS_FILE")
        path = resolve_repo_relative(repo_root, raw) if raw else resource_dir() / "specforge.prompts.v1.yaml"
        return cls(path=path, templates=dict(_iter_prompts(_read_resource(path).get("prompts") or {})))

    def resolve(self, text: str) -> str:
        ref = text.strip()
        if not ref.startswith(PROMPT_REF_PREFIX):
            return text
        prompt_id = ref[len(PROMPT_REF_PREFIX) :].strip()
        if not prompt_id:
            raise ValueError(f"invalid prompt ref: {text!r}")
        if prompt_id not in self.templates:
            known = ", ".join(sorted(self.templates)) or "none"
            raise KeyError(f"unknown prompt id: {prompt_id} (from {self.path}; known: {known})")
        return self.templates[prompt_id]


@dataclass
class TemplateVars:
    source: Path
    values: dict[str, Any] = field(default_factory=dict)
    strict: bool = False

    @classmethod
    def load(cls, repo_root: Path, config: dict[str, Any]) -> "TemplateVars":
        raw = section(config, "resource").get("params_file")
        path = resolve_repo_relative(repo_root, raw) if raw else params_path(repo_root)
        packaged = section(_read_resource(path), "template")
        configured = section(config, "template")
        return cls(
            source=path,
            values=deep_merge(section(packaged, "vars"), section(configured, "vars")),
            strict=bool(configured.get("strict", packaged.get("strict", False))),
        )

    @property
    def context(self) -> dict[str, Any]:
        return {"vars": self.values, **self.values}


def _lookup(context: dict[str, Any], dotted: str) -> Any:
    cur: Any = context
    for part in dotted.split("."):
        if not isinstance(cur, dict) or part not in cur:
            raise KeyError(dotted)
        cur = cur[part]
    return cur


def render_template_string(text: str, *, context: dict[str, Any], strict: bool) -> str:
    def repl(match: re.Match[str]) -> str:
        try:
            value = _lookup(context, match.group(1))
        except KeyError:
            if strict:
                raise
            return match.group(0)
        return "" if value is None else str(value)

    rendered = text
    for _ in range(_MAX_RENDER_PASSES):
        updated = _VAR_RE.sub(repl, rendered)
        if updated == rendered:
            break
        rendered = updated
    return rendered


def _map_strings(obj: Any, fn: Callable[[str], str]) -> Any:
    if isinstance(obj, str):
        return fn(obj)
    if isinstance(obj, dict):
        return {k: _map_strings(v, fn) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_map_strings(v, fn) for v in obj]
    return obj


def apply_resource_templating(*, config: dict[str, Any], repo_root: Path) -> dict[str, Any]:
    """Swap ``@prompt:<id>`` values for library prompts, then render ``{{var}}`` placeholders."""
    if not section(config, "template").get("enabled", True):
        return config

    library = PromptLibrary.load(repo_root, config)
    template_vars = TemplateVars.load(repo_root, config)
    context = template_vars.context

    def render(value: str) -> str:
        resolved = library.resolve(value)
        try:
            return render_template_string(resolved, context=context, strict=template_vars.strict)
        except KeyError as e:
            missing = str(e).strip("'")
            raise KeyError(f"missing template var: {missing} (params: {template_vars.source})") from e

    return _map_strings(config, render)


__all__ = ["PromptLibrary", "TemplateVars", "apply_resource_templating", "render_template_string"]
