from __future__ import annotations

from typing import Any


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    if not base:
        return dict(override)
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def section(config: dict[str, Any], *keys: str) -> dict[str, Any]:
    cur: Any = config
    for key in keys:
        cur = cur.get(key) if isinstance(cur, dict) else None
    return dict(cur) if isinstance(cur, dict) else {}
