from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable, Sequence

import yaml

from ..domain.models import Specification, TestSuite, UserStory

SUPPORTED_EXTENSIONS = (".json", ".yaml", ".yml")


def expand_paths(paths: Iterable[Path]) -> list[Path]:
    expanded: list[Path] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if not path.exists():
            raise FileNotFoundError(path)
        if path.is_dir():
            children = [
                child
                for child in sorted(path.iterdir())
                if child.is_file() and not child.name.startswith(".") and child.suffix.lower() in SUPPORTED_EXTENSIONS
            ]
            expanded.extend(children)
        else:
            expanded.append(path)
    return expanded


def _load_document(path: Path) -> Any:
    suffix = path.suffix.lower()
    with path.open("r", encoding="utf-8") as f:
        if suffix in {".yaml", ".yml"}:
            return yaml.safe_load(f)
        if suffix == ".json":
            return json.load(f)
    raise ValueError(f"unsupported story file extension: {path}")


def _story_objects(doc: Any, *, source: Path) -> list[Any]:
    if isinstance(doc, list):
        return doc
    if isinstance(doc, dict):
        for key in ("user_stories", "stories"):
            value = doc.get(key)
            if isinstance(value, list):
                return value
        if doc.get("external_id") or doc.get("id"):
            return [doc]
    if doc is None:
        return []
    raise ValueError(f"{source}: expected a list of stories or a mapping with a 'stories' list")


def load_stories(paths: Sequence[Path]) -> list[UserStory]:
    stories: list[UserStory] = []
    for path in expand_paths(paths):
        for index, obj in enumerate(_story_objects(_load_document(path), source=path)):
            try:
                stories.append(UserStory.from_obj(obj))
            except (TypeError, ValueError) as e:
                raise ValueError(f"{path}: story #{index + 1}: {e}") from e
    return stories


def load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.write("\n")
    tmp_path.replace(path)


def artifacts_from_result(data: Any) -> tuple[Specification, TestSuite]:
    if not isinstance(data, dict):
        raise TypeError("result must be an object")
    spec = Specification.from_obj(data.get("specification") or {})
    suite = TestSuite.from_obj(data.get("test_suite") or {})
    return spec, suite


__all__ = [
    "SUPPORTED_EXTENSIONS",
    "artifacts_from_result",
    "expand_paths",
    "load_json",
    "load_stories",
    "write_json",
]
