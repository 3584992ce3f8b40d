from __future__ import annotations

from pathlib import Path
from typing import Union

PROJECT_CONFIG_NAME = "specforge.yaml"


def find_repo_root(start_dir: Path) -> Path:
    start_dir = start_dir.resolve()
    for candidate in [start_dir, *start_dir.parents]:
        if (candidate / PROJECT_CONFIG_NAME).is_file():
            return candidate
    return start_dir


def resolve_repo_relative(repo_root: Path, value: Union[str, Path]) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else (repo_root / path)
