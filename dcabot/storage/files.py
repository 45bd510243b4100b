from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from dcabot.errors import CorruptStoreError, StoreIOError

DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "dcabot"


def resolve_data_dir(configured: str | Path | None = None) -> Path:
    """Application data directory, created on first use."""
    raw = os.getenv("DCA_DATA_DIR") or configured
    data_dir = Path(raw).expanduser() if raw else DEFAULT_DATA_DIR
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StoreIOError(f"Could not read {path}: {exc}") from exc


def parse_json(path: Path, content: str) -> Any:
    try:
        return json.loads(content)
    except ValueError as exc:
        raise CorruptStoreError(f"Malformed JSON in {path}: {exc}") from exc


def write_json(path: Path, payload: Any) -> None:
    """Whole-file overwrite through a temp file so readers never see a partial write."""
    text = json.dumps(payload, ensure_ascii=False)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(path)
    except OSError as exc:
        raise StoreIOError(f"Could not write {path}: {exc}") from exc
