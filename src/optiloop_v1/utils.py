from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import orjson
from blake3 import blake3


def canonical_dumps(data: Any) -> bytes:
    return orjson.dumps(data, option=orjson.OPT_SORT_KEYS)


def stable_hash(data: Any) -> str:
    return blake3(canonical_dumps(data)).hexdigest()


def short_hash(data: Any, length: int = 5) -> str:
    return stable_hash(data)[:length]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def epoch_seconds(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def write_json(path: Path, data: Any) -> None:
    ensure_dir(path.parent)
    payload = canonical_dumps(data)
    if not payload.endswith(b"\n"):
        payload += b"\n"
    path.write_bytes(payload)


def read_json(path: Path) -> Any:
    return orjson.loads(path.read_bytes())


def parse_number(text: str) -> Optional[float]:
    """Strict float syntax: no surrounding whitespace, no digit separators."""
    if not text or text != text.strip() or "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None
