from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_day_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d")


def serialize_for_redis(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def optional_text(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
