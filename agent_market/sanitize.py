from __future__ import annotations

import math
from collections.abc import Iterable
from urllib.parse import urlparse

from agent_market.errors import InvalidInput


def clean_text(value: object, *, field: str, max_len: int, required: bool = True) -> str:
    """NUL-strip, trim and truncate free text. Escaping is left to whatever renders it."""
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise InvalidInput(f"{field} must be a string", field=field)
    text = value.replace("\x00", "").strip()[:max_len]
    if required and not text:
        raise InvalidInput(f"{field} is required", field=field)
    return text


def clean_optional_text(value: object, *, field: str, max_len: int) -> str | None:
    if value is None:
        return None
    text = clean_text(value, field=field, max_len=max_len, required=False)
    return text or None


def clean_skills(skills: Iterable[object] | None, *, max_len: int, max_count: int) -> list[str]:
    if skills is None:
        return []
    if isinstance(skills, str):
        raise InvalidInput("skills must be a list of strings", field="skills")
    out: list[str] = []
    for raw in skills:
        if not isinstance(raw, str):
            continue
        skill = raw.replace("\x00", "").strip()[:max_len]
        if skill:
            out.append(skill)
    return out[:max_count]


def is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def require_int(value: object, *, field: str, minimum: int) -> int:
    # bool is an int subclass; True is not a reward.
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{field} must be an integer", field=field)
    if value < minimum:
        raise InvalidInput(f"{field} must be at least {minimum}", field=field, value=value)
    return value


def require_finite(value: object, *, field: str, minimum: float = 0) -> float:
    # NaN and inf would be journaled as null and break replay.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"{field} must be a number", field=field)
    if not math.isfinite(value):
        raise InvalidInput(f"{field} must be finite", field=field)
    if value < minimum:
        raise InvalidInput(f"{field} must be at least {minimum}", field=field, value=value)
    return value
