"""Utility helpers for string normalization, hashing and date parsing."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import Optional

UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')
FOLDED_FILENAME_CHARS = re.compile(r"[\s()（）\[\]【】]")
UNDERSCORE_RUN = re.compile(r"_+")
MAX_FILENAME_CHARS = 80

_TIME_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
)


def sha1_hex(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def sanitize_filename(title: str, fallback_seed: str = "") -> str:
    """Turn an article title into a safe ``.md`` file name."""
    name = UNSAFE_FILENAME_CHARS.sub("", title or "")
    name = FOLDED_FILENAME_CHARS.sub("_", name)
    name = UNDERSCORE_RUN.sub("_", name).strip("_")
    name = name[:MAX_FILENAME_CHARS]
    if not name:
        name = f"article_{sha1_hex(fallback_seed or title or '')[:12]}"
    return f"{name}.md"


def parse_publish_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a site-local timestamp; returns ``None`` when unparseable."""
    if not value:
        return None
    text = " ".join(value.split())
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    # Naive local time keeps comparisons with listing timestamps consistent.
    return parsed.replace(tzinfo=None)
