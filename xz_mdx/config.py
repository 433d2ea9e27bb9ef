"""Configuration objects and constants for the crawler."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

from .utils import parse_publish_time

logger = logging.getLogger("xz_mdx")

DEFAULT_BASE_URL = "https://xz.aliyun.com/news"
DEFAULT_REFERER = "https://xz.aliyun.com/"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
CONFIG_FILENAME = "config.json"

_DATE_ONLY = re.compile(r"^\d{4}-\d{1,2}-\d{1,2}$")


@dataclass(frozen=True)
class CrawlWindow:
    """Publish-date filter: an inclusive range or a single "strictly after" threshold."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    target: Optional[datetime] = None

    @classmethod
    def from_strings(
        cls,
        start: Optional[str] = None,
        end: Optional[str] = None,
        target: Optional[str] = None,
    ) -> "CrawlWindow":
        start_dt = _parse_bound(start, "start")
        end_dt = _parse_bound(end, "end")
        if end_dt is not None and end and _DATE_ONLY.match(end.strip()):
            end_dt = end_dt + timedelta(days=1) - timedelta(microseconds=1)
        target_dt = _parse_bound(target, "target") or start_dt
        return cls(start=start_dt, end=end_dt, target=target_dt)

    @property
    def lower_bound(self) -> Optional[datetime]:
        return self.start or self.target

    def contains(self, published: Optional[datetime]) -> bool:
        if published is None:
            return False
        if self.start is None and self.end is None:
            if self.target is not None:
                return published > self.target
            return True
        if self.start is not None and published < self.start:
            return False
        if self.end is not None and published > self.end:
            return False
        return True

    def describe(self) -> str:
        """Human-readable range used in summary headers."""
        if self.start and self.end:
            return f"{self.start:%Y-%m-%d} to {self.end:%Y-%m-%d}"
        if self.start:
            return f"after {self.start:%Y-%m-%d}"
        if self.end:
            return f"until {self.end:%Y-%m-%d}"
        if self.target:
            return f"after {self.target:%Y-%m-%d}"
        return "unbounded"


def _parse_bound(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    parsed = parse_publish_time(value)
    if parsed is None:
        raise ValueError(f"Invalid {name} date: {value!r}")
    return parsed


@dataclass
class CrawlConfig:
    """Top-level settings that control crawling and persistence behaviour."""

    output_root: Path
    base_url: str = DEFAULT_BASE_URL
    referer: str = DEFAULT_REFERER
    user_agent: str = DEFAULT_USER_AGENT
    window: CrawlWindow = field(default_factory=CrawlWindow)
    max_pages: int = 1
    concurrency: int = 3
    retries: int = 1
    retry_base_delay: float = 2.0
    request_delay: float = 1.5
    listing_settle_delay: float = 3.0
    detail_timeout: float = 300.0
    image_timeout: float = 30.0
    max_redirects: int = 5
    cutoff_min_pages: int = 3
    summary_every: int = 3
    localize_images: bool = False
    skip_existing: bool = True
    headless: bool = True

    @property
    def papers_dir(self) -> Path:
        return self.output_root / "papers"


def _env_candidates(key: str) -> Iterable[str]:
    yield key
    yield key.upper()
    yield key.replace("-", "_").upper()
    yield re.sub(r"([a-z])([A-Z])", r"\1_\2", key).upper()


def load_file_config(path: Path) -> Dict[str, Any]:
    """Read ``config.json`` if present; malformed files are ignored."""
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not an object", path)
        return {}
    return data


class SettingResolver:
    """Look up a setting from CLI values, then environment, then config file."""

    def __init__(
        self,
        cli_values: Mapping[str, Any],
        environ: Optional[Mapping[str, str]] = None,
        file_values: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.cli_values = cli_values
        self.environ = os.environ if environ is None else environ
        self.file_values = file_values or {}

    def pick(self, keys: Iterable[str], default: Any = None) -> Any:
        for key in keys:
            if self.cli_values.get(key) is not None:
                return self.cli_values[key]
            for candidate in _env_candidates(key):
                if candidate in self.environ:
                    return self.environ[candidate]
            if self.file_values.get(key) is not None:
                return self.file_values[key]
        return default

    def pick_int(self, keys: Iterable[str], default: int, minimum: int = 1) -> int:
        raw = self.pick(keys, default)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid integer setting %r; using %d", raw, default)
            return default
        return value if value >= minimum else default

    def pick_float(self, keys: Iterable[str], default: float) -> float:
        raw = self.pick(keys, default)
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.warning("Invalid numeric setting %r; using %s", raw, default)
            return default

    def pick_bool(self, keys: Iterable[str], default: bool) -> bool:
        raw = self.pick(keys, default)
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}
