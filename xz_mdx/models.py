"""Data models used throughout the crawler pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Generic, Optional, TypeVar

from .utils import parse_publish_time

T = TypeVar("T")

UNKNOWN_TITLE = "未知标题"
FAILED_TITLE = "访问失败"


@dataclass
class ArticleRecord:
    """A discovered article, refined once its detail page has been fetched."""

    title: str
    link: str
    publish_time: str
    category: str = ""
    author: str = ""
    summary: str = ""
    content: str = ""
    extracted_at: datetime = field(default_factory=datetime.now)
    file_name: Optional[str] = None

    @property
    def identity(self) -> str:
        if self.link:
            return self.link
        return f"{self.title}|{self.publish_time}"

    @property
    def published(self) -> Optional[datetime]:
        return parse_publish_time(self.publish_time)


@dataclass
class FailureRecord:
    """An article whose detail fetch exhausted its retries."""

    link: str
    title: str
    error_message: str


@dataclass
class DetailDocument:
    """Raw result of loading an article's detail page."""

    url: str
    title: str
    html: str
    error: Optional[str] = None

    @classmethod
    def failed(cls, url: str, message: str) -> "DetailDocument":
        return cls(url=url, title=FAILED_TITLE, html="", error=message)


@dataclass
class ImageTask:
    """One image reference found in a finished Markdown document."""

    source_locator: str
    content_hash: str
    target_file_name: str
    original_fragment: str
    embedded: bool = False
    succeeded: bool = False

    def target_path(self, images_dir: Path) -> Path:
        return images_dir / self.target_file_name


@dataclass
class FieldResult(Generic[T]):
    """Outcome of a single field extractor: a value, or a note explaining its absence."""

    value: Optional[T] = None
    note: Optional[str] = None
