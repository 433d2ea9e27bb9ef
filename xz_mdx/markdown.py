"""Markdown composition for article files, summary indexes and failure reports."""

from __future__ import annotations

import datetime as dt
import re
from collections import Counter
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import CrawlWindow
from .models import ArticleRecord, FailureRecord

SITE_NAME = "Xianzhi Community"
UNCATEGORIZED = "Uncategorized"
UNKNOWN = "Unknown"
MISSING_CONTENT_NOTE = "> Full content unavailable; follow the source link below."
SOURCE_PREFIX = "> Source: "

# A fence opens on a line of 3+ backticks or tildes and closes on a line of at
# least as many of the same character.
_FENCE_OPEN = re.compile(r"^ {0,3}(`{3,}|~{3,})(.*)$")
_FENCE_CLOSE = re.compile(r"^ {0,3}(`{3,}|~{3,})[ \t]*$")
# A blank-like line may hold whitespace and invisible characters (NBSP, ZWSP, BOM ...).
_BLANK_LIKE_RUN = re.compile(
    r"(?:^[\s\u00a0\u3000\u200b\u200c\u200d\u200e\u200f\u2060\ufeff]*\n){2,}",
    re.MULTILINE,
)
_MAX_INDEX_TITLE_CHARS = 50


def _split_fenced(markdown: str) -> List[Tuple[bool, str]]:
    """Split text into ``(is_code, chunk)`` pieces; an unclosed fence runs to the end."""
    segments: List[Tuple[bool, str]] = []
    buffer: List[str] = []
    fence: Optional[str] = None
    lines = markdown.split("\n")
    for index, line in enumerate(lines):
        line_with_end = line + "\n" if index < len(lines) - 1 else line
        if fence is None:
            opening = _FENCE_OPEN.match(line)
            if opening and not (opening.group(1)[0] == "`" and "`" in opening.group(2)):
                if buffer:
                    segments.append((False, "".join(buffer)))
                    buffer = []
                fence = opening.group(1)
            buffer.append(line_with_end)
            continue
        buffer.append(line_with_end)
        closing = _FENCE_CLOSE.match(line)
        if closing and closing.group(1)[0] == fence[0] and len(closing.group(1)) >= len(fence):
            segments.append((True, "".join(buffer)))
            buffer = []
            fence = None
    if buffer:
        segments.append((fence is not None, "".join(buffer)))
    return segments


def collapse_blank_lines(markdown: str) -> str:
    """Collapse runs of blank-like lines to one empty line outside code fences."""
    text = markdown.replace("\r\n", "\n").replace("\r", "\n")
    normalized: List[str] = []
    for is_code, chunk in _split_fenced(text):
        normalized.append(chunk if is_code else _BLANK_LIKE_RUN.sub("\n", chunk))
    return "".join(normalized)


def compose_article_markdown(record: ArticleRecord) -> str:
    """Generate the per-article Markdown file body."""
    sections = [f"# {record.title}\n\n"]
    if record.content.strip():
        sections.append(record.content.strip("\n") + "\n\n")
    else:
        sections.append(MISSING_CONTENT_NOTE + "\n\n")

    extracted = record.extracted_at.replace(microsecond=0).isoformat(sep=" ")
    sections.append("---\n\n")
    sections.append("> Generated by xz-mdx  \n")
    sections.append(f"{SOURCE_PREFIX}{record.link}  \n")
    sections.append(f"> Extracted at: {extracted}  \n")
    return collapse_blank_lines("".join(sections))


def _sort_key(record: ArticleRecord):
    published = record.published
    return (published is not None, published or dt.datetime.min)


def sort_by_publish_time(records: Iterable[ArticleRecord]) -> List[ArticleRecord]:
    """Newest first; records without a parseable time go last."""
    return sorted(records, key=_sort_key, reverse=True)


def category_counts(records: Iterable[ArticleRecord]) -> List[tuple]:
    counts = Counter(record.category or UNCATEGORIZED for record in records)
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def _table_cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def compose_summary(
    records: Sequence[ArticleRecord],
    window: CrawlWindow,
    source_url: str,
    generated_at: Optional[dt.datetime] = None,
    papers_prefix: str = "papers",
) -> str:
    """Build the summary index: metadata header, category breakdown, article table."""
    generated_at = generated_at or dt.datetime.now()
    lines = [
        f"# {SITE_NAME} Articles",
        "",
        f"> Crawled at: {generated_at.replace(microsecond=0).isoformat(sep=' ')}",
        f"> Articles: {len(records)}",
        f"> Time range: {window.describe()}",
        f"> Source: [{SITE_NAME}]({source_url})",
        "",
        "## Categories",
        "",
    ]
    for category, count in category_counts(records):
        lines.append(f"- **{category}**: {count}")
    lines.extend(["", "---", "", "## Articles", ""])
    lines.append("| # | Title | Category | Author | Published | File |")
    lines.append("|---|---|---|---|---|---|")

    for index, record in enumerate(sort_by_publish_time(records), start=1):
        title = record.title
        if len(title) > _MAX_INDEX_TITLE_CHARS:
            title = title[:_MAX_INDEX_TITLE_CHARS] + "..."
        target = f"{papers_prefix}/{record.file_name}" if record.file_name else record.link
        lines.append(
            "| {index} | [{title}]({target}) | {category} | {author} | {published} | [file]({target}) |".format(
                index=index,
                title=_table_cell(title),
                target=target,
                category=_table_cell(record.category or UNCATEGORIZED),
                author=_table_cell(record.author or UNKNOWN),
                published=record.publish_time or UNKNOWN,
            )
        )
    lines.append("")
    return "\n".join(lines)


def compose_failures(failures: Sequence[FailureRecord]) -> str:
    lines = [
        "# Failed Articles",
        "",
        f"> Count: {len(failures)}",
        "",
        "| Link | Title | Error |",
        "|---|---|---|",
    ]
    for failure in failures:
        lines.append(
            f"| {failure.link} | {_table_cell(failure.title)} | {_table_cell(failure.error_message)} |"
        )
    lines.append("")
    return "\n".join(lines)


def statistics_report(records: Sequence[ArticleRecord]) -> List[str]:
    """Plain-text crawl statistics: per category, per day (latest 10), newest 5."""
    lines = [f"Total articles: {len(records)}", "By category:"]
    for category, count in category_counts(records):
        lines.append(f"  {category}: {count}")

    days = Counter(record.published.date() for record in records if record.published is not None)
    lines.append("By day (latest 10):")
    for day, count in sorted(days.items(), reverse=True)[:10]:
        lines.append(f"  {day.isoformat()}: {count}")

    lines.append("Latest 5 articles:")
    for index, record in enumerate(sort_by_publish_time(records)[:5], start=1):
        lines.append(f"  {index}. {record.title} ({record.publish_time})")
    return lines


def source_link_of(markdown: str) -> Optional[str]:
    """Return the source link recorded in an article file's footer, if any."""
    for line in reversed(markdown.splitlines()):
        if line.startswith(SOURCE_PREFIX):
            return line[len(SOURCE_PREFIX) :].strip()
    return None
