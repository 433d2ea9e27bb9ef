"""Listing-fragment parsing and detail-page extraction utilities."""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from readability import Document
from readability.readability import Unparseable

from .models import UNKNOWN_TITLE, ArticleRecord, DetailDocument, FieldResult

logger = logging.getLogger("xz_mdx")

NEWS_LINK_SELECTOR = 'a[href*="/news/"]'
CATEGORY_LINK_SELECTOR = 'a[href*="cate_id="]'
AUTHOR_LINK_SELECTOR = 'a[href*="/users/"]'
DETAIL_BODY_SELECTOR = ".ne-viewer-body"
DETAIL_TITLE_SELECTORS = ("h1", ".article-title", ".entry-title", "title")
PAGE_TITLE_SUFFIX = "-先知社区"
VIEW_COUNTER = "浏览"

_LISTING_TIME = re.compile(r"·\s*\d+浏览\s*·\s*(\d{4}-\d{1,2}-\d{1,2}\s+\d{1,2}:\d{2})")
_BARE_TIME = re.compile(r"(\d{4}-\d{1,2}-\d{1,2}\s+\d{1,2}:\d{2})")
_MIN_TITLE_CHARS = 5
_MIN_SUMMARY_CHARS = 20
_MAX_SUMMARY_CHARS = 200


def _text(node: Optional[Tag]) -> str:
    return node.get_text().strip() if node is not None else ""


def _headline_anchor(root: Tag) -> Optional[Tag]:
    # The first /news/ anchor wraps the cover; the second carries the headline.
    links = root.select(NEWS_LINK_SELECTOR)
    if len(links) >= 2:
        return links[1]
    return links[0] if links else None


def extract_title(root: Tag) -> FieldResult[str]:
    anchor = _headline_anchor(root)
    if anchor is None:
        return FieldResult(note="no article link")
    title = _text(anchor)
    if len(title) <= _MIN_TITLE_CHARS:
        return FieldResult(note=f"title too short: {title!r}")
    return FieldResult(title)


def extract_link(root: Tag, base_url: str) -> FieldResult[str]:
    anchor = _headline_anchor(root)
    href = anchor.get("href") if anchor is not None else None
    if not href:
        return FieldResult(note="no href on article link")
    if href.startswith("http"):
        return FieldResult(href)
    return FieldResult(urljoin(base_url, href))


def extract_publish_time(root: Tag) -> FieldResult[str]:
    text = root.get_text(" ")
    match = _LISTING_TIME.search(text) or _BARE_TIME.search(text)
    if not match:
        return FieldResult(note="no publish time")
    return FieldResult(" ".join(match.group(1).split()))


def extract_category(root: Tag) -> FieldResult[str]:
    category = _text(root.select_one(CATEGORY_LINK_SELECTOR))
    return FieldResult(category) if category else FieldResult(note="no category")


def extract_author(root: Tag) -> FieldResult[str]:
    anchor = root.select_one(AUTHOR_LINK_SELECTOR)
    if anchor is None:
        return FieldResult(note="no author")
    # The anchor also holds "published in <region>" on a later line.
    lines = [line.strip() for line in anchor.get_text().split("\n") if line.strip()]
    return FieldResult(lines[0]) if lines else FieldResult(note="empty author")


def extract_summary(root: Tag, title: str) -> FieldResult[str]:
    for paragraph in root.select("p"):
        text = _text(paragraph)
        if len(text) > _MIN_SUMMARY_CHARS and text != title and VIEW_COUNTER not in text:
            return FieldResult(text[:_MAX_SUMMARY_CHARS])
    return FieldResult(note="no summary paragraph")


def parse_listing_entry(fragment: str, base_url: str) -> Tuple[Optional[ArticleRecord], List[str]]:
    """Build an :class:`ArticleRecord` from one listing item's markup.

    Returns the record (``None`` when the entry has no usable title) together
    with soft-failure notes from the individual field extractors.
    """
    root = BeautifulSoup(fragment, "html.parser")
    title = extract_title(root)
    fields: Dict[str, FieldResult[str]] = {
        "title": title,
        "link": extract_link(root, base_url),
        "publish_time": extract_publish_time(root),
        "category": extract_category(root),
        "author": extract_author(root),
        "summary": extract_summary(root, title.value or ""),
    }
    notes = [f"{name}: {result.note}" for name, result in fields.items() if result.note]
    if title.value is None:
        return None, notes
    record = ArticleRecord(
        title=title.value,
        link=fields["link"].value or "",
        publish_time=fields["publish_time"].value or "",
        category=fields["category"].value or "",
        author=fields["author"].value or "",
        summary=fields["summary"].value or "",
    )
    return record, notes


def parse_listing_page(fragments: List[str], base_url: str) -> List[ArticleRecord]:
    records: List[ArticleRecord] = []
    for index, fragment in enumerate(fragments, start=1):
        record, notes = parse_listing_entry(fragment, base_url)
        for note in notes:
            logger.debug("Listing entry %d: %s", index, note)
        if record is not None:
            records.append(record)
    return records


def _extract_detail_title(soup: BeautifulSoup, page_title: str) -> str:
    for selector in DETAIL_TITLE_SELECTORS:
        text = " ".join(_text(soup.select_one(selector)).split())
        if len(text) > _MIN_TITLE_CHARS:
            if text.endswith(PAGE_TITLE_SUFFIX):
                text = text[: -len(PAGE_TITLE_SUFFIX)].strip()
            return text
    if page_title and PAGE_TITLE_SUFFIX in page_title:
        return page_title.replace(PAGE_TITLE_SUFFIX, "").strip()
    return ""


def extract_detail(page_html: str, page_title: str, url: str) -> DetailDocument:
    """Pull the article title and rich-editor body out of a rendered detail page."""
    soup = BeautifulSoup(page_html, "html.parser")
    title = _extract_detail_title(soup, page_title) or UNKNOWN_TITLE

    body = soup.select_one(DETAIL_BODY_SELECTOR)
    if body is not None:
        fragment = body.decode_contents()
    else:
        logger.debug("No %s on %s; using readability summary", DETAIL_BODY_SELECTOR, url)
        try:
            fragment = Document(page_html).summary(html_partial=True)
        except Unparseable as exc:
            logger.warning("Readability could not parse %s: %s", url, exc)
            fragment = ""
    return DetailDocument(url=url, title=title, html=fragment)
