"""High-level orchestration: paginate the listing, fetch, convert and persist articles."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Set, Tuple

from .browser import ListingSource
from .config import CrawlConfig
from .content import parse_listing_page
from .convert import convert
from .images import localize_images
from .markdown import (
    compose_article_markdown,
    compose_failures,
    compose_summary,
    source_link_of,
    statistics_report,
)
from .models import FAILED_TITLE, UNKNOWN_TITLE, ArticleRecord, DetailDocument, FailureRecord
from .utils import sanitize_filename, sha1_hex

logger = logging.getLogger("xz_mdx")

RUNNING_SUMMARY_NAME = "SUMMARY.md"
FAILURE_MARKERS = ("无法获取文章内容", "提取文章内容失败", "访问文章页面失败")


class CrawlError(RuntimeError):
    """Raised when the crawl cannot start at all."""


class FetchFailure(RuntimeError):
    """A detail fetch attempt that produced no usable article."""


class CancellationToken:
    """Cooperative abort flag checked at the top of each unit of work."""

    def __init__(self) -> None:
        self._is_set = False

    def set(self) -> None:
        self._is_set = True

    def is_set(self) -> bool:
        return self._is_set


@dataclass
class CrawlResult:
    """What a crawl run produced, including partial results after cancellation."""

    articles: List[ArticleRecord] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    saved_paths: List[Path] = field(default_factory=list)
    pages_crawled: int = 0
    cancelled: bool = False
    summary_path: Optional[Path] = None
    failures_path: Optional[Path] = None


class CrawlOrchestrator:
    """One crawl run: state is created in ``__init__`` and discarded with the instance."""

    def __init__(
        self,
        config: CrawlConfig,
        source: ListingSource,
        token: Optional[CancellationToken] = None,
        converter: Callable[[str], str] = convert,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.source = source
        self.token = token or CancellationToken()
        self.converter = converter
        self._sleep = sleep
        self._lock: Optional[asyncio.Lock] = None
        self._seen: Set[str] = set()
        self._claimed: Set[str] = set()
        self._file_owners: Dict[str, str] = {}
        self._save_count = 0
        self.result = CrawlResult()

    @property
    def lock(self) -> asyncio.Lock:
        """Guards the dedup sets and result lists; created when the run starts."""
        if self._lock is None:
            raise RuntimeError("CrawlOrchestrator.run() has not started")
        return self._lock

    # --- lifecycle ---------------------------------------------------------

    async def run(self) -> CrawlResult:
        self._lock = asyncio.Lock()
        self.config.papers_dir.mkdir(parents=True, exist_ok=True)
        try:
            await self.source.navigate_to_listing()
        except Exception as exc:  # pylint: disable=broad-except
            raise CrawlError(f"Failed to open {self.config.base_url}: {exc}") from exc

        await self._page_loop()
        self.result.cancelled = self.token.is_set()
        self._finalize()

        if self.config.localize_images and self.result.saved_paths:
            if self.result.cancelled:
                logger.info("Crawl cancelled; skipping image localization")
            else:
                await localize_images(self.result.saved_paths, self.config)
        return self.result

    async def _page_loop(self) -> None:
        page_number = 1
        while page_number <= self.config.max_pages:
            if self.token.is_set():
                logger.info("Cancellation requested; stopping before page %d", page_number)
                return
            logger.info("=== Crawling page %d ===", page_number)
            try:
                fragments = await self.source.current_page_entries()
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Could not read listing page %d: %s", page_number, exc)
                return

            entries = parse_listing_page(fragments, self.config.base_url)
            if not entries:
                logger.info("No articles found on page %d; stopping", page_number)
                return
            self.result.pages_crawled = page_number

            selected = self.filter_entries(entries)
            logger.info(
                "Page %d: %d article(s), %d within the time window",
                page_number,
                len(entries),
                len(selected),
            )
            await self._process_page(selected)

            if self._crossed_boundary(entries, page_number):
                logger.info("Listing has crossed the lower date bound; stopping")
                return
            if page_number >= self.config.max_pages:
                logger.info("Reached the page limit (%d)", self.config.max_pages)
                return
            if self.token.is_set():
                return
            try:
                has_next = await self.source.advance_to_next_page()
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Pagination failed after page %d: %s", page_number, exc)
                return
            if not has_next:
                return
            page_number += 1

    def _finalize(self) -> None:
        timestamp = dt.datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        root = self.config.output_root
        if self.result.articles:
            summary_path = root / f"SUMMARY-{timestamp}.md"
            self._write_summary(summary_path)
            self.result.summary_path = summary_path
            logger.info("Summary index: %s", summary_path)
        else:
            logger.info("No articles to summarize")
        if self.result.failures:
            failures_path = root / f"FAILURES-{timestamp}.md"
            failures_path.write_text(compose_failures(self.result.failures), encoding="utf-8")
            self.result.failures_path = failures_path
            logger.warning("%d article(s) failed; see %s", len(self.result.failures), failures_path)
        for line in statistics_report(self.result.articles):
            logger.info(line)

    # --- filtering ---------------------------------------------------------

    def filter_entries(self, entries: List[ArticleRecord]) -> List[ArticleRecord]:
        selected = []
        for entry in entries:
            if entry.published is None:
                logger.debug("Dropping %r: unparseable time %r", entry.title, entry.publish_time)
                continue
            if self.config.window.contains(entry.published):
                selected.append(entry)
        return selected

    def _crossed_boundary(self, entries: List[ArticleRecord], page_number: int) -> bool:
        lower = self.config.window.lower_bound
        if lower is None:
            return False
        has_older = any(
            entry.published is not None and entry.published <= lower for entry in entries
        )
        return has_older and page_number > self.config.cutoff_min_pages

    # --- fetch & persist ---------------------------------------------------

    async def _process_page(self, entries: List[ArticleRecord]) -> None:
        if not entries:
            return
        cursor = iter(entries)
        worker_count = max(1, min(self.config.concurrency, len(entries)))
        await asyncio.gather(*(self._worker(cursor, index) for index in range(worker_count)))

    async def _worker(self, cursor: Iterator[ArticleRecord], worker_id: int) -> None:
        for record in cursor:
            if self.token.is_set():
                logger.debug("Worker %d observed cancellation", worker_id)
                return
            try:
                await self._process_entry(record)
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Unexpected error processing %s", record.link)
                await self._record_failure(record, f"unexpected error: {exc}")
            if self.config.request_delay and not self.token.is_set():
                await self._sleep(self.config.request_delay)

    async def _process_entry(self, record: ArticleRecord) -> None:
        key = record.identity
        async with self.lock:
            if key in self._seen or key in self._claimed:
                logger.debug("Skipping duplicate %s", key)
                return
            self._claimed.add(key)
        try:
            if self.config.skip_existing and self._already_saved(record):
                logger.info("Already on disk, skipping fetch: %s", record.title)
                async with self.lock:
                    self._seen.add(key)
                    self.result.articles.append(record)
                return

            outcome = await self._fetch_with_retry(record)
            if outcome is None:
                return
            document, markdown = outcome
            # File names follow the listing title so a rerun can find them again.
            listing_title = record.title
            if document.title and document.title not in (UNKNOWN_TITLE, FAILED_TITLE):
                record.title = document.title
            record.content = markdown

            async with self.lock:
                path = self._save_article(record, listing_title)
                self._seen.add(key)
                self.result.articles.append(record)
                self.result.saved_paths.append(path)
                self._save_count += 1
                if self._save_count % self.config.summary_every == 0:
                    self._write_summary(self.config.output_root / RUNNING_SUMMARY_NAME)
            logger.info("Saved %s", path)
        finally:
            self._claimed.discard(key)

    async def _fetch_with_retry(self, record: ArticleRecord) -> Optional[Tuple[DetailDocument, str]]:
        if not record.link:
            await self._record_failure(record, "article has no link")
            return None

        attempts = max(0, self.config.retries) + 1
        last_error = ""
        for attempt in range(attempts):
            if attempt and self.token.is_set():
                break
            try:
                document = await self.source.fetch_detail_document(record.link)
                return document, self._convert_document(document)
            except FetchFailure as exc:
                last_error = str(exc)
            except Exception as exc:  # pylint: disable=broad-except
                last_error = f"{type(exc).__name__}: {exc}"
            if attempt + 1 < attempts and not self.token.is_set():
                delay = self.config.retry_base_delay * (2**attempt)
                logger.warning(
                    "Attempt %d/%d for %s failed (%s); retrying in %.1fs",
                    attempt + 1,
                    attempts,
                    record.link,
                    last_error,
                    delay,
                )
                await self._sleep(delay)

        logger.error("Giving up on %s: %s", record.link, last_error)
        await self._record_failure(record, last_error)
        return None

    def _convert_document(self, document: Optional[DetailDocument]) -> str:
        if document is None:
            raise FetchFailure("empty result")
        if document.error or document.title == FAILED_TITLE:
            raise FetchFailure(document.error or "detail page failed to load")
        if not document.html.strip():
            raise FetchFailure("missing article content")
        if any(marker in document.html for marker in FAILURE_MARKERS):
            raise FetchFailure("failure marker in article content")
        markdown = self.converter(document.html)
        if not markdown.strip():
            raise FetchFailure("article converted to empty content")
        return markdown

    async def _record_failure(self, record: ArticleRecord, message: str) -> None:
        async with self.lock:
            self.result.failures.append(FailureRecord(record.link, record.title, message))

    def _file_names(self, title: str, identity: str) -> Tuple[str, str]:
        base = sanitize_filename(title, identity)
        return base, f"{base[:-3]}_{sha1_hex(identity)[:8]}.md"

    def _saved_from(self, path: Path, record: ArticleRecord) -> bool:
        # Files without a source footer, or articles without a link, cannot be told apart.
        if not record.link:
            return True
        try:
            source = source_link_of(path.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning("Cannot read %s: %s", path, exc)
            return False
        return source is None or source == record.link

    def _owned_by_other(self, name: str, record: ArticleRecord) -> bool:
        owner = self._file_owners.get(name)
        if owner is not None:
            return owner != record.identity
        path = self.config.papers_dir / name
        return path.exists() and not self._saved_from(path, record)

    def _already_saved(self, record: ArticleRecord) -> bool:
        for name in self._file_names(record.title, record.identity):
            if self._owned_by_other(name, record):
                continue
            if (self.config.papers_dir / name).exists():
                record.file_name = name
                self._file_owners[name] = record.identity
                return True
        return False

    def _claim_file_name(self, title: str, record: ArticleRecord) -> str:
        base, suffixed = self._file_names(title, record.identity)
        name = suffixed if self._owned_by_other(base, record) else base
        self._file_owners[name] = record.identity
        return name

    def _save_article(self, record: ArticleRecord, listing_title: str) -> Path:
        record.file_name = self._claim_file_name(listing_title, record)
        path = self.config.papers_dir / record.file_name
        path.write_text(compose_article_markdown(record), encoding="utf-8")
        return path

    def _write_summary(self, path: Path) -> None:
        summary = compose_summary(
            self.result.articles,
            self.config.window,
            self.config.base_url,
        )
        path.write_text(summary, encoding="utf-8")
        logger.debug("Wrote summary index %s (%d article(s))", path, len(self.result.articles))


async def run_crawler(
    config: CrawlConfig,
    source: ListingSource,
    token: Optional[CancellationToken] = None,
) -> CrawlResult:
    """Run one crawl over an already-started listing source."""
    orchestrator = CrawlOrchestrator(config, source, token=token)
    return await orchestrator.run()
