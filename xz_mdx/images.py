"""Rewrite image references in saved Markdown to locally cached, hash-named files."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional
from urllib.parse import unquote, unquote_to_bytes, urlparse

import requests
from filetype import guess

from .config import CrawlConfig
from .models import ImageTask
from .utils import sha1_hex

logger = logging.getLogger("xz_mdx")

IMAGES_DIRNAME = "images"
HASH_PREFIX_CHARS = 32
DEFAULT_REMOTE_EXTENSION = ".jpg"
DEFAULT_EMBEDDED_EXTENSION = ".png"
ACCEPT_IMAGES = "image/avif,image/webp,image/apng,image/*,*/*;q=0.8"
ACCEPT_LANGUAGE = "zh-CN,zh;q=0.9,en;q=0.8"
CHUNK_SIZE = 64 * 1024

# Inline "broken image" icon the editor substitutes for images it failed to load.
BROKEN_IMAGE_PLACEHOLDER = (
    "data:image/svg+xml;charset=utf-8,%3Csvg%20xmlns%3D%22http%3A%2F%2Fwww.w3.org%2F2000%2Fsvg%22"
    "%20width%3D%2224%22%20height%3D%2224%22%20viewBox%3D%220%200%2024%2024%22%3E%3Cpath%20fill"
    "%3D%22%23BFBFBF%22%20d%3D%22M21%205v6.59l-3-3.01-4%204.01-4-4-4%204-3-3.01V5c0-1.1.9-2%202-2h14"
    "c1.1%200%202%20.9%202%202zm-3%206.42l3%203.01V19c0%201.1-.9%202-2%202H5c-1.1%200-2-.9-2-2v-6.58"
    "l3%202.99%204-4%204%204%204-3.99z%22%2F%3E%3C%2Fsvg%3E"
)
PLACEHOLDER_PAYLOADS: FrozenSet[str] = frozenset({BROKEN_IMAGE_PLACEHOLDER})

IMAGE_REFERENCE = re.compile(r'!\[[^\]]*\]\(((?:https?:|data:image/)[^)\s]+)(?:\s+"[^"]*")?\)')
_URL_EXTENSION = re.compile(r"\.(png|jpe?g|gif|webp|svg|bmp|ico)$")
MEDIA_TYPE_EXTENSIONS: Dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/bmp": ".bmp",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
}


@dataclass
class LocalizationStats:
    scanned: int = 0
    downloaded: int = 0
    cached: int = 0
    embedded_written: int = 0
    failed: int = 0
    files_updated: int = 0


def detect_image_format(data: bytes) -> Optional[str]:
    """Detect image type using filetype; returns lowercase extension."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        ext = kind.extension.lower()
        if ext == "jpeg":
            return "jpg"
        return ext
    return None


def infer_remote_extension(url: str) -> str:
    match = _URL_EXTENSION.search(urlparse(url).path.lower())
    return f".{match.group(1)}" if match else DEFAULT_REMOTE_EXTENSION


def _data_uri_media_type(uri: str) -> str:
    header = uri[len("data:") :].partition(",")[0]
    return header.split(";")[0].strip().lower()


def decode_data_uri(uri: str) -> bytes:
    """Decode a ``data:`` URI payload, base64 or percent-encoded."""
    header, separator, payload = uri[len("data:") :].partition(",")
    if not separator:
        raise ValueError("data URI has no payload separator")
    params = [param.strip().lower() for param in header.split(";")[1:]]
    if "base64" in params:
        return base64.b64decode(unquote(payload))
    return unquote_to_bytes(payload)


def infer_embedded_extension(uri: str) -> str:
    extension = MEDIA_TYPE_EXTENSIONS.get(_data_uri_media_type(uri))
    if extension:
        return extension
    try:
        detected = detect_image_format(decode_data_uri(uri))
    except (binascii.Error, ValueError):
        detected = None
    return f".{detected}" if detected else DEFAULT_EMBEDDED_EXTENSION


def scan_markdown(
    markdown: str,
    placeholders: FrozenSet[str] = PLACEHOLDER_PAYLOADS,
) -> List[ImageTask]:
    """Collect one task per distinct image locator, skipping placeholder payloads."""
    tasks: Dict[str, ImageTask] = {}
    for match in IMAGE_REFERENCE.finditer(markdown):
        locator = match.group(1)
        if locator in placeholders or locator in tasks:
            continue
        embedded = locator.startswith("data:")
        digest = sha1_hex(locator)[:HASH_PREFIX_CHARS]
        extension = infer_embedded_extension(locator) if embedded else infer_remote_extension(locator)
        tasks[locator] = ImageTask(
            source_locator=locator,
            content_hash=digest,
            target_file_name=f"{digest}{extension}",
            original_fragment=match.group(0),
            embedded=embedded,
        )
    return list(tasks.values())


def rewrite_markdown(markdown: str, tasks: Iterable[ImageTask]) -> str:
    """Point every resolved reference at its local copy; unresolved ones stay as-is."""
    local = {
        task.source_locator: f"{IMAGES_DIRNAME}/{task.target_file_name}"
        for task in tasks
        if task.succeeded
    }
    if not local:
        return markdown

    def replace(match: re.Match) -> str:
        locator = match.group(1)
        if locator not in local:
            return match.group(0)
        return match.group(0).replace(locator, local[locator])

    return IMAGE_REFERENCE.sub(replace, markdown)


def build_session(config: CrawlConfig) -> requests.Session:
    session = requests.Session()
    session.max_redirects = config.max_redirects
    session.headers.update(
        {
            "User-Agent": config.user_agent,
            "Accept": ACCEPT_IMAGES,
            "Accept-Language": ACCEPT_LANGUAGE,
            "Referer": config.referer,
        }
    )
    return session


def download_with_referer(
    session: requests.Session,
    url: str,
    destination: Path,
    timeout: float,
) -> None:
    """Stream ``url`` into ``destination``; partial files never take the final name."""
    deadline = time.monotonic() + timeout
    partial = destination.with_name(destination.name + ".part")
    with session.get(url, timeout=timeout, stream=True, allow_redirects=True) as resp:
        if resp.status_code != 200:
            raise requests.HTTPError(f"HTTP {resp.status_code}", response=resp)
        try:
            with partial.open("wb") as handle:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if time.monotonic() > deadline:
                        raise requests.Timeout(f"download exceeded {timeout:.0f}s")
                    if chunk:
                        handle.write(chunk)
            partial.replace(destination)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise


class ImageLocalizer:
    """Localize images for a batch of Markdown files, one file at a time."""

    def __init__(
        self,
        config: CrawlConfig,
        session: Optional[requests.Session] = None,
        placeholders: FrozenSet[str] = PLACEHOLDER_PAYLOADS,
    ) -> None:
        self.config = config
        self.session = session or build_session(config)
        self.placeholders = placeholders
        self.stats = LocalizationStats()

    async def localize(self, markdown_files: Iterable[Path]) -> LocalizationStats:
        files = sorted(set(Path(path) for path in markdown_files))
        logger.info("Localizing images in %d Markdown file(s)", len(files))
        for path in files:
            await self.localize_file(path)
        logger.info(
            "Images: %d scanned, %d downloaded, %d already cached, %d embedded, %d failed",
            self.stats.scanned,
            self.stats.downloaded,
            self.stats.cached,
            self.stats.embedded_written,
            self.stats.failed,
        )
        return self.stats

    async def localize_file(self, path: Path) -> bool:
        try:
            original = path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot read %s: %s", path, exc)
            return False
        tasks = scan_markdown(original, self.placeholders)
        if not tasks:
            return False
        self.stats.scanned += len(tasks)

        images_dir = path.parent / IMAGES_DIRNAME
        images_dir.mkdir(parents=True, exist_ok=True)

        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))
        remote = [task for task in tasks if not task.embedded]
        await asyncio.gather(*(self._resolve_remote(task, images_dir, semaphore) for task in remote))
        for task in tasks:
            if task.embedded:
                self._resolve_embedded(task, images_dir)

        updated = rewrite_markdown(original, tasks)
        if updated == original:
            return False
        path.write_text(updated, encoding="utf-8")
        self.stats.files_updated += 1
        logger.info(
            "Updated %s: %d image link(s)",
            path.name,
            sum(1 for task in tasks if task.succeeded),
        )
        return True

    async def _resolve_remote(
        self,
        task: ImageTask,
        images_dir: Path,
        semaphore: asyncio.Semaphore,
    ) -> None:
        target = task.target_path(images_dir)
        if target.exists():
            task.succeeded = True
            self.stats.cached += 1
            return
        async with semaphore:
            try:
                await asyncio.to_thread(
                    download_with_referer,
                    self.session,
                    task.source_locator,
                    target,
                    self.config.image_timeout,
                )
            except (requests.RequestException, OSError) as exc:
                logger.warning("Download failed: %s -> %s", task.source_locator, exc)
                self.stats.failed += 1
                return
        task.succeeded = True
        self.stats.downloaded += 1

    def _resolve_embedded(self, task: ImageTask, images_dir: Path) -> None:
        target = task.target_path(images_dir)
        if target.exists():
            task.succeeded = True
            self.stats.cached += 1
            return
        try:
            target.write_bytes(decode_data_uri(task.source_locator))
        except (binascii.Error, ValueError, OSError) as exc:
            logger.warning("Could not write embedded image %s: %s", task.target_file_name, exc)
            self.stats.failed += 1
            return
        task.succeeded = True
        self.stats.embedded_written += 1


async def localize_images(
    markdown_files: Iterable[Path],
    config: CrawlConfig,
    session: Optional[requests.Session] = None,
) -> LocalizationStats:
    return await ImageLocalizer(config, session=session).localize(markdown_files)


async def localize_directory(directory: Path, config: CrawlConfig) -> LocalizationStats:
    """Images-only mode: localize every Markdown file directly under ``directory``."""
    if not directory.is_dir():
        logger.info("%s does not exist; nothing to localize", directory)
        return LocalizationStats()
    files = sorted(directory.glob("*.md"))
    if not files:
        logger.info("No Markdown files in %s", directory)
        return LocalizationStats()
    return await localize_images(files, config)
