"""Command-line entry point for the xz-mdx crawler."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from .browser import PlaywrightListingSource
from .config import (
    CONFIG_FILENAME,
    CrawlConfig,
    CrawlWindow,
    SettingResolver,
    load_file_config,
)
from .crawler import CancellationToken, CrawlError, CrawlResult, run_crawler
from .images import localize_directory

logger = logging.getLogger("xz_mdx.cli")

# argparse dest -> keys looked up in the environment and config.json
SETTING_KEYS: Dict[str, Sequence[str]] = {
    "output": ("output", "outputDir"),
    "start_date": ("startDate", "start-date"),
    "end_date": ("endDate", "end-date"),
    "target_date": ("targetDate", "target-date"),
    "max_pages": ("maxPages", "max-pages"),
    "concurrency": ("concurrency",),
    "retries": ("retries",),
    "retry_delay": ("retryDelay", "retry-delay"),
    "request_delay": ("requestDelay", "request-delay"),
    "timeout": ("timeout",),
    "image_timeout": ("imageTimeout", "image-timeout"),
    "localize_images": ("localizeImages", "localize-images"),
    "skip_existing": ("skipExisting", "skip-existing"),
    "headed": ("headed",),
}


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return ("crawl",)
    first = argv[0]
    if first in commands or first in ("-h", "--help"):
        return argv
    return ("crawl", *argv)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Directory where Markdown, summaries and images are written (default: output)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Settings file (default: ./{CONFIG_FILENAME} if present)",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent workers")
    parser.add_argument(
        "--image-timeout",
        type=float,
        default=None,
        help="Seconds allowed for a single image download",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")


def _add_crawl_arguments(parser: argparse.ArgumentParser) -> None:
    _add_common_arguments(parser)
    parser.add_argument("--start-date", default=None, help="Inclusive lower publish-date bound")
    parser.add_argument("--end-date", default=None, help="Inclusive upper publish-date bound")
    parser.add_argument(
        "--target-date",
        default=None,
        help="Keep articles published strictly after this date (ignored when a range is given)",
    )
    parser.add_argument("--max-pages", type=int, default=None, help="Maximum listing pages to crawl")
    parser.add_argument("--retries", type=int, default=None, help="Retries per article fetch")
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=None,
        help="Base backoff delay in seconds, doubled per attempt",
    )
    parser.add_argument(
        "--request-delay",
        type=float,
        default=None,
        help="Seconds each worker pauses between articles",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Navigation timeout in seconds for article pages",
    )
    parser.add_argument(
        "--localize-images",
        action="store_true",
        default=None,
        help="Download images referenced by saved articles after the crawl",
    )
    parser.add_argument(
        "--no-skip-existing",
        dest="skip_existing",
        action="store_false",
        default=None,
        help="Refetch articles whose Markdown file already exists",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        default=None,
        help="Show the browser window",
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Mirror Xianzhi community articles to local Markdown via Playwright.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    crawl_parser = subparsers.add_parser("crawl", help="Crawl the listing and save articles")
    _add_crawl_arguments(crawl_parser)

    images_parser = subparsers.add_parser(
        "images", help="Only localize images in already-saved Markdown files"
    )
    _add_common_arguments(images_parser)

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def build_config(
    args: argparse.Namespace,
    environ: Optional[Mapping[str, str]] = None,
) -> CrawlConfig:
    """Resolve settings with precedence CLI > environment > config file > defaults."""
    config_path = args.config or Path.cwd() / CONFIG_FILENAME
    cli_values: Dict[str, Any] = {}
    for dest, keys in SETTING_KEYS.items():
        value = getattr(args, dest, None)
        if value is not None:
            for key in keys:
                cli_values[key] = value
    resolver = SettingResolver(cli_values, environ, load_file_config(config_path))

    defaults = CrawlConfig(output_root=Path("output"))
    window = CrawlWindow.from_strings(
        resolver.pick(SETTING_KEYS["start_date"]),
        resolver.pick(SETTING_KEYS["end_date"]),
        resolver.pick(SETTING_KEYS["target_date"]),
    )
    return CrawlConfig(
        output_root=Path(resolver.pick(SETTING_KEYS["output"], "output")).resolve(),
        window=window,
        max_pages=resolver.pick_int(SETTING_KEYS["max_pages"], defaults.max_pages),
        concurrency=resolver.pick_int(SETTING_KEYS["concurrency"], defaults.concurrency),
        retries=resolver.pick_int(SETTING_KEYS["retries"], defaults.retries, minimum=0),
        retry_base_delay=resolver.pick_float(SETTING_KEYS["retry_delay"], defaults.retry_base_delay),
        request_delay=resolver.pick_float(SETTING_KEYS["request_delay"], defaults.request_delay),
        detail_timeout=resolver.pick_float(SETTING_KEYS["timeout"], defaults.detail_timeout),
        image_timeout=resolver.pick_float(SETTING_KEYS["image_timeout"], defaults.image_timeout),
        localize_images=resolver.pick_bool(SETTING_KEYS["localize_images"], defaults.localize_images),
        skip_existing=resolver.pick_bool(SETTING_KEYS["skip_existing"], defaults.skip_existing),
        headless=not resolver.pick_bool(SETTING_KEYS["headed"], False),
    )


def _install_signal_handlers(token: CancellationToken) -> None:
    def _request_stop(*_: Any) -> None:
        if not token.is_set():
            logger.warning("Interrupt received; finishing in-flight work and writing summaries")
        token.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except (NotImplementedError, RuntimeError):
            signal.signal(sig, _request_stop)


async def _crawl(config: CrawlConfig, token: CancellationToken) -> CrawlResult:
    _install_signal_handlers(token)
    async with PlaywrightListingSource(config) as source:
        return await run_crawler(config, source, token)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _run_crawl(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
    except ValueError as exc:
        logger.error("Invalid settings: %s", exc)
        return 2
    logger.info(
        "Settings: output=%s window=%s max_pages=%d concurrency=%d retries=%d",
        config.output_root,
        config.window.describe(),
        config.max_pages,
        config.concurrency,
        config.retries,
    )
    token = CancellationToken()
    overall_start = time.perf_counter()
    try:
        result = asyncio.run(_crawl(config, token))
    except CrawlError as exc:
        logger.error("%s", exc)
        return 1
    total_elapsed = time.perf_counter() - overall_start

    logger.info(
        "Finished in %.2fs: %d article(s) over %d page(s), %d failed%s",
        total_elapsed,
        len(result.articles),
        result.pages_crawled,
        len(result.failures),
        " (cancelled)" if result.cancelled else "",
    )
    return 0


def _run_images(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
    except ValueError as exc:
        logger.error("Invalid settings: %s", exc)
        return 2
    stats = asyncio.run(localize_directory(config.papers_dir, config))
    logger.info("Updated %d file(s)", stats.files_updated)
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    if args.command == "crawl":
        return _run_crawl(args)
    return _run_images(args)


if __name__ == "__main__":
    sys.exit(main())
