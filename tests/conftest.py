import asyncio
from collections import Counter
from typing import Callable, Dict, List, Optional

import pytest

from xz_mdx.config import CrawlConfig, CrawlWindow
from xz_mdx.models import DetailDocument


def listing_fragment(slug: str, title: str, when: str, category: str = "Web安全", author: str = "alice") -> str:
    return f"""
<div class="news_item">
  <a href="/news/{slug}"><img src="/cover/{slug}.png"></a>
  <a href="/news/{slug}">{title}</a>
  <a href="/users/{author}">{author}
  发表于 浙江</a>
  <a href="/news?cate_id=9">{category}</a>
  <p>A reasonably long teaser paragraph for {title}.</p>
  <span>· 174浏览 · {when}</span>
</div>
"""


class FakeListingSource:
    """In-memory stand-in for the Playwright listing collaborator."""

    def __init__(
        self,
        pages: List[List[str]],
        fetch: Optional[Callable[[str, int], DetailDocument]] = None,
    ) -> None:
        self.pages = pages
        self.page_index = 0
        self.advance_calls = 0
        self.fetch_calls: Counter = Counter()
        self.navigated = False
        self._fetch = fetch or self.default_fetch

    @staticmethod
    def default_fetch(url: str, attempt: int) -> DetailDocument:
        slug = url.rsplit("/", 1)[-1]
        return DetailDocument(
            url=url,
            title=f"Refined title for {slug}",
            html=f"<ne-p><ne-text>Body of {slug}</ne-text></ne-p>",
        )

    async def navigate_to_listing(self) -> None:
        self.navigated = True

    async def current_page_entries(self) -> List[str]:
        return self.pages[self.page_index]

    async def advance_to_next_page(self) -> bool:
        self.advance_calls += 1
        if self.page_index + 1 >= len(self.pages):
            return False
        self.page_index += 1
        return True

    async def fetch_detail_document(self, url: str) -> DetailDocument:
        self.fetch_calls[url] += 1
        await asyncio.sleep(0)
        return self._fetch(url, self.fetch_calls[url])


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides) -> CrawlConfig:
        settings: Dict = dict(
            output_root=tmp_path,
            window=CrawlWindow(),
            max_pages=10,
            concurrency=2,
            retry_base_delay=0.0,
            request_delay=0.0,
            listing_settle_delay=0.0,
        )
        settings.update(overrides)
        return CrawlConfig(**settings)

    return factory


@pytest.fixture
def fragment():
    return listing_fragment


@pytest.fixture
def fake_source():
    return FakeListingSource


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
