import asyncio

import pytest

from conftest import listing_fragment
from xz_mdx.config import CrawlWindow
from xz_mdx.crawler import (
    RUNNING_SUMMARY_NAME,
    CancellationToken,
    CrawlError,
    CrawlOrchestrator,
    run_crawler,
)
from xz_mdx.models import ArticleRecord, DetailDocument
from xz_mdx.utils import sha1_hex

LINK = "https://xz.aliyun.com/news/{}"


def _run(config, source, token=None, sleep=None):
    kwargs = {"token": token}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return asyncio.run(CrawlOrchestrator(config, source, **kwargs).run())


def test_duplicates_across_pages_are_fetched_once(make_config, fake_source):
    pages = [
        [listing_fragment("a", "Article alpha", "2025-06-03 10:00"), listing_fragment("b", "Article beta", "2025-06-02 10:00")],
        [listing_fragment("b", "Article beta", "2025-06-02 10:00"), listing_fragment("c", "Article gamma", "2025-06-01 10:00")],
    ]
    config = make_config()
    source = fake_source(pages)
    result = _run(config, source)

    assert source.navigated
    assert source.fetch_calls[LINK.format("b")] == 1
    assert sorted(record.link for record in result.articles) == [LINK.format(s) for s in "abc"]
    assert len(list(config.papers_dir.glob("*.md"))) == 3
    assert result.pages_crawled == 2
    assert result.failures == []


def test_saved_article_uses_refined_title_and_converted_body(make_config, fake_source):
    config = make_config(max_pages=1)
    result = _run(config, fake_source([[listing_fragment("a", "Article alpha", "2025-06-03 10:00")]]))

    record = result.articles[0]
    assert record.title == "Refined title for a"
    assert record.file_name == "Article_alpha.md"
    text = (config.papers_dir / "Article_alpha.md").read_text(encoding="utf-8")
    assert text.startswith("# Refined title for a\n\nBody of a\n")
    assert f"> Source: {LINK.format('a')}" in text
    assert result.summary_path is not None and result.summary_path.exists()


def test_transient_failures_are_retried_with_backoff(make_config, fake_source, recording_sleep):
    def flaky(url, attempt):
        if attempt <= 2:
            return DetailDocument.failed(url, "timeout")
        return fake_source.default_fetch(url, attempt)

    config = make_config(retries=2, retry_base_delay=0.5, max_pages=1)
    source = fake_source([[listing_fragment("a", "Article alpha", "2025-06-03 10:00")]], fetch=flaky)
    result = _run(config, source, sleep=recording_sleep)

    assert source.fetch_calls[LINK.format("a")] == 3
    assert len(result.articles) == 1
    assert result.failures == []
    assert recording_sleep.delays == [0.5, 1.0]


def test_exhausted_retries_record_one_failure_and_continue(make_config, fake_source):
    def fetch(url, attempt):
        if url.endswith("/a"):
            raise RuntimeError("navigation timeout")
        return fake_source.default_fetch(url, attempt)

    config = make_config(retries=1, max_pages=1)
    pages = [[listing_fragment("a", "Article alpha", "2025-06-03 10:00"), listing_fragment("b", "Article beta", "2025-06-02 10:00")]]
    source = fake_source(pages, fetch=fetch)
    result = _run(config, source)

    assert source.fetch_calls[LINK.format("a")] == 2
    assert [failure.link for failure in result.failures] == [LINK.format("a")]
    assert "navigation timeout" in result.failures[0].error_message
    assert [record.link for record in result.articles] == [LINK.format("b")]
    assert result.failures_path.exists()


@pytest.mark.parametrize(
    "html",
    ["", "<p>无法获取文章内容</p>", "<script>only()</script>"],
)
def test_unusable_bodies_count_as_failures(make_config, fake_source, html):
    config = make_config(retries=0, max_pages=1)
    source = fake_source(
        [[listing_fragment("a", "Article alpha", "2025-06-03 10:00")]],
        fetch=lambda url, attempt: DetailDocument(url=url, title="Some title", html=html),
    )
    result = _run(config, source)
    assert result.articles == []
    assert len(result.failures) == 1
    assert list(config.papers_dir.glob("*.md")) == []


def test_time_window_selects_entries(make_config, fake_source):
    pages = [[
        listing_fragment("jan", "January article", "2025-01-01 10:00"),
        listing_fragment("jun", "June article", "2025-06-15 10:00"),
        listing_fragment("dec", "December article", "2025-12-31 10:00"),
    ]]
    config = make_config(window=CrawlWindow.from_strings("2025-03-01", "2025-09-01"), max_pages=1)
    source = fake_source(pages)
    result = _run(config, source)

    assert [record.link for record in result.articles] == [LINK.format("jun")]
    assert set(source.fetch_calls) == {LINK.format("jun")}


def test_pagination_stops_once_listing_crosses_lower_bound(make_config, fake_source):
    pages = []
    for number in range(1, 6):
        page = [listing_fragment(f"p{number}", f"Article on page {number}", "2025-06-01 10:00")]
        if number in (2, 4):
            page.append(listing_fragment(f"old{number}", f"Older article {number}", "2025-04-01 10:00"))
        pages.append(page)
    config = make_config(window=CrawlWindow.from_strings(target="2025-05-01"))
    source = fake_source(pages)
    result = _run(config, source)

    assert result.pages_crawled == 4
    assert source.advance_calls == 3
    assert LINK.format("p5") not in source.fetch_calls
    assert sorted(record.link for record in result.articles) == [LINK.format(f"p{n}") for n in range(1, 5)]


def test_max_pages_stops_without_requesting_next_page(make_config, fake_source):
    pages = [[listing_fragment("a", "Article alpha", "2025-06-03 10:00")], [listing_fragment("b", "Article beta", "2025-06-02 10:00")]]
    source = fake_source(pages)
    result = _run(make_config(max_pages=1), source)
    assert source.advance_calls == 0
    assert result.pages_crawled == 1


def test_empty_listing_page_ends_crawl(make_config, fake_source):
    config = make_config()
    result = _run(config, fake_source([[]]))
    assert result.pages_crawled == 0
    assert result.summary_path is None


def test_cancellation_keeps_partial_results(make_config, fake_source):
    token = CancellationToken()

    def fetch(url, attempt):
        token.set()
        return fake_source.default_fetch(url, attempt)

    pages = [
        [listing_fragment(s, f"Article {s} title", "2025-06-03 10:00") for s in ("a", "b", "c")],
        [listing_fragment("d", "Article d title", "2025-06-02 10:00")],
    ]
    config = make_config(concurrency=1, localize_images=True)
    source = fake_source(pages, fetch=fetch)
    result = _run(config, source, token=token)

    assert result.cancelled
    assert [record.link for record in result.articles] == [LINK.format("a")]
    assert source.advance_calls == 0
    assert result.summary_path.exists()
    assert not (config.papers_dir / "images").exists()


def test_running_summary_written_every_third_save(make_config, fake_source):
    fragments = [listing_fragment(s, f"Article {s} title", "2025-06-03 10:00") for s in ("a", "b")]
    config = make_config(max_pages=1)
    _run(config, fake_source([fragments]))
    assert not (config.output_root / RUNNING_SUMMARY_NAME).exists()

    fragments.append(listing_fragment("c", "Article c title", "2025-06-03 10:00"))
    config = make_config(max_pages=1, skip_existing=False)
    _run(config, fake_source([fragments]))
    running = (config.output_root / RUNNING_SUMMARY_NAME).read_text(encoding="utf-8")
    assert "> Articles: 3" in running


def test_existing_files_are_not_refetched(make_config, fake_source):
    config = make_config(max_pages=1)
    config.papers_dir.mkdir(parents=True)
    (config.papers_dir / "Article_alpha.md").write_text("# kept\n", encoding="utf-8")
    source = fake_source([[listing_fragment("a", "Article alpha", "2025-06-03 10:00")]])
    result = _run(config, source)

    assert source.fetch_calls == {}
    assert [record.file_name for record in result.articles] == ["Article_alpha.md"]
    assert (config.papers_dir / "Article_alpha.md").read_text(encoding="utf-8") == "# kept\n"


def test_colliding_titles_get_distinct_file_names(make_config, fake_source):
    pages = [[
        listing_fragment("a", "Same headline here", "2025-06-03 10:00"),
        listing_fragment("b", "Same headline here", "2025-06-02 10:00"),
    ]]
    config = make_config(max_pages=1, concurrency=1)
    result = _run(config, fake_source(pages))
    names = {record.file_name for record in result.articles}
    assert len(names) == 2
    assert "Same_headline_here.md" in names


def test_navigation_failure_is_fatal(make_config, fake_source):
    class BrokenSource(fake_source):
        async def navigate_to_listing(self):
            raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")

    with pytest.raises(CrawlError):
        asyncio.run(run_crawler(make_config(), BrokenSource([[]])))


def test_same_article_repeated_on_one_page_is_fetched_once(make_config, fake_source):
    entry = listing_fragment("a", "Article alpha", "2025-06-03 10:00")
    config = make_config(max_pages=1, concurrency=3, skip_existing=False)
    source = fake_source([[entry, entry, entry]])
    result = _run(config, source)

    assert source.fetch_calls[LINK.format("a")] == 1
    assert len(result.articles) == 1
    assert len(list(config.papers_dir.glob("*.md"))) == 1


def _saved_file(link):
    return f"# Same headline here\n\nbody\n\n---\n> Source: {link}  \n"


def test_rerun_matches_colliding_titles_by_source_link(make_config, fake_source):
    config = make_config(max_pages=1, concurrency=1)
    config.papers_dir.mkdir(parents=True)
    suffixed = f"Same_headline_here_{sha1_hex(LINK.format('b'))[:8]}.md"
    (config.papers_dir / "Same_headline_here.md").write_text(_saved_file(LINK.format("a")), encoding="utf-8")
    (config.papers_dir / suffixed).write_text(_saved_file(LINK.format("b")), encoding="utf-8")
    pages = [[
        listing_fragment("b", "Same headline here", "2025-06-03 10:00"),
        listing_fragment("a", "Same headline here", "2025-06-02 10:00"),
    ]]
    source = fake_source(pages)
    result = _run(config, source)

    assert source.fetch_calls == {}
    names = {record.link: record.file_name for record in result.articles}
    assert names == {LINK.format("a"): "Same_headline_here.md", LINK.format("b"): suffixed}


def test_file_from_another_article_is_not_taken_as_saved(make_config, fake_source):
    config = make_config(max_pages=1)
    config.papers_dir.mkdir(parents=True)
    base = config.papers_dir / "Same_headline_here.md"
    base.write_text(_saved_file(LINK.format("a")), encoding="utf-8")
    source = fake_source([[listing_fragment("b", "Same headline here", "2025-06-03 10:00")]])
    result = _run(config, source)

    assert source.fetch_calls[LINK.format("b")] == 1
    suffixed = f"Same_headline_here_{sha1_hex(LINK.format('b'))[:8]}.md"
    assert [record.file_name for record in result.articles] == [suffixed]
    assert base.read_text(encoding="utf-8") == _saved_file(LINK.format("a"))


def test_orchestrator_state_requires_a_started_run(make_config, fake_source):
    orchestrator = CrawlOrchestrator(make_config(), fake_source([[]]))
    record = ArticleRecord(title="t", link=LINK.format("a"), publish_time="2025-06-03 10:00")
    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator._record_failure(record, "boom"))
