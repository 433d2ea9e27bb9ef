import datetime as dt

from xz_mdx.config import CrawlWindow
from xz_mdx.convert import render_code_fence
from xz_mdx.markdown import (
    MISSING_CONTENT_NOTE,
    category_counts,
    collapse_blank_lines,
    compose_article_markdown,
    compose_failures,
    compose_summary,
    sort_by_publish_time,
    source_link_of,
    statistics_report,
)
from xz_mdx.models import ArticleRecord, FailureRecord


def _record(title, when, category="Web", **kwargs):
    return ArticleRecord(title=title, link=f"https://xz.aliyun.com/news/{title}", publish_time=when, category=category, **kwargs)


def test_collapse_blank_lines_outside_fences():
    assert collapse_blank_lines("a\n\n\n\nb") == "a\n\nb"
    assert collapse_blank_lines("a\n\nb") == "a\n\nb"
    assert collapse_blank_lines("a\n\n\u200b\n\xa0\n\nb") == "a\n\nb"


def test_collapse_blank_lines_preserves_code_fences():
    fenced = "```\nx\n\n\n\ny\n```\n"
    assert collapse_blank_lines("intro\n\n\n" + fenced) == "intro\n\n" + fenced


def test_collapse_blank_lines_closes_fence_only_on_matching_length():
    text = "intro\n" + render_code_fence("```\nfoo()\n\n\n\nbar()\n```", "md")
    assert collapse_blank_lines(text) == text


def test_inline_backticks_do_not_open_a_fence():
    text = "Type ``` to open a fence.\n\n" + render_code_fence("a = 1\n\n\n\nb = 2", "python")
    assert collapse_blank_lines(text) == (
        "Type ``` to open a fence.\n\n```python\na = 1\n\n\n\nb = 2\n```\n\n"
    )


def test_article_markdown_layout():
    record = _record(
        "Heap",
        "2025-09-26 08:49",
        content="\n\nBody line\n\n\n\nSecond\n",
        extracted_at=dt.datetime(2025, 9, 27, 10, 0, 0),
    )
    markdown = compose_article_markdown(record)

    assert markdown.startswith("# Heap\n\nBody line\n\nSecond\n\n---\n")
    assert "> Source: https://xz.aliyun.com/news/Heap  \n" in markdown
    assert "> Extracted at: 2025-09-27 10:00:00  \n" in markdown
    assert "\n\n\n" not in markdown


def test_article_markdown_without_content_points_to_source():
    markdown = compose_article_markdown(_record("Empty", "2025-09-26 08:49"))
    assert MISSING_CONTENT_NOTE in markdown


def test_sort_newest_first_with_unparseable_last():
    records = [
        _record("old", "2025-01-01 10:00"),
        _record("broken", "yesterday"),
        _record("new", "2025-06-15 10:00"),
    ]
    assert [record.title for record in sort_by_publish_time(records)] == ["new", "old", "broken"]


def test_category_counts_descending():
    records = [_record("a", "2025-01-01 10:00", "Web"), _record("b", "2025-01-02 10:00", "Misc"), _record("c", "2025-01-03 10:00", "Web")]
    assert category_counts(records) == [("Web", 2), ("Misc", 1)]


def test_summary_contents():
    records = [
        _record("older", "2025-01-01 10:00", "Web", author="alice", file_name="older.md"),
        _record("newer", "2025-06-15 10:00", "Misc", author="bob|eve"),
    ]
    window = CrawlWindow.from_strings("2025-01-01", "2025-12-31")
    summary = compose_summary(records, window, "https://xz.aliyun.com/news", dt.datetime(2025, 7, 1, 12, 0))

    assert "> Articles: 2" in summary
    assert "> Time range: 2025-01-01 to 2025-12-31" in summary
    assert summary.index("[newer]") < summary.index("[older]")
    assert "[older](papers/older.md)" in summary
    assert "[newer](https://xz.aliyun.com/news/newer)" in summary
    assert "bob\\|eve" in summary
    assert summary.index("- **Misc**: 1") < summary.index("- **Web**: 1")


def test_summary_truncates_long_titles():
    summary = compose_summary([_record("x" * 60, "2025-01-01 10:00")], CrawlWindow(), "https://x")
    assert "[" + "x" * 50 + "...]" in summary


def test_failures_report_and_statistics():
    report = compose_failures([FailureRecord("https://x/news/1", "T", "HTTP 500")])
    assert "> Count: 1" in report
    assert "| https://x/news/1 | T | HTTP 500 |" in report

    lines = statistics_report([_record("a", "2025-01-01 10:00"), _record("b", "2025-01-01 12:00")])
    assert "Total articles: 2" in lines
    assert "  2025-01-01: 2" in lines
    assert lines[-2] == "  1. b (2025-01-01 12:00)"


def test_statistics_days_are_ordered_by_date():
    lines = statistics_report([_record("a", "2025-6-9 10:00"), _record("b", "2025-6-10 10:00")])
    assert lines.index("  2025-06-10: 1") < lines.index("  2025-06-09: 1")


def test_source_link_is_read_from_footer():
    record = _record("a", "2025-06-03 10:00", content="body")
    assert source_link_of(compose_article_markdown(record)) == "https://xz.aliyun.com/news/a"
    assert source_link_of("# kept\n") is None
