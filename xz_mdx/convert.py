"""Rich-editor DOM to Markdown conversion.

Article bodies on the site are rendered by a proprietary editor that emits
``ne-*`` tags (``ne-p``, ``ne-text``, ``ne-card`` ...) and CodeMirror markup
for code blocks. :func:`convert` walks that tree with BeautifulSoup and
produces Markdown. Code cards, tables and inline code are converted from
their raw inner markup because their substructure is not text-safe once it
has been run through the generic recursion.
"""

from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import Comment, Declaration, Doctype, ProcessingInstruction

logger = logging.getLogger("xz_mdx")


class ListType(str, Enum):
    NONE = "none"
    ORDERED = "ordered"
    UNORDERED = "unordered"


@dataclass(frozen=True)
class ConversionContext:
    """State threaded through one document's recursion; cloned per list scope."""

    parent_list_type: ListType = ListType.NONE
    list_index: int = 0
    in_code_block: bool = False


ORDERED_LIST_TAGS = {"ne-ol", "ol"}
UNORDERED_LIST_TAGS = {"ne-ul", "ul"}
LIST_CONTAINER_TAGS = ORDERED_LIST_TAGS | UNORDERED_LIST_TAGS
LIST_ITEM_TAGS = {"ne-li", "ne-oli", "ne-uli", "li"}
LIST_MARKER_TAGS = {"ne-oli-i", "ne-uli-i"}
TABLE_TAGS = {"ne-table", "table"}
_TABLE_PARENTS = sorted(TABLE_TAGS)
DROPPED_TAGS = {"script", "style", "noscript", "ne-list-symbol", "ne-td-break"}
FILLER_CLASSES = {"ne-viewer-b-filler"}

_SKIPPED_STRINGS = (Comment, Declaration, Doctype, ProcessingInstruction)
_HEADING_TAG = re.compile(r"^(?:ne-)?h([1-6])$")
_BACKTICK_RUN = re.compile(r"`+")
_NEWLINE_RUN = re.compile(r"\n+")
_MULTI_NEWLINE = re.compile(r"\n{2,}")
_SCRIPT_BLOCK = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_BLOCK = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_ANY_TAG = re.compile(r"<[^>]+>")
_WHITESPACE_RUN = re.compile(r"\s+")
_ZERO_WIDTH = "\u200b"


def convert(html: str) -> str:
    """Convert rich-editor HTML into Markdown.

    Never raises: if the tree cannot be processed the markup is reduced to
    plain text with :func:`clean_html_tags`.
    """
    if not html:
        return ""
    try:
        soup = BeautifulSoup(html, "html.parser")
        return _convert_children(soup, "", ConversionContext())
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("HTML conversion failed, falling back to plain text: %s", exc)
        return clean_html_tags(html)


def clean_html_tags(html: str, preserve_whitespace: bool = False) -> str:
    """Strip every tag and decode entities; used when tree conversion fails."""
    if not html:
        return ""
    cleaned = _SCRIPT_BLOCK.sub("", html)
    cleaned = _STYLE_BLOCK.sub("", cleaned)
    cleaned = _ANY_TAG.sub("", cleaned)
    cleaned = html_lib.unescape(cleaned)
    if not preserve_whitespace:
        cleaned = _WHITESPACE_RUN.sub(" ", cleaned).strip()
    return cleaned


def escape_text(text: str) -> str:
    return text.replace("<", "&lt;").replace(">", "&gt;")


def fence_inline_code(text: str) -> str:
    """Wrap text in a backtick fence longer than any run it contains."""
    raw = _NEWLINE_RUN.sub(" ", text or "")
    if not raw:
        return ""
    longest = max((len(run) for run in _BACKTICK_RUN.findall(raw)), default=0)
    fence = "`" * (longest + 1)
    if raw.startswith(("`", " ")) or raw.endswith(("`", " ")):
        return f"{fence} {raw} {fence}"
    return f"{fence}{raw}{fence}"


def render_code_fence(code: str, language: str = "") -> str:
    longest = max((len(run) for run in _BACKTICK_RUN.findall(code)), default=0)
    fence = "`" * max(3, longest + 1)
    return f"\n{fence}{language}\n{code}\n{fence}\n\n"


# --- code cards -----------------------------------------------------------


def _normalize_language(language: str) -> str:
    language = (language or "").strip()
    if language.lower() == "shell":
        return "bash"
    return language


def _detect_language(soup: BeautifulSoup) -> str:
    mode = soup.select_one("[data-codeblock-mode]")
    if mode is not None and mode.get("data-codeblock-mode"):
        return _normalize_language(mode["data-codeblock-mode"])
    tagged = soup.select_one("[data-language]")
    if tagged is not None and tagged.get("data-language"):
        return _normalize_language(tagged["data-language"])
    return ""


def _code_line_text(node: Tag) -> str:
    parts: List[str] = []

    def walk(current: Tag) -> None:
        for child in current.children:
            if isinstance(child, NavigableString):
                if not isinstance(child, _SKIPPED_STRINGS):
                    parts.append(str(child))
            elif isinstance(child, Tag) and child.name.lower() != "br":
                walk(child)

    walk(node)
    return "".join(parts)


def extract_code_block(inner_html: str) -> str:
    """Turn a code card's raw inner markup into a fenced code block."""
    if not inner_html:
        logger.debug("Empty code card")
        return ""
    soup = BeautifulSoup(inner_html, "html.parser")
    language = _detect_language(soup)

    lines = soup.select(".cm-line")
    if lines:
        logger.debug("Code card with %d line(s), language=%r", len(lines), language)
        code = "\n".join(_code_line_text(line) for line in lines)
    else:
        code = ""
        for selector in (".cm-content", ".ne-codeblock-inner", "pre code", "pre", "code"):
            fallback = soup.select_one(selector)
            if fallback is not None:
                code = fallback.get_text()
                break

    code = code.replace(_ZERO_WIDTH, "")
    if not code:
        return ""
    return render_code_fence(code, language)


# --- tables ---------------------------------------------------------------


def _escape_cell(text: str) -> str:
    text = text.replace(_ZERO_WIDTH, "").replace("\ufeff", "")
    text = text.replace("\xa0", " ")
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("|", "\\|")
    lines = [line.rstrip() for line in text.strip("\n").split("\n")]
    return "<br>".join(lines)


def _convert_cell(cell: Tag) -> str:
    container = cell.select_one(".ne-td-content, ne-td-content") or cell
    markdown = _convert_children(container, "", ConversionContext())
    markdown = _MULTI_NEWLINE.sub("\n", markdown)
    return _escape_cell(markdown).strip() or " "


def _fit_row(cells: List[str], width: int) -> List[str]:
    if len(cells) < width:
        return cells + [" "] * (width - len(cells))
    if len(cells) > width:
        return cells[: width - 1] + [" ".join(cells[width - 1 :])]
    return cells


def _table_fallback(inner_html: str) -> str:
    text = clean_html_tags(inner_html)
    return f"\n```\n{text}\n```\n" if text else ""


def convert_table(inner_html: str) -> str:
    """Rebuild a GFM table from a table node's raw inner markup."""
    if not inner_html:
        return ""
    try:
        soup = BeautifulSoup(f'<table class="__root">{inner_html}</table>', "html.parser")
        root = soup.select_one("table.__root")
        rows = root.select("tr, .ne-tr") if root is not None else []
        if not rows:
            return _table_fallback(inner_html)
        # Rows and cells of tables nested inside a cell belong to that cell.
        outer = rows[0].find_parent(_TABLE_PARENTS)
        rows = [row for row in rows if row.find_parent(_TABLE_PARENTS) is outer]

        output: List[str] = []
        header_width: Optional[int] = None
        for row in rows:
            cells = [
                cell
                for cell in row.select("th, td, .ne-td")
                if cell.find_parent(_TABLE_PARENTS) is outer
            ]
            if not cells:
                continue
            contents = [_convert_cell(cell) for cell in cells]
            if header_width is None:
                header_width = len(contents)
                output.append("| " + " | ".join(contents) + " |")
                output.append("| " + " | ".join(["---"] * header_width) + " |")
                continue
            output.append("| " + " | ".join(_fit_row(contents, header_width)) + " |")

        if not output:
            return _table_fallback(inner_html)
        return "\n".join(output) + "\n"
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning("Table conversion failed, using plain text: %s", exc)
        return _table_fallback(inner_html)


# --- recursive conversion -------------------------------------------------


def _attributes(node: Tag) -> Dict[str, str]:
    attrs: Dict[str, str] = {}
    for key, value in node.attrs.items():
        attrs[key.lower()] = " ".join(value) if isinstance(value, list) else str(value)
    return attrs


def _classes(node: Tag) -> List[str]:
    value = node.get("class") or []
    return value if isinstance(value, list) else str(value).split()


def _convert_children(node: Tag, tag: str, ctx: ConversionContext) -> str:
    parts: List[str] = []
    index = ctx.list_index
    counts_items = tag in LIST_CONTAINER_TAGS
    for child in node.children:
        child_ctx = ctx
        if counts_items and isinstance(child, Tag) and child.name.lower() in LIST_ITEM_TAGS:
            index += 1
            child_ctx = replace(ctx, list_index=index)
        parts.append(_convert_node(child, child_ctx))
    return "".join(parts)


def _child_context(tag: str, ctx: ConversionContext) -> ConversionContext:
    if tag in ORDERED_LIST_TAGS:
        return replace(ctx, parent_list_type=ListType.ORDERED, list_index=0)
    if tag in UNORDERED_LIST_TAGS:
        return replace(ctx, parent_list_type=ListType.UNORDERED, list_index=0)
    if tag in {"ne-codeblock", "pre"}:
        return replace(ctx, in_code_block=True)
    return ctx


def _short_circuit(node: Tag, tag: str, attrs: Dict[str, str], ctx: ConversionContext) -> Optional[str]:
    classes = _classes(node)
    if tag in DROPPED_TAGS or "ne-filler" in attrs or FILLER_CLASSES.intersection(classes):
        return ""
    if tag == "ne-card" and attrs.get("data-card-name") == "codeblock":
        return extract_code_block(node.decode_contents())
    if tag in TABLE_TAGS:
        return f"\n{convert_table(node.decode_contents())}\n\n"
    if tag == "pre" and not ctx.in_code_block:
        code = node.find("code")
        language = ""
        if isinstance(code, Tag):
            for cls in _classes(code):
                if cls.startswith("language-"):
                    language = _normalize_language(cls[len("language-") :])
        text = node.get_text().replace(_ZERO_WIDTH, "")
        return render_code_fence(text.rstrip("\n"), language) if text.strip() else ""
    if tag in {"ne-code", "code"} or (tag in {"div", "span"} and "ne-code" in classes):
        raw = node.get_text()
        return raw if ctx.in_code_block else fence_inline_code(raw)
    if tag == "ne-text" and attrs.get("ne-code") == "true":
        return _style_text(attrs, fence_inline_code(node.get_text()), skip_code=True)
    return None


def _convert_node(node, ctx: ConversionContext) -> str:
    if isinstance(node, NavigableString):
        if isinstance(node, _SKIPPED_STRINGS):
            return ""
        text = str(node)
        return text if ctx.in_code_block else escape_text(text)
    if not isinstance(node, Tag):
        return ""

    tag = node.name.lower()
    attrs = _attributes(node)
    shortcut = _short_circuit(node, tag, attrs, ctx)
    if shortcut is not None:
        return shortcut

    content = _convert_children(node, tag, _child_context(tag, ctx))
    heading = _HEADING_TAG.match(tag)
    if heading:
        level = int(heading.group(1))
        return f"\n{'#' * level} {content.strip()}\n\n"
    renderer = _RENDERERS.get(tag)
    if renderer is None:
        return content
    return renderer(attrs, content, ctx)


# --- element renderers ----------------------------------------------------


def _style_text(attrs: Dict[str, str], content: str, skip_code: bool = False) -> str:
    if not content:
        return content
    if attrs.get("ne-bold") == "true":
        content = f"**{content}**"
    if attrs.get("ne-italic") == "true":
        content = f"*{content}*"
    if attrs.get("ne-code") == "true" and not skip_code:
        content = fence_inline_code(content)
    if attrs.get("ne-underline") == "true":
        content = f"<u>{content}</u>"
    if attrs.get("ne-strikethrough") == "true":
        content = f"~~{content}~~"
    return content


def _render_paragraph(attrs, content, ctx):
    return f"{content}\n\n" if content.strip() else ""


def _render_text(attrs, content, ctx):
    return _style_text(attrs, content)


def _render_code_block(attrs, content, ctx):
    return render_code_fence(content, _normalize_language(attrs.get("language", "")))


def _render_list(attrs, content, ctx):
    return f"\n{content}\n"


def _render_list_item(attrs, content, ctx):
    body = content.strip("\n")
    if ctx.parent_list_type is ListType.ORDERED:
        marker = f"{ctx.list_index or 1}. "
    else:
        marker = "- "
    lines = body.split("\n")
    indent = " " * len(marker)
    rest = [f"{indent}{line}" if line.strip() else "" for line in lines[1:]]
    return marker + "\n".join([lines[0], *rest]) + "\n"


def _render_list_marker(attrs, content, ctx):
    # The item renders its own marker inside a list scope.
    if ctx.parent_list_type is not ListType.NONE:
        return ""
    return f"{content} " if content else ""


def _render_card(attrs, content, ctx):
    if not content.strip():
        return ""
    if "![" in content:
        return f"\n{content}\n\n"
    return "\n" + _quote(content) + "\n\n"


def _quote(content: str) -> str:
    lines = content.strip("\n").split("\n")
    return "\n".join(f"> {line}" if line.strip() else ">" for line in lines)


def _render_blockquote(attrs, content, ctx):
    return "\n" + _quote(content) + "\n\n" if content.strip() else ""


def _render_break(attrs, content, ctx):
    return "\n"


def _render_anchor(attrs, content, ctx):
    href = attrs.get("href", "")
    return f"[{content}]({href})" if href else content


def _render_image(attrs, content, ctx):
    src = attrs.get("src", "")
    if not src:
        return ""
    return f"![{attrs.get('alt') or '图片'}]({src})"


def _render_bold(attrs, content, ctx):
    return f"**{content}**" if content.strip() else content


def _render_italic(attrs, content, ctx):
    return f"*{content}*" if content.strip() else content


def _render_strike(attrs, content, ctx):
    return f"~~{content}~~" if content.strip() else content


def _render_rule(attrs, content, ctx):
    return "\n---\n\n"


Renderer = Callable[[Dict[str, str], str, ConversionContext], str]

_RENDERERS: Dict[str, Renderer] = {
    "ne-p": _render_paragraph,
    "p": _render_paragraph,
    "ne-text": _render_text,
    "ne-codeblock": _render_code_block,
    "ne-ol": _render_list,
    "ne-ul": _render_list,
    "ol": _render_list,
    "ul": _render_list,
    "ne-li": _render_list_item,
    "ne-oli": _render_list_item,
    "ne-uli": _render_list_item,
    "li": _render_list_item,
    "ne-oli-i": _render_list_marker,
    "ne-uli-i": _render_list_marker,
    "ne-card": _render_card,
    "blockquote": _render_blockquote,
    "br": _render_break,
    "a": _render_anchor,
    "img": _render_image,
    "strong": _render_bold,
    "b": _render_bold,
    "em": _render_italic,
    "i": _render_italic,
    "del": _render_strike,
    "s": _render_strike,
    "hr": _render_rule,
}
