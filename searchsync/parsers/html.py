from __future__ import annotations

from bs4 import BeautifulSoup
from bs4.element import Comment, Doctype, NavigableString, Tag

BLOCK_TAGS = {
    "article",
    "blockquote",
    "div",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "li",
    "p",
    "pre",
    "section",
    "td",
    "th",
    "tr",
}


def _block_of(node: NavigableString) -> Tag | None:
    for parent in node.parents:
        if parent.name and parent.name.lower() in BLOCK_TAGS:
            return parent
    return None


def extract_html_text(html: str) -> str:
    """Convert an HTML field value into text, one line per block or ``<br>``."""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()

    lines: list[str] = []
    current: Tag | None = None
    line_break = True
    for node in soup.descendants:
        if isinstance(node, Tag):
            if node.name == "br":
                line_break = True
            continue
        if not isinstance(node, NavigableString) or isinstance(node, (Comment, Doctype)):
            continue
        text = " ".join(node.split())
        if not text:
            continue
        block = _block_of(node)
        if line_break or block is not current:
            lines.append(text)
        else:
            lines[-1] = f"{lines[-1]} {text}"
        current = block
        line_break = False
    return "\n".join(lines)
