"""
Render NormalizedItem instances into chat messages.

Every message has a plain-text body and an HTML body:

    <b>Title</b><br>
    summary<br>
    <a href="link">label</a>

``body_summary`` is treated as an HTML fragment (feeds ship HTML
summaries); the plain body gets its text content.
"""

import html
import re
from dataclasses import dataclass

from bs4 import BeautifulSoup

from src.clients.base import NormalizedItem

_UNSAFE_TAGS = ("script", "style", "iframe", "object", "embed", "form")


@dataclass(frozen=True)
class RenderedMessage:
    body: str
    html: str


def html_to_text(fragment: str) -> str:
    """
    Extract readable text from an HTML fragment.

    Args:
        fragment: HTML string (plain text passes through unchanged)

    Returns:
        Text with whitespace collapsed
    """
    if not fragment:
        return ""

    soup = BeautifulSoup(fragment, "html.parser")
    for element in soup(_UNSAFE_TAGS):
        element.decompose()

    text = soup.get_text(separator=" ")
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def sanitize_html(fragment: str) -> str:
    """Drop active content (scripts, frames, forms) from an HTML fragment."""
    if not fragment:
        return ""

    soup = BeautifulSoup(fragment, "html.parser")
    for element in soup(_UNSAFE_TAGS):
        element.decompose()
    return str(soup).strip()


def render_item(item: NormalizedItem) -> RenderedMessage:
    """Render one item as a (plain body, HTML body) pair."""
    body_lines: list[str] = []
    html_parts: list[str] = []

    if item.title:
        body_lines.append(item.title)
        html_parts.append(f"<b>{html.escape(item.title)}</b><br>\n")

    summary_text = html_to_text(item.body_summary)
    if summary_text:
        body_lines.append(summary_text)
        html_parts.append(f"{sanitize_html(item.body_summary)}<br>\n")

    if item.link:
        label = item.link_label or item.link
        body_lines.append(item.link)
        html_parts.append(
            f'<a href="{html.escape(item.link, quote=True)}">{html.escape(label)}</a>'
        )

    return RenderedMessage(body="\n".join(body_lines), html="".join(html_parts))
