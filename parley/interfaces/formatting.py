"""
Minimal Markdown handling for Matrix messages.

``markdown_to_html`` produces the ``formatted_body`` and ``strip_markdown``
the plain ``body`` fallback for clients that do not render HTML.
"""

import html
import re

_CODE_BLOCK_RE = re.compile(r"```(\w*)\n(.*?)```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"(?<!\*)\*(?!\*)(.+?)(?<!\*)\*(?!\*)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\((https?://[^)\s]+)\)")
_HEADING_RE = re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE)


def markdown_to_html(text: str) -> str:
    """Very small Markdown subset: code blocks, inline code, bold, italic, links, headings."""
    blocks: list[str] = []

    def _stash_block(m: re.Match) -> str:
        blocks.append(f"<pre><code>{html.escape(m.group(2))}</code></pre>")
        return f"\x00{len(blocks) - 1}\x00"

    text = _CODE_BLOCK_RE.sub(_stash_block, text)
    text = html.escape(text, quote=False)
    text = _INLINE_CODE_RE.sub(r"<code>\1</code>", text)
    text = _BOLD_RE.sub(r"<strong>\1</strong>", text)
    text = _ITALIC_RE.sub(r"<em>\1</em>", text)
    text = _LINK_RE.sub(r'<a href="\2">\1</a>', text)
    text = _HEADING_RE.sub(r"<strong>\1</strong>", text)
    text = text.replace("\n", "<br>")
    for i, block in enumerate(blocks):
        text = text.replace(f"\x00{i}\x00", block)
    return text


def strip_markdown(text: str) -> str:
    """Remove Markdown markers, leaving readable plain text."""
    text = _CODE_BLOCK_RE.sub(lambda m: m.group(2).rstrip("\n"), text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _BOLD_RE.sub(r"\1", text)
    text = _ITALIC_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1 (\2)", text)
    text = _HEADING_RE.sub(r"\1", text)
    return text
