"""
Markdown to Telegram HTML.

Only what assistants actually emit is converted: fenced code blocks (with an
optional language label), inline code and "> " quote lines. Everything else
is escaped, so arbitrary text never trips Telegram's HTML parser.
"""

import html
import re
from typing import List

FENCED_CODE_RE = re.compile(r"```([^\n`]*)\n(.*?)```", re.S)
INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
BLOCKQUOTE_RE = re.compile(r"^>\s?(.*)$")
FENCE_LANGUAGE_RE = re.compile(r"[a-z0-9_+-]{1,24}")

FENCE = "```"


def escape_html(text: str) -> str:
    """Escape &, < and > (Telegram HTML does not need quotes escaped)."""
    return html.escape(text, quote=False)


def _fence_language(raw: str) -> str | None:
    language = raw.strip().lower()
    return language if FENCE_LANGUAGE_RE.fullmatch(language) else None


def _render_inline(line: str) -> str:
    parts: List[str] = []
    cursor = 0
    for match in INLINE_CODE_RE.finditer(line):
        parts.append(escape_html(line[cursor : match.start()]))
        parts.append(f"<code>{escape_html(match.group(1))}</code>")
        cursor = match.end()
    parts.append(escape_html(line[cursor:]))
    return "".join(parts)


def _render_plain(text: str) -> str:
    lines = []
    for line in text.split("\n"):
        quoted = BLOCKQUOTE_RE.match(line)
        if quoted:
            lines.append(f"<blockquote>{_render_inline(quoted.group(1))}</blockquote>")
        else:
            lines.append(_render_inline(line))
    return "\n".join(lines)


def render_html_from_markdown(markdown: str) -> str:
    """Render markdown as Telegram HTML (use with parse_mode="HTML")."""
    source = markdown or ""
    out: List[str] = []
    cursor = 0
    for match in FENCED_CODE_RE.finditer(source):
        out.append(_render_plain(source[cursor : match.start()]))
        language = _fence_language(match.group(1))
        if language:
            out.append(f"<b>{escape_html(language)}:</b>\n")
        out.append(f"<pre><code>{escape_html(match.group(2))}</code></pre>")
        cursor = match.end()
    out.append(_render_plain(source[cursor:]))
    return "".join(out)


def close_open_fences(chunks: List[str]) -> List[str]:
    """
    Close a code fence left open at the end of a chunk and reopen it (same
    language) at the start of the next, so every chunk renders on its own.
    """
    out: List[str] = []
    reopen = ""
    for chunk in chunks:
        chunk = reopen + chunk
        reopen = ""
        open_fence = None
        for line in chunk.split("\n"):
            stripped = line.strip()
            if stripped.startswith(FENCE):
                open_fence = None if open_fence is not None else stripped
        if open_fence is not None:
            chunk += "\n" + FENCE
            reopen = open_fence + "\n"
        out.append(chunk)
    return out
