"""Split long text into chunks that fit a single Telegram message."""

from typing import List

# Telegram rejects messages over 4096 characters; keep headroom for entities.
TELEGRAM_MAX_TEXT_CHARS = 4096
SAFE_CHUNK_CHARS = 3900


def split_text(text: str, limit: int = SAFE_CHUNK_CHARS) -> List[str]:
    """
    Split by lines first, then hard-slice lines longer than limit.
    Short text comes back as a single chunk (even when empty).
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    text = text or ""
    if len(text) <= limit:
        return [text]

    chunks: List[str] = []
    current = ""
    for line in text.split("\n"):
        candidate = line if not current else f"{current}\n{line}"
        if len(candidate) <= limit:
            current = candidate
            continue
        if current:
            chunks.append(current)
            current = ""
        if len(line) <= limit:
            current = line
            continue
        # e.g. minified JSON on one line
        for i in range(0, len(line), limit):
            chunks.append(line[i : i + limit])
    if current:
        chunks.append(current)
    return chunks
