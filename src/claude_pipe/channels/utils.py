"""Channel utility helpers."""

from __future__ import annotations


def chunk_text(text: str, max_length: int) -> list[str]:
    """Split ``text`` into chunks of at most ``max_length`` characters.

    Newline boundaries are preferred; a line longer than the limit is cut
    hard.
    """

    if max_length <= 0:
        raise ValueError("max_length must be greater than zero")
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    remaining = text
    while len(remaining) > max_length:
        split_at = remaining.rfind("\n", 0, max_length + 1)
        if split_at <= 0:
            split_at = max_length
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks
