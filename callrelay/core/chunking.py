# callrelay/core/chunking.py
"""
Split long message bodies into transport-sized chunks.

Lines are kept whole where possible. A line longer than the limit is broken
at the last space at or before the limit (hard cut when there is none).
Chunk boundaries are not grapheme-aware: an emoji or an HTML entity can be
cut in half by a hard cut.
"""
from __future__ import annotations


def _break_long_line(line: str, max_length: int) -> tuple[list[str], str]:
    """Return (full pieces, remainder) for a line longer than ``max_length``."""
    pieces: list[str] = []
    remaining = line
    while len(remaining) > max_length:
        split_at = remaining.rfind(" ", 0, max_length + 1)
        if split_at <= 0:
            split_at = max_length
        piece = remaining[:split_at].strip()
        if piece:
            pieces.append(piece)
        remaining = remaining[split_at:].strip()
    return pieces, remaining


def split_message(text: str, max_length: int) -> list[str]:
    """
    Split ``text`` into chunks of at most ``max_length`` characters.

    Joining the chunks with newlines gives back every word of the input;
    only leading/trailing whitespace of each chunk is lost.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")

    chunks: list[str] = []
    current = ""

    for line in text.split("\n"):
        if len(current) + len(line) + 1 <= max_length:
            current += line + "\n"
            continue

        if current.strip():
            chunks.append(current.strip())
        current = ""

        if len(line) > max_length:
            pieces, remainder = _break_long_line(line, max_length)
            chunks.extend(pieces)
            if remainder:
                current = remainder + "\n"
        else:
            current = line + "\n"

    if current.strip():
        chunks.append(current.strip())

    return chunks
