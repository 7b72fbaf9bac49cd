from __future__ import annotations

from dataclasses import dataclass, field
import math
import re
from typing import Any, Iterable


# Rough characters-per-token ratio for mixed French/English/Arabic text.
CHARS_PER_TOKEN = 4

DEFAULT_CHUNK_SIZE = 500
DEFAULT_OVERLAP = 50
DEFAULT_MIN_CHUNK_SIZE = 100

# Coarsest boundary first; later separators only apply to still-oversized segments.
SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", "! ", "? ", "; ", ", ")

_WHITESPACE = re.compile(r"\s+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class TextChunk:
    index: int
    content: str
    token_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


def estimate_tokens(text: str) -> int:
    """Approximate token count: the mean of a character-based and a word-based estimate."""
    if not text:
        return 0
    char_estimate = math.ceil(len(text) / CHARS_PER_TOKEN)
    words = len([w for w in _WHITESPACE.split(text) if w])
    return math.ceil((char_estimate + words * 1.3) / 2)


def clean_text(text: str) -> str:
    cleaned = text.replace("\r\n", "\n").replace("\t", "  ")
    return _EXCESS_NEWLINES.sub("\n\n", cleaned).strip()


def _split_keep_separator(text: str, separator: str) -> list[str]:
    # Keep the separator at the end of each piece so merged chunks read naturally.
    parts: list[str] = []
    remaining = text
    while remaining:
        idx = remaining.find(separator)
        if idx == -1:
            parts.append(remaining)
            break
        cut = idx + len(separator)
        parts.append(remaining[:cut])
        remaining = remaining[cut:]
    return [p for p in parts if p]


def _split_words(text: str, target_tokens: int) -> list[str]:
    # Last resort for runs with no separators: pack whole words into windows.
    max_chars = max(1, target_tokens * CHARS_PER_TOKEN)
    pieces: list[str] = []
    current = ""
    for word in re.findall(r"\S+\s*", text):
        if current and len(current) + len(word) > max_chars:
            pieces.append(current)
            current = ""
        while len(word) > max_chars:
            pieces.append(word[:max_chars])
            word = word[max_chars:]
        current += word
    if current:
        pieces.append(current)
    return pieces


def _segment(text: str, chunk_size: int) -> list[str]:
    segments = [text]
    for separator in SEPARATORS:
        next_segments: list[str] = []
        for segment in segments:
            if estimate_tokens(segment) > chunk_size:
                next_segments.extend(_split_keep_separator(segment, separator))
            else:
                next_segments.append(segment)
        segments = next_segments
    final: list[str] = []
    for segment in segments:
        if estimate_tokens(segment) > chunk_size:
            final.extend(_split_words(segment, chunk_size))
        else:
            final.append(segment)
    return final


def _merge(segments: Iterable[str], chunk_size: int) -> list[str]:
    merged: list[str] = []
    current = ""
    current_tokens = 0
    for segment in segments:
        tokens = estimate_tokens(segment)
        if current_tokens + tokens <= chunk_size:
            current += segment
            current_tokens += tokens
            continue
        if current:
            merged.append(current)
        current = segment
        current_tokens = tokens
    if current:
        merged.append(current)
    return merged


def _overlap_prefix(previous: str, overlap_tokens: int) -> str:
    # Start the overlap on a word boundary so chunks never open mid-word.
    tail = previous[-overlap_tokens * CHARS_PER_TOKEN :]
    match = re.search(r"\s", tail)
    if match is None or match.start() == 0:
        return ""
    prefix = tail[match.start() :].lstrip()
    if prefix and not prefix[-1].isspace():
        prefix += " "
    return prefix


def chunk_text(
    text: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> list[TextChunk]:
    """Split ``text`` into ordered, overlapping chunks sized in estimated tokens.

    Indices are contiguous from 0 and follow document order. Undersized chunks are
    folded into their successor instead of being dropped, so no content is lost.
    """
    cleaned = clean_text(text or "")
    if not cleaned:
        return []

    total_tokens = estimate_tokens(cleaned)
    if total_tokens <= chunk_size:
        return [
            TextChunk(
                index=0,
                content=cleaned,
                token_count=total_tokens,
                metadata={"start": 0, "end": len(cleaned), "has_overlap": False},
            )
        ]

    merged = _merge(_segment(cleaned, chunk_size), chunk_size)

    # Fold undersized pieces forward; the last piece stays even when small.
    folded: list[str] = []
    carry = ""
    for position, piece in enumerate(merged):
        piece = carry + piece
        carry = ""
        is_last = position == len(merged) - 1
        if not is_last and estimate_tokens(piece.strip()) < min_chunk_size:
            carry = piece
            continue
        folded.append(piece)

    chunks: list[TextChunk] = []
    cursor = 0
    for position, piece in enumerate(folded):
        body = piece.strip()
        if not body:
            continue
        start = cleaned.find(body, cursor)
        if start == -1:
            start = cursor
        end = start + len(body)
        cursor = end
        content = body
        has_overlap = False
        if position > 0 and overlap > 0:
            prefix = _overlap_prefix(folded[position - 1], overlap)
            if prefix:
                content = prefix + body
                has_overlap = True
        chunks.append(
            TextChunk(
                index=len(chunks),
                content=content,
                token_count=estimate_tokens(content),
                metadata={"start": start, "end": end, "has_overlap": has_overlap},
            )
        )
    return chunks


def chunk_stats(chunks: list[TextChunk]) -> dict[str, int]:
    if not chunks:
        return {"total_chunks": 0, "total_tokens": 0, "min_tokens": 0, "max_tokens": 0}
    counts = [c.token_count for c in chunks]
    return {
        "total_chunks": len(chunks),
        "total_tokens": sum(counts),
        "min_tokens": min(counts),
        "max_tokens": max(counts),
    }
