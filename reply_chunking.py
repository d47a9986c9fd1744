from __future__ import annotations

from message_content import sanitize_text


DEFAULT_MAX_REPLY_CHARS = 1500
SENTENCE_BOUNDARIES = frozenset({"。", "！", "？", "!", "?", ";", "；", ".", "\n"})


def split_sentences(text: str) -> list[str]:
    parts: list[str] = []
    start = 0
    for idx, ch in enumerate(text):
        if ch in SENTENCE_BOUNDARIES:
            sentence = text[start : idx + 1].strip()
            if sentence:
                parts.append(sentence)
            start = idx + 1
    tail = text[start:].strip()
    if tail:
        parts.append(tail)
    return parts


def _pack(pieces: list[str], max_chars: int, sep: str) -> list[str]:
    chunks: list[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
        elif len(current) + len(sep) + len(piece) <= max_chars:
            current = f"{current}{sep}{piece}"
        else:
            chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return chunks


def _split_paragraph(paragraph: str, max_chars: int) -> list[str]:
    if len(paragraph) <= max_chars:
        return [paragraph]
    pieces: list[str] = []
    for sentence in split_sentences(paragraph):
        if len(sentence) <= max_chars:
            pieces.append(sentence)
            continue
        # A single sentence longer than the limit is cut hard.
        pieces.extend(
            piece
            for piece in (sentence[i : i + max_chars].strip() for i in range(0, len(sentence), max_chars))
            if piece
        )
    return _pack(pieces, max_chars, "")


def split_reply_text(text: str, max_chars: int = DEFAULT_MAX_REPLY_CHARS) -> list[str]:
    """Split an outgoing reply on paragraph, then sentence boundaries."""
    normalized = sanitize_text(text).strip()
    if max_chars <= 0:
        max_chars = DEFAULT_MAX_REPLY_CHARS
    if not normalized:
        return [""]
    if len(normalized) <= max_chars:
        return [normalized]

    chunks: list[str] = []
    current = ""
    for paragraph in (p.strip() for p in normalized.split("\n\n")):
        if not paragraph:
            continue
        for idx, piece in enumerate(_split_paragraph(paragraph, max_chars)):
            if not current:
                current = piece
                continue
            sep = "\n\n" if idx == 0 else "\n"
            if len(current) + len(sep) + len(piece) <= max_chars:
                current = f"{current}{sep}{piece}"
            else:
                chunks.append(current)
                current = piece
    if current:
        chunks.append(current)
    return chunks
