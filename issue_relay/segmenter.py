"""
Split long text into chunks that fit the chat transport's message limit.
"""
from __future__ import annotations

import re
from typing import Iterator, List


# Room kept free for headers or continuation markers added by the sender.
METADATA_BUFFER = 100

_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n\s*")


def _budget(limit: int) -> int:
    if limit > 2 * METADATA_BUFFER:
        return limit - METADATA_BUFFER
    return limit


def _last_sentence_end(window: str, text: str) -> int:
    """Index just past the last period in ``window`` that ends a sentence in ``text``."""
    index = window.rfind(".")
    while index > 0:
        following = text[index + 1:index + 2]
        if not following or following.isspace():
            return index + 1
        index = window.rfind(".", 0, index)
    return -1


def _split_paragraph(text: str, limit: int) -> Iterator[str]:
    """Cut one oversized paragraph, preferring sentence ends, then newlines, then spaces."""
    while len(text) > limit:
        window = text[:limit]
        cut = _last_sentence_end(window, text)
        if cut <= 0:
            cut = window.rfind("\n")
        if cut <= 0:
            cut = window.rfind(" ")
        if cut <= 0:
            cut = limit
        piece = text[:cut].rstrip()
        text = text[cut:].lstrip()
        if piece:
            yield piece
    if text:
        yield text


def segment(body: str, limit: int, link: str = "") -> Iterator[str]:
    """
    Yield ``body`` as chunks of at most ``limit`` characters, in document order.

    Paragraphs (blocks separated by blank lines) are packed together until the next one
    would overflow. ``link`` is appended after a blank line to the last chunk when it
    fits, otherwise it is yielded as a chunk of its own.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")

    body = (body or "").strip()
    link = (link or "").strip()
    suffix = f"\n\n{link}" if link else ""

    if not body:
        if link:
            yield from _split_paragraph(link, limit)
        return

    if len(body) + len(suffix) + METADATA_BUFFER <= limit:
        yield body + suffix
        return

    budget = _budget(limit)
    current = ""
    for paragraph in _PARAGRAPH_BREAK.split(body):
        paragraph = paragraph.strip("\n")
        if not paragraph.strip():
            continue
        if len(paragraph) > budget:
            if current:
                yield current
            pieces: List[str] = list(_split_paragraph(paragraph, budget))
            yield from pieces[:-1]
            current = pieces[-1] if pieces else ""
            continue
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) > budget:
            yield current
            current = paragraph
        else:
            current = candidate

    if not link:
        if current:
            yield current
        return

    if current and len(current) + len(suffix) <= limit:
        yield current + suffix
        return
    if current:
        yield current
    yield from _split_paragraph(link, limit)
