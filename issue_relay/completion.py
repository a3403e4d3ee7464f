"""
Completion detection for relayed issue comments.

This is a best-effort heuristic: a fixed marker emitted by the upstream automation
when it has a pull request ready, plus a fixed list of phrases. A comment that merely
mentions "fixed" counts as finished, and an unusually worded completion does not.
"""
from __future__ import annotations

from typing import Iterable, Tuple


CREATE_PR_MARKER = "[Create PR ➔]"

COMPLETION_PHRASES: Tuple[str, ...] = (
    "claude finished",
    "implementation complete",
    "task completed",
    "done implementing",
    "finished implementing",
    "completed the implementation",
    "all changes have been made",
    "implementation is complete",
    "resolved",
    "fixed",
    "closing this issue",
)


class CompletionDetector:
    def __init__(self, marker: str = CREATE_PR_MARKER, phrases: Iterable[str] = COMPLETION_PHRASES) -> None:
        self.marker = marker
        self.phrases = tuple(p.lower() for p in phrases if p)

    def is_finished(self, text: str) -> bool:
        if not text:
            return False
        if self.marker and self.marker in text:
            return True
        lowered = text.lower()
        return any(phrase in lowered for phrase in self.phrases)


_default_detector = CompletionDetector()


def is_finished(text: str) -> bool:
    return _default_detector.is_finished(text)
