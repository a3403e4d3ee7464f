"""
Progress monitoring: one poll cycle of an issue-to-thread session.

``ProgressMonitor.step`` is handed the session's current state, looks at the issue's
comments, mirrors a new or edited latest comment into the thread, and answers with
either ``Continue(next_state)`` or ``Terminate(reason)``. Rescheduling is the
caller's business.
"""
from __future__ import annotations

import datetime
import enum
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, Union

from .common.config import RelaySettings
from .completion import CompletionDetector
from .formatting import format_comment_for_discord, reference_link
from .models import (
    Comment,
    Err,
    FetchError,
    MessageRef,
    MonitoringState,
    Phase,
    Result,
    SinkError,
    utc_now,
)
from .segmenter import segment


log = logging.getLogger("red.issue_relay.progress")

TIMEOUT_NOTICE = "⏱️ Progress monitoring stopped after {minutes} minutes. The task may still be in progress."
FETCH_FAILED_NOTICE = "❌ Failed to check for new comments: {error}"


class CommentSource(Protocol):
    async def fetch(self, issue_number: int) -> Result[List[Comment], FetchError]:
        ...


class NotificationSink(Protocol):
    async def post(self, thread_id: int, text: str) -> Result[MessageRef, SinkError]:
        ...

    async def edit(self, ref: MessageRef, text: str) -> Result[MessageRef, SinkError]:
        ...

    async def clear_indicator(self, ref: MessageRef) -> Result[None, SinkError]:
        ...


class CommentChange(enum.Enum):
    NEW = "new"
    EDITED = "edited"
    UNCHANGED = "unchanged"


class TerminationReason(enum.Enum):
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    FETCH_FAILED = "fetch_failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Continue:
    state: MonitoringState


@dataclass(frozen=True)
class Terminate:
    reason: TerminationReason
    detail: str = ""


CycleOutcome = Union[Continue, Terminate]


def latest_comment(comments: Sequence[Comment]) -> Optional[Comment]:
    if not comments:
        return None
    return max(comments, key=lambda c: c.id)


def classify(state: MonitoringState, latest: Comment) -> CommentChange:
    """
    Decide whether ``latest`` needs relaying.

    An id above the last seen one is always NEW, whatever the timestamps say. The same
    id counts as EDITED only when its edit time moved past what was last relayed.
    """
    if state.last_seen_comment_id is None or latest.id > state.last_seen_comment_id:
        return CommentChange.NEW
    if latest.id == state.last_seen_comment_id and latest.was_edited:
        if state.last_seen_updated_at is None or latest.updated_at > state.last_seen_updated_at:
            return CommentChange.EDITED
    return CommentChange.UNCHANGED


class ProgressMonitor:
    def __init__(
        self,
        source: CommentSource,
        sink: NotificationSink,
        settings: RelaySettings,
        *,
        detector: Optional[CompletionDetector] = None,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self.source = source
        self.sink = sink
        self.settings = settings
        self.detector = detector or CompletionDetector()
        self.clock = clock

    async def step(self, state: MonitoringState) -> CycleOutcome:
        state.validate()
        log.debug(
            "Checking progress: issue=#%s attempt=%d last_comment=%s phase=%s",
            state.issue_number, state.attempt_count, state.last_seen_comment_id, state.phase.value,
        )

        if self.clock() - state.started_at > self.settings.deadline:
            log.info("Deadline reached for issue #%s, stopping progress check", state.issue_number)
            await self._post_notice(state, TIMEOUT_NOTICE.format(minutes=self.settings.deadline_minutes))
            if not state.is_final_pass:
                await self._clear_indicator(state)
            return Terminate(TerminationReason.TIMEOUT)

        result = await self.source.fetch(state.issue_number)
        if isinstance(result, Err):
            log.error("Failed to fetch comments for issue #%s: %s", state.issue_number, result.error)
            await self._post_notice(state, FETCH_FAILED_NOTICE.format(error=result.error.message))
            if not state.is_final_pass:
                await self._clear_indicator(state)
            return Terminate(TerminationReason.FETCH_FAILED, str(result.error))

        latest = latest_comment(result.value)
        if latest is None:
            log.debug("No comments yet on issue #%s", state.issue_number)
            return self._carry_on(state)

        change = classify(state, latest)
        if change is CommentChange.UNCHANGED:
            return self._carry_on(state)

        log.debug("Comment %s on issue #%s: id=%s user=%s", change.value, state.issue_number, latest.id, latest.author)
        first_ref, continuation_refs = await self._relay(state, latest, change)
        next_state = state.advance(
            last_seen_comment_id=latest.id,
            last_seen_updated_at=latest.updated_at,
            last_message_ref=first_ref or state.last_message_ref,
            continuation_refs=continuation_refs,
        )

        if state.is_final_pass:
            log.info("Final pass done for issue #%s, stopping progress check", state.issue_number)
            return Terminate(TerminationReason.COMPLETED)

        if self.detector.is_finished(latest.body):
            log.info("Issue #%s marked as finished, scheduling one final pass", state.issue_number)
            await self._clear_indicator(state)
            return Continue(replace(next_state, phase=Phase.FINAL_PASS))

        return Continue(next_state)

    def _carry_on(self, state: MonitoringState) -> CycleOutcome:
        if state.is_final_pass:
            log.info("Final pass found nothing new for issue #%s, stopping progress check", state.issue_number)
            return Terminate(TerminationReason.COMPLETED)
        return Continue(state.advance())

    async def _relay(
        self, state: MonitoringState, comment: Comment, change: CommentChange
    ) -> Tuple[Optional[MessageRef], Tuple[MessageRef, ...]]:
        """
        Send the comment as one or more chunks.

        An edit rewrites the messages of the previous relay chunk by chunk and only posts
        chunks beyond those. Returns the first chunk's message and the rest.
        """
        text = format_comment_for_discord(comment)
        targets: List[MessageRef] = []
        if change is CommentChange.EDITED and state.last_message_ref is not None:
            targets = [state.last_message_ref, *state.continuation_refs]

        refs: List[Optional[MessageRef]] = []
        for index, chunk in enumerate(segment(text, self.settings.message_limit, reference_link(comment.url))):
            target = targets[index] if index < len(targets) else None
            if target is not None:
                log.debug("Editing message %s for comment %s", target.message_id, comment.id)
                result = await self.sink.edit(target, chunk)
            else:
                result = await self.sink.post(state.thread_id, chunk)
            if isinstance(result, Err):
                log.warning(
                    "Failed to relay chunk %d of comment %s to thread %s: %s",
                    index + 1, comment.id, state.thread_id, result.error,
                )
                refs.append(target)
                continue
            refs.append(result.value)

        if len(targets) > len(refs):
            log.debug("Edited comment %s shrank, %d older chunks left as they were", comment.id, len(targets) - len(refs))
        first_ref = refs[0] if refs else None
        return first_ref, tuple(ref for ref in refs[1:] if ref is not None)

    async def _post_notice(self, state: MonitoringState, text: str) -> None:
        result = await self.sink.post(state.thread_id, text)
        if isinstance(result, Err):
            log.warning("Failed to post notice to thread %s: %s", state.thread_id, result.error)

    async def _clear_indicator(self, state: MonitoringState) -> None:
        result = await self.sink.clear_indicator(state.original_message_ref)
        if isinstance(result, Err):
            log.warning("Failed to clear indicator on message %s: %s", state.original_message_ref.message_id, result.error)
