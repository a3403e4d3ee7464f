import datetime

import pytest

from issue_relay.completion import CREATE_PR_MARKER
from issue_relay.models import MalformedState, MessageRef, MonitoringState, Ok, Phase
from issue_relay.progress import (
    CommentChange,
    Continue,
    ProgressMonitor,
    Terminate,
    TerminationReason,
    classify,
    latest_comment,
)

from conftest import T0, FakeSink, FakeSource, make_comment


ORIGIN = MessageRef(channel_id=50, message_id=51)


def clock_at(minutes):
    return lambda: T0 + datetime.timedelta(minutes=minutes)


def fresh_state(**changes):
    state = MonitoringState.begin(7, 100, ORIGIN, started_at=T0)
    return state.advance(**changes) if changes else state


def monitor(source, sink, settings, minutes=1):
    return ProgressMonitor(source, sink, settings, clock=clock_at(minutes))


@pytest.mark.asyncio
async def test_no_comments_keeps_polling(settings):
    sink = FakeSink()
    outcome = await monitor(FakeSource(Ok([])), sink, settings).step(fresh_state())

    assert isinstance(outcome, Continue)
    assert outcome.state.attempt_count == 1
    assert outcome.state.last_seen_comment_id is None
    assert sink.posts == [] and sink.cleared == []


@pytest.mark.asyncio
async def test_new_comment_is_posted_once(settings):
    sink = FakeSink()
    source = FakeSource(Ok([make_comment(11, "Looking into the bug")]))
    progress = monitor(source, sink, settings)

    first = await progress.step(fresh_state())
    assert isinstance(first, Continue)
    assert len(sink.posts) == 1
    thread_id, text = sink.posts[0]
    assert thread_id == 100
    assert "Looking into the bug" in text
    assert "Comment from claude" in text
    assert first.state.last_seen_comment_id == 11
    assert first.state.last_message_ref == MessageRef(100, 1001)

    second = await progress.step(first.state)
    assert isinstance(second, Continue)
    assert len(sink.posts) == 1
    assert second.state.attempt_count == first.state.attempt_count + 1


@pytest.mark.asyncio
async def test_latest_comment_is_chosen_by_id(settings):
    sink = FakeSink()
    comments = [make_comment(30, "newest"), make_comment(10, "oldest"), make_comment(20, "middle")]
    outcome = await monitor(FakeSource(Ok(comments)), sink, settings).step(fresh_state())

    assert outcome.state.last_seen_comment_id == 30
    assert len(sink.posts) == 1
    assert "newest" in sink.posts[0][1]


@pytest.mark.asyncio
async def test_edited_comment_updates_previous_message_once(settings):
    sink = FakeSink()
    previous = MessageRef(100, 555)
    state = fresh_state(last_seen_comment_id=11, last_seen_updated_at=T0, last_message_ref=previous)
    edited = make_comment(11, "Updated plan", updated=T0 + datetime.timedelta(minutes=2))
    progress = monitor(FakeSource(Ok([edited])), sink, settings, minutes=3)

    first = await progress.step(state)
    assert sink.posts == []
    assert len(sink.edits) == 1
    assert sink.edits[0][0] == previous
    assert "Updated plan" in sink.edits[0][1]
    assert "(edited)" in sink.edits[0][1]
    assert first.state.last_message_ref == previous

    await progress.step(first.state)
    assert len(sink.edits) == 1


@pytest.mark.asyncio
async def test_new_id_wins_over_older_timestamp(settings):
    sink = FakeSink()
    state = fresh_state(last_seen_comment_id=11, last_seen_updated_at=T0 + datetime.timedelta(minutes=5))
    newer_id = make_comment(12, "Second comment", created=T0)
    outcome = await monitor(FakeSource(Ok([newer_id])), sink, settings, minutes=6).step(state)

    assert len(sink.posts) == 1
    assert sink.edits == []
    assert outcome.state.last_seen_comment_id == 12


@pytest.mark.asyncio
async def test_completion_schedules_one_final_pass(settings):
    sink = FakeSink()
    done = make_comment(11, f"All done.\n\n{CREATE_PR_MARKER}(https://github.com/owner/repo/compare)")
    progress = monitor(FakeSource(Ok([done])), sink, settings)

    outcome = await progress.step(fresh_state())
    assert isinstance(outcome, Continue)
    assert outcome.state.phase is Phase.FINAL_PASS
    assert sink.cleared == [ORIGIN]
    assert len(sink.posts) == 1

    final = await progress.step(outcome.state)
    assert final == Terminate(TerminationReason.COMPLETED)
    assert len(sink.posts) == 1
    assert sink.cleared == [ORIGIN]


@pytest.mark.asyncio
async def test_final_pass_relays_late_comment_then_stops(settings):
    sink = FakeSink()
    state = fresh_state(last_seen_comment_id=11, last_seen_updated_at=T0, phase=Phase.FINAL_PASS)
    late = make_comment(12, "PR opened")
    outcome = await monitor(FakeSource(Ok([make_comment(11), late])), sink, settings).step(state)

    assert isinstance(outcome, Terminate)
    assert outcome.reason is TerminationReason.COMPLETED
    assert len(sink.posts) == 1
    assert "PR opened" in sink.posts[0][1]
    assert sink.cleared == []


@pytest.mark.asyncio
async def test_deadline_stops_without_fetching(settings):
    sink = FakeSink()
    source = FakeSource(Ok([make_comment(11)]))
    outcome = await monitor(source, sink, settings, minutes=31).step(fresh_state())

    assert isinstance(outcome, Terminate)
    assert outcome.reason is TerminationReason.TIMEOUT
    assert source.calls == 0
    assert len(sink.posts) == 1
    assert "30 minutes" in sink.posts[0][1]
    assert sink.cleared == [ORIGIN]


@pytest.mark.asyncio
async def test_deadline_in_final_pass_leaves_indicator_alone(settings):
    sink = FakeSink()
    state = fresh_state(phase=Phase.FINAL_PASS)
    outcome = await monitor(FakeSource(Ok([])), sink, settings, minutes=45).step(state)

    assert outcome.reason is TerminationReason.TIMEOUT
    assert sink.cleared == []


@pytest.mark.asyncio
async def test_fetch_failure_terminates_with_notice(settings, fetch_error):
    sink = FakeSink()
    outcome = await monitor(FakeSource(fetch_error), sink, settings).step(fresh_state())

    assert isinstance(outcome, Terminate)
    assert outcome.reason is TerminationReason.FETCH_FAILED
    assert len(sink.posts) == 1
    assert "Failed to check for new comments" in sink.posts[0][1]
    assert sink.cleared == [ORIGIN]


@pytest.mark.asyncio
async def test_malformed_state_is_rejected(settings):
    state = MonitoringState.begin(0, 100, ORIGIN, started_at=T0)
    with pytest.raises(MalformedState):
        await monitor(FakeSource(Ok([])), FakeSink(), settings).step(state)


@pytest.mark.asyncio
async def test_long_comment_is_split_in_order(settings):
    sink = FakeSink()
    paragraphs = [f"Paragraph {i}. " + "word " * 150 for i in range(8)]
    comment = make_comment(11, "\n\n".join(paragraphs))
    outcome = await monitor(FakeSource(Ok([comment])), sink, settings).step(fresh_state())

    texts = [text for _, text in sink.posts]
    assert len(texts) > 1
    assert all(len(text) <= settings.message_limit for text in texts)
    positions = [next(i for i, text in enumerate(texts) if f"Paragraph {n}." in text) for n in range(8)]
    assert positions == sorted(positions)
    assert "View on GitHub" in texts[-1]
    assert outcome.state.last_message_ref == MessageRef(100, 1001)


@pytest.mark.asyncio
async def test_sink_failure_keeps_previous_message_ref(settings):
    sink = FakeSink(fail_posts=True)
    outcome = await monitor(FakeSource(Ok([make_comment(11)])), sink, settings).step(fresh_state())

    assert isinstance(outcome, Continue)
    assert outcome.state.last_message_ref is None
    assert outcome.state.last_seen_comment_id == 11


def test_classify():
    state = fresh_state(last_seen_comment_id=11, last_seen_updated_at=T0)
    assert classify(state, make_comment(12)) is CommentChange.NEW
    assert classify(state, make_comment(11)) is CommentChange.UNCHANGED
    assert classify(state, make_comment(10)) is CommentChange.UNCHANGED
    edited = make_comment(11, updated=T0 + datetime.timedelta(seconds=5))
    assert classify(state, edited) is CommentChange.EDITED
    assert classify(fresh_state(), make_comment(1)) is CommentChange.NEW


def test_latest_comment_empty():
    assert latest_comment([]) is None


@pytest.mark.asyncio
async def test_edited_long_comment_rewrites_every_chunk(settings):
    sink = FakeSink()
    paragraphs = [f"Paragraph {i}. " + "word " * 150 for i in range(8)]
    original = make_comment(11, "\n\n".join(paragraphs))
    paragraphs[0] = "Paragraph 0. Revised. " + "word " * 148
    edited = make_comment(11, "\n\n".join(paragraphs), updated=T0 + datetime.timedelta(minutes=2))
    progress = monitor(FakeSource(Ok([original]), Ok([edited])), sink, settings, minutes=3)

    first = await progress.step(fresh_state())
    posted = [MessageRef(100, 1001 + i) for i in range(len(sink.posts))]
    assert len(posted) > 1
    assert first.state.last_message_ref == posted[0]
    assert first.state.continuation_refs == tuple(posted[1:])

    second = await progress.step(first.state)
    assert len(sink.posts) == len(posted)
    assert [ref for ref, _ in sink.edits] == posted
    assert "Revised" in sink.edits[0][1]
    assert second.state.last_message_ref == posted[0]
    assert second.state.continuation_refs == tuple(posted[1:])
