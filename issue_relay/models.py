"""
Data model for the IssueRelay cog.

Monitoring state is passed by value between poll cycles, so every type here is a
frozen dataclass with ``to_dict``/``from_dict`` helpers for storage in Red's Config.
"""
from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar, Union


T = TypeVar("T")
E = TypeVar("E")


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 timestamp (GitHub style ``...Z`` included) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        parsed = datetime.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


# ----------------------
# Errors
# ----------------------
class IssueRelayError(Exception):
    """Base error for the IssueRelay cog."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    def __str__(self) -> str:
        if self.status:
            return f"{self.message} (status {self.status})"
        return self.message


class FetchError(IssueRelayError):
    """The comment source could not be reached or rejected the request."""


class SinkError(IssueRelayError):
    """A chat message could not be posted, edited or un-reacted."""


class TrackerError(IssueRelayError):
    """Issue or comment creation on the tracker failed."""


class MalformedState(IssueRelayError):
    """A monitoring state is missing identifiers it cannot run without."""


# ----------------------
# Result values
# ----------------------
@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E


Result = Union[Ok[T], Err[E]]


# ----------------------
# Issue tracker / chat references
# ----------------------
@dataclass(frozen=True)
class Comment:
    id: int
    author: str
    body: str
    created_at: datetime.datetime
    updated_at: datetime.datetime
    url: str

    @property
    def was_edited(self) -> bool:
        return self.updated_at > self.created_at

    @classmethod
    def from_graphql(cls, node: Dict[str, Any]) -> "Comment":
        author = node.get("author") or {}
        created_at = parse_timestamp(node.get("createdAt"))
        updated_at = parse_timestamp(node.get("updatedAt")) or created_at
        return cls(
            id=int(node["databaseId"]),
            author=author.get("login") or "ghost",
            body=node.get("body") or "",
            created_at=created_at,
            updated_at=updated_at,
            url=node.get("url") or "",
        )


@dataclass(frozen=True)
class IssueRef:
    number: int
    url: str
    title: str = ""
    node_id: Optional[str] = None


@dataclass(frozen=True)
class MessageRef:
    channel_id: int
    message_id: int

    def to_dict(self) -> Dict[str, int]:
        return {"channel_id": self.channel_id, "message_id": self.message_id}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["MessageRef"]:
        if not data:
            return None
        try:
            return cls(channel_id=int(data["channel_id"]), message_id=int(data["message_id"]))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedState(f"Invalid message reference: {data!r}") from e


# ----------------------
# Monitoring session
# ----------------------
class Phase(enum.Enum):
    POLLING = "polling"
    FINAL_PASS = "final_pass"


@dataclass(frozen=True)
class MonitoringState:
    """
    One issue-to-thread monitoring session, as seen by a single poll cycle.

    ``started_at`` never changes after ``begin``; every other field is rewritten with
    ``dataclasses.replace`` by the progress monitor. ``last_message_ref`` is the first
    message of the last relayed comment and ``continuation_refs`` its remaining chunks.
    """

    issue_number: int
    thread_id: int
    original_message_ref: MessageRef
    started_at: datetime.datetime
    attempt_count: int = 0
    last_seen_comment_id: Optional[int] = None
    last_seen_updated_at: Optional[datetime.datetime] = None
    last_message_ref: Optional[MessageRef] = None
    continuation_refs: Tuple[MessageRef, ...] = ()
    phase: Phase = field(default=Phase.POLLING)

    @classmethod
    def begin(
        cls,
        issue_number: int,
        thread_id: int,
        original_message_ref: MessageRef,
        started_at: Optional[datetime.datetime] = None,
    ) -> "MonitoringState":
        return cls(
            issue_number=issue_number,
            thread_id=thread_id,
            original_message_ref=original_message_ref,
            started_at=started_at or utc_now(),
        )

    @property
    def is_final_pass(self) -> bool:
        return self.phase is Phase.FINAL_PASS

    def validate(self) -> None:
        if not self.issue_number or not self.thread_id:
            raise MalformedState(
                f"Monitoring state is missing identifiers (issue={self.issue_number!r}, thread={self.thread_id!r})"
            )
        if self.original_message_ref is None:
            raise MalformedState(f"Monitoring state for issue #{self.issue_number} has no original message")
        if self.started_at is None or self.started_at.tzinfo is None:
            raise MalformedState(f"Monitoring state for issue #{self.issue_number} has no aware start time")
        if self.attempt_count < 0:
            raise MalformedState(f"Negative attempt count for issue #{self.issue_number}")

    def advance(self, **changes: Any) -> "MonitoringState":
        """Return the state for the next cycle: attempt count bumped, ``changes`` applied."""
        return replace(self, attempt_count=self.attempt_count + 1, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "issue_number": self.issue_number,
            "thread_id": self.thread_id,
            "original_message_ref": self.original_message_ref.to_dict(),
            "started_at": self.started_at.isoformat(),
            "attempt_count": self.attempt_count,
            "last_seen_comment_id": self.last_seen_comment_id,
            "last_seen_updated_at": self.last_seen_updated_at.isoformat() if self.last_seen_updated_at else None,
            "last_message_ref": self.last_message_ref.to_dict() if self.last_message_ref else None,
            "continuation_refs": [ref.to_dict() for ref in self.continuation_refs],
            "phase": self.phase.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringState":
        try:
            state = cls(
                issue_number=int(data["issue_number"]),
                thread_id=int(data["thread_id"]),
                original_message_ref=MessageRef.from_dict(data.get("original_message_ref")),
                started_at=parse_timestamp(data.get("started_at")),
                attempt_count=int(data.get("attempt_count") or 0),
                last_seen_comment_id=(
                    int(data["last_seen_comment_id"]) if data.get("last_seen_comment_id") is not None else None
                ),
                last_seen_updated_at=parse_timestamp(data.get("last_seen_updated_at")),
                last_message_ref=MessageRef.from_dict(data.get("last_message_ref")),
                continuation_refs=tuple(
                    ref for ref in (MessageRef.from_dict(item) for item in data.get("continuation_refs") or []) if ref
                ),
                phase=Phase(data.get("phase") or Phase.POLLING.value),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedState(f"Unreadable monitoring state: {data!r}") from e
        state.validate()
        return state


# ----------------------
# Persisted thread <-> issue link
# ----------------------
@dataclass(frozen=True)
class SessionLink:
    """Maps a chat thread to the issue created from it; expires after a fixed lifetime."""

    channel_id: int
    thread_id: int
    issue_number: int
    issue_url: str
    created_at: datetime.datetime
    expires_at: datetime.datetime
    issue_title: str = ""

    @staticmethod
    def key_for(channel_id: int, thread_id: int) -> str:
        return f"{channel_id}:{thread_id}"

    @property
    def key(self) -> str:
        return self.key_for(self.channel_id, self.thread_id)

    def is_expired(self, now: Optional[datetime.datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "thread_id": self.thread_id,
            "issue_number": self.issue_number,
            "issue_url": self.issue_url,
            "issue_title": self.issue_title,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionLink":
        return cls(
            channel_id=int(data["channel_id"]),
            thread_id=int(data["thread_id"]),
            issue_number=int(data["issue_number"]),
            issue_url=data.get("issue_url") or "",
            issue_title=data.get("issue_title") or "",
            created_at=parse_timestamp(data["created_at"]),
            expires_at=parse_timestamp(data["expires_at"]),
        )
