import datetime
from typing import List

import pytest

from issue_relay.common.config import RelaySettings
from issue_relay.models import Comment, Err, FetchError, MessageRef, Ok, SinkError


T0 = datetime.datetime(2026, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)


def make_comment(comment_id, body="Working on it", created=T0, updated=None, author="claude"):
    return Comment(
        id=comment_id,
        author=author,
        body=body,
        created_at=created,
        updated_at=updated or created,
        url=f"https://github.com/owner/repo/issues/7#issuecomment-{comment_id}",
    )


class FakeSource:
    """Hands out queued fetch results, repeating the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def fetch(self, issue_number):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class FakeSink:
    def __init__(self, fail_posts=False, fail_edits=False):
        self.posts: List[tuple] = []
        self.edits: List[tuple] = []
        self.cleared: List[MessageRef] = []
        self.fail_posts = fail_posts
        self.fail_edits = fail_edits
        self._next_id = 1000

    async def post(self, thread_id, text):
        if self.fail_posts:
            return Err(SinkError("post refused", 403))
        self._next_id += 1
        self.posts.append((thread_id, text))
        return Ok(MessageRef(channel_id=thread_id, message_id=self._next_id))

    async def edit(self, ref, text):
        if self.fail_edits:
            return Err(SinkError("edit refused", 403))
        self.edits.append((ref, text))
        return Ok(ref)

    async def clear_indicator(self, ref):
        self.cleared.append(ref)
        return Ok(None)


class FakeGroup:
    def __init__(self, data):
        self.data = data

    async def get_raw(self, *keys, default=None):
        node = self.data
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    async def set_raw(self, *keys, value):
        node = self.data
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = value

    async def clear_raw(self, *keys):
        node = self.data
        for key in keys[:-1]:
            node = node.get(key, {})
        node.pop(keys[-1], None)


class FakeGuildGroup:
    def __init__(self, data):
        self.data = data

    async def all(self):
        return dict(self.data)


class FakeConfig:
    """The slice of Red's Config used by SessionStore and the cog."""

    def __init__(self, guild_data=None):
        self.groups = {}
        self.guild_data = dict(guild_data or {})

    def register_guild(self, **defaults):
        self.guild_data = {**defaults, **self.guild_data}

    def init_custom(self, group, identifier_count):
        pass

    def register_custom(self, group, **defaults):
        pass

    def guild(self, guild):
        return FakeGuildGroup(self.guild_data)

    def custom(self, group, *identifiers):
        key = (group,) + tuple(str(i) for i in identifiers)
        data = self.groups.setdefault(key, {"links": {}, "monitors": {}})
        return FakeGroup(data)


@pytest.fixture
def settings():
    return RelaySettings(
        github_owner="owner",
        github_repo="repo",
        github_token="ghp_" + "x" * 36,
        deadline_minutes=30,
    )


@pytest.fixture
def fetch_error():
    return Err(FetchError("GitHub returned HTTP 502", 502))
