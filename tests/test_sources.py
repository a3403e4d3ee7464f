import datetime
from types import SimpleNamespace

import pytest
from github import GithubException

from issue_relay.models import Err, FetchError, Ok
from issue_relay.sources import ISSUE_COMMENTS_QUERY, GitHubCommentSource, GitHubIssueTracker

from conftest import T0


def node(comment_id, minutes=0, body="text"):
    stamp = (T0 + datetime.timedelta(minutes=minutes)).isoformat().replace("+00:00", "Z")
    return {
        "databaseId": comment_id,
        "author": {"login": "claude"},
        "body": body,
        "url": f"https://github.com/owner/repo/issues/7#issuecomment-{comment_id}",
        "createdAt": stamp,
        "updatedAt": stamp,
    }


def page(nodes):
    return Ok({"repository": {"issue": {"comments": {"nodes": nodes}}}})


def fake_graphql(*responses):
    calls = []
    queue = list(responses)

    async def request(query, variables):
        calls.append(variables)
        return queue.pop(0)

    return request, calls


@pytest.mark.asyncio
async def test_fetch_reads_newest_window_sorted(settings, monkeypatch):
    source = GitHubCommentSource(settings, window=5)
    request, calls = fake_graphql(page([node(30), node(10), None, node(20)]))
    monkeypatch.setattr(source, "_graphql_request", request)

    result = await source.fetch(7)

    assert isinstance(result, Ok)
    assert [c.id for c in result.value] == [10, 20, 30]
    assert len(calls) == 1
    assert calls[0] == {"owner": "owner", "repo": "repo", "number": 7, "window": 5}


def test_comments_are_read_from_the_end_of_the_thread(settings):
    assert "comments(last: $window)" in ISSUE_COMMENTS_QUERY
    assert "first:" not in ISSUE_COMMENTS_QUERY
    assert GitHubCommentSource(settings, window=500).window == 100


@pytest.mark.asyncio
async def test_fetch_without_comments(settings, monkeypatch):
    source = GitHubCommentSource(settings)
    request, _ = fake_graphql(page([]))
    monkeypatch.setattr(source, "_graphql_request", request)

    assert await source.fetch(7) == Ok([])


@pytest.mark.asyncio
async def test_missing_issue_is_an_error(settings, monkeypatch):
    source = GitHubCommentSource(settings)
    request, _ = fake_graphql(Ok({"repository": {"issue": None}}))
    monkeypatch.setattr(source, "_graphql_request", request)

    result = await source.fetch(7)
    assert isinstance(result, Err)
    assert result.error.status == 404


@pytest.mark.asyncio
async def test_request_errors_pass_through(settings, monkeypatch):
    source = GitHubCommentSource(settings)
    error = Err(FetchError("Rate limited by GitHub, retry after 60s", 429))
    request, _ = fake_graphql(error)
    monkeypatch.setattr(source, "_graphql_request", request)

    assert await source.fetch(7) is error


@pytest.mark.asyncio
async def test_request_needs_token(settings):
    source = GitHubCommentSource(type(settings)(github_owner="owner", github_repo="repo"))
    result = await source._graphql_request("query", {})
    assert isinstance(result, Err)


class FakeRepo:
    def __init__(self, fail=None):
        self.fail = fail
        self.created = []
        self.comments = []

    def create_issue(self, title, body, labels):
        if self.fail:
            raise self.fail
        self.created.append((title, body, labels))
        return SimpleNamespace(number=12, html_url="https://github.com/owner/repo/issues/12", title=title, node_id="I_1")

    def get_issue(self, number):
        repo = self

        class Issue:
            def create_comment(self, body):
                if repo.fail:
                    raise repo.fail
                repo.comments.append((number, body))
                return SimpleNamespace(id=555)

        return Issue()


@pytest.mark.asyncio
async def test_create_issue(settings, monkeypatch):
    tracker = GitHubIssueTracker(settings)
    repo = FakeRepo()
    monkeypatch.setattr(tracker, "_get_repo", lambda: repo)

    result = await tracker.create_issue("New feature request", "body", ["discord-request"])

    assert isinstance(result, Ok)
    assert result.value.number == 12
    assert repo.created == [("New feature request", "body", ["discord-request"])]


@pytest.mark.asyncio
async def test_create_issue_reports_github_errors(settings, monkeypatch):
    tracker = GitHubIssueTracker(settings)
    repo = FakeRepo(fail=GithubException(404, {"message": "Not Found"}, None))
    monkeypatch.setattr(tracker, "_get_repo", lambda: repo)

    result = await tracker.create_issue("t", "b", [])

    assert isinstance(result, Err)
    assert result.error.status == 404
    assert result.error.message == "Not Found"


@pytest.mark.asyncio
async def test_create_comment(settings, monkeypatch):
    tracker = GitHubIssueTracker(settings)
    repo = FakeRepo()
    monkeypatch.setattr(tracker, "_get_repo", lambda: repo)

    assert await tracker.create_comment(12, "hello") == Ok(555)
    assert repo.comments == [(12, "hello")]
