"""
GitHub side of the relay: issue comments over GraphQL (aiohttp), issue and comment
creation over the REST API (PyGithub, run in a worker thread).
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from github import Auth, Github, GithubException

from .common.config import RelaySettings
from .models import Comment, Err, FetchError, IssueRef, Ok, Result, TrackerError


log = logging.getLogger("red.issue_relay.sources")

GRAPHQL_URL = "https://api.github.com/graphql"

ISSUE_COMMENTS_QUERY = """
query($owner: String!, $repo: String!, $number: Int!, $window: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) {
      comments(last: $window) {
        nodes {
          databaseId
          author {
            login
          }
          body
          url
          createdAt
          updatedAt
        }
      }
    }
  }
}
"""


class GitHubCommentSource:
    """Fetches the newest comments of an issue, oldest first."""

    def __init__(self, settings: RelaySettings, *, timeout: float = 30.0, window: int = 20) -> None:
        self.settings = settings
        self.timeout = timeout
        self.window = max(1, min(window, 100))

    async def _graphql_request(self, query: str, variables: Dict[str, Any]) -> Result[Dict[str, Any], FetchError]:
        """Make a GraphQL request to GitHub's API."""
        if not self.settings.github_token:
            return Err(FetchError("GitHub token is not configured"))

        headers = {
            "Authorization": f"Bearer {self.settings.github_token}",
            "Content-Type": "application/json",
        }
        payload = {"query": query, "variables": variables}

        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(GRAPHQL_URL, headers=headers, json=payload) as response:
                    if response.status == 429:
                        retry_after = response.headers.get("Retry-After", "60")
                        log.warning("GitHub GraphQL rate limited (retry after %s seconds)", retry_after)
                        return Err(FetchError(f"Rate limited by GitHub, retry after {retry_after}s", 429))
                    if response.status != 200:
                        text = await response.text()
                        log.error("GraphQL request failed with status %d: %s", response.status, text[:200])
                        return Err(FetchError(f"GitHub returned HTTP {response.status}", response.status))
                    data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.error("GraphQL request to GitHub failed: %s", e)
            return Err(FetchError(f"Could not reach GitHub: {e}"))

        if data.get("errors"):
            errors = data["errors"]
            log.warning("GraphQL query had %d errors: %s", len(errors), [e.get("message", str(e))[:100] for e in errors[:3]])
            if not data.get("data"):
                return Err(FetchError(errors[0].get("message", "GraphQL query failed")))
        return Ok(data.get("data") or {})

    async def fetch(self, issue_number: int) -> Result[List[Comment], FetchError]:
        """
        Fetch the issue's newest comments (up to ``window``) in creation order.

        An issue without comments yields ``Ok([])``. Comments are read from the end of
        the thread, so the latest one is always present however long the issue gets.
        """
        variables = {
            "owner": self.settings.github_owner,
            "repo": self.settings.github_repo,
            "number": issue_number,
            "window": self.window,
        }
        result = await self._graphql_request(ISSUE_COMMENTS_QUERY, variables)
        if isinstance(result, Err):
            return result

        issue = (result.value.get("repository") or {}).get("issue")
        if issue is None:
            return Err(FetchError(f"Issue #{issue_number} not found in {self.settings.repository}", 404))

        comments: List[Comment] = []
        for node in (issue.get("comments") or {}).get("nodes") or []:
            if not node or node.get("databaseId") is None:
                continue
            comments.append(Comment.from_graphql(node))

        log.debug("Found %d recent comments on issue #%s", len(comments), issue_number)
        comments.sort(key=lambda c: c.id)
        return Ok(comments)


class GitHubIssueTracker:
    """Creates issues and comments through PyGithub without blocking the event loop."""

    def __init__(self, settings: RelaySettings) -> None:
        self.settings = settings
        self._repo = None

    def _get_repo(self):
        if self._repo is None:
            gh = Github(auth=Auth.Token(self.settings.github_token))
            self._repo = gh.get_repo(self.settings.repository)
        return self._repo

    async def _gh_call(self, fn_noargs):
        return await asyncio.to_thread(fn_noargs)

    async def create_issue(self, title: str, body: str, labels: Optional[List[str]] = None) -> Result[IssueRef, TrackerError]:
        log.debug(
            "Creating GitHub issue in %s: title=%r body_length=%d labels=%s",
            self.settings.repository, title, len(body or ""), labels,
        )
        try:
            issue = await self._gh_call(
                lambda: self._get_repo().create_issue(title=title, body=body, labels=list(labels or []))
            )
        except GithubException as e:
            log.error("Error creating GitHub issue: status=%s data=%s", e.status, e.data)
            return Err(TrackerError(_github_message(e, "Failed to create issue"), e.status))
        log.info("GitHub issue #%s created: %s", issue.number, issue.html_url)
        return Ok(IssueRef(number=issue.number, url=issue.html_url, title=issue.title, node_id=getattr(issue, "node_id", None)))

    async def create_comment(self, issue_number: int, body: str) -> Result[int, TrackerError]:
        log.debug("Creating comment on issue #%s (body_length=%d)", issue_number, len(body or ""))
        try:
            comment = await self._gh_call(
                lambda: self._get_repo().get_issue(number=issue_number).create_comment(body)
            )
        except GithubException as e:
            log.error("Error creating GitHub comment on #%s: status=%s data=%s", issue_number, e.status, e.data)
            return Err(TrackerError(_github_message(e, "Failed to create comment"), e.status))
        log.debug("GitHub comment %s created on issue #%s", comment.id, issue_number)
        return Ok(comment.id)


def validate_token(token: str) -> str:
    """Return the login the token belongs to; raises ``GithubException`` when rejected."""
    return Github(auth=Auth.Token(token)).get_user().login


def _github_message(error: GithubException, fallback: str) -> str:
    data = error.data if isinstance(error.data, dict) else {}
    return data.get("message") or fallback
