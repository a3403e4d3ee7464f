"""
Text helpers: GitHub markdown to Discord, and the bodies the relay posts on both sides.
"""
from __future__ import annotations

import datetime
import re
from typing import Iterable, Optional

import discord

from .models import Comment


DEBUG_FLAG = "[DEBUG]"

_USER_MENTION_RE = re.compile(r"<@!?\d+>")
_HTML_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_SUMMARY_RE = re.compile(r"<summary>\s*(.*?)\s*</summary>", re.DOTALL | re.IGNORECASE)
_DETAILS_TAG_RE = re.compile(r"</?details[^>]*>", re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)\s]+)[^)]*\)")
_DEEP_HEADING_RE = re.compile(r"^#{4,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_TASK_DONE_RE = re.compile(r"^(\s*)[-*] \[[xX]\] ", re.MULTILINE)
_TASK_OPEN_RE = re.compile(r"^(\s*)[-*] \[ \] ", re.MULTILINE)

ISSUE_PREAMBLE = [
    "@claude, this is a request from a user that came through our Discord server.",
    "",
    "**Important Context:**",
    "- This request is from a Discord conversation and may be from a non-technical user",
    "- The user might be reporting a bug or requesting a new feature",
    "- The description might not include technical details or specific file/function names",
    "- You may need to search thoroughly through the codebase to find where the relevant functionality is implemented",
    "- Consider that the user's description might use different terminology than what's in the code",
]


def clean_discord_text(text: str) -> str:
    """Clean text for Discord by removing/replacing problematic characters."""
    if not text:
        return ""
    cleaned = text.replace("\x00", "").replace("\r\n", "\n").replace("\r", "\n")
    cleaned = cleaned.replace("\x08", "").replace("\x0B", "").replace("\x0C", "")
    while "\n\n\n\n" in cleaned:
        cleaned = cleaned.replace("\n\n\n\n", "\n\n\n")
    return cleaned.strip()


def github_to_discord(markdown: str) -> str:
    """Convert the GitHub-flavoured bits Discord cannot render into plain markdown."""
    text = _HTML_COMMENT_RE.sub("", markdown or "")
    text = _SUMMARY_RE.sub(lambda m: f"**{m.group(1)}**\n", text)
    text = _DETAILS_TAG_RE.sub("", text)
    text = _BR_RE.sub("\n", text)
    text = _IMAGE_RE.sub(lambda m: f"[{m.group(1) or 'image'}](<{m.group(2)}>)", text)
    # Discord renders only three heading levels
    text = _DEEP_HEADING_RE.sub(lambda m: f"**{m.group(1)}**", text)
    text = _TASK_DONE_RE.sub(lambda m: f"{m.group(1)}- ✅ ", text)
    text = _TASK_OPEN_RE.sub(lambda m: f"{m.group(1)}- ⬜ ", text)
    return clean_discord_text(text)


def clean_mention_text(text: str) -> str:
    """Strip user mentions and the debug flag from a triggering message."""
    return _USER_MENTION_RE.sub("", text or "").replace(DEBUG_FLAG, "").strip()


def reference_link(url: str) -> str:
    if not url:
        return ""
    return f"[View on GitHub](<{url}>)"


def format_comment_for_discord(comment: Comment) -> str:
    """Header plus converted body; the reference link is appended by the segmenter."""
    stamp = discord.utils.format_dt(comment.updated_at, style="f")
    edited = " (edited)" if comment.was_edited else ""
    header = f"💬 **Comment from {comment.author}** {stamp}{edited}"
    body = github_to_discord(comment.body)
    if not body:
        return header
    return f"{header}\n\n{body}"


def format_history_line(when: datetime.datetime, is_bot: bool, author: str, text: Optional[str]) -> str:
    sender = "Bot" if is_bot else "User"
    return f"[{when.isoformat()}] {sender} {author}: {text or '(no text)'}"


def format_issue_body(thread_history: str, user_message: str) -> str:
    sections = [
        *ISSUE_PREAMBLE,
        "",
        "## User's Request",
        user_message or "(no message)",
        "",
        "## Full Discord Thread Context",
        "The following is the complete conversation from Discord that led to this issue:",
        "```",
        thread_history.replace("```", "'''"),
        "```",
        "",
        "---",
        "_This issue was automatically created from a Discord conversation. "
        "Please analyze the request carefully and search the codebase as needed "
        "to understand and implement the user's needs._",
    ]
    return "\n".join(sections)


def format_reply_comment_body(user_message: str, author: str, jump_url: str, when: datetime.datetime) -> str:
    sections = [
        "@claude, there's an update from the user in the Discord thread:",
        "",
        f"**New message** from **{author}** on [Discord]({jump_url}) ({when.strftime('%Y-%m-%d %H:%M UTC')})",
        "",
        user_message,
        "",
        "---",
        "_This comment was automatically added from the ongoing Discord conversation. "
        "Please consider this additional context when working on the issue._",
    ]
    return "\n".join(sections)


def format_debug(lines: Iterable[str], message: str) -> str:
    return "\n".join(lines) + "\n\n---\n\n" + message


def tracker_error_hints(status: Optional[int], repository: str) -> list:
    """Operator hints for the common GitHub failure codes, shown in debug mode."""
    if status == 401:
        return [
            "⚠️ Authentication failed - possible causes:",
            "- Invalid GitHub token",
            "- Token lacks 'repo' scope",
            "- Token expired",
        ]
    if status == 404:
        return [
            "⚠️ Repository not found - possible causes:",
            f"- Repository {repository} doesn't exist",
            "- Token doesn't have access to this repository",
            "- Repository is private and token lacks access",
            "- Typo in owner or repo name",
        ]
    return []
