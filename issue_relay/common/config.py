"""
Default configuration for the IssueRelay cog.
This module defines the default guild values registered with Red's Config and the
explicit settings object handed to the relay components.
"""
from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


MIN_POLL_INTERVAL = 10  # seconds
DISCORD_MESSAGE_LIMIT = 2000

# Default guild configuration
DEFAULT_GUILD_CONFIG = {
    # GitHub settings
    "github_token": None,  # GitHub PAT
    "github_owner": None,  # owner or org
    "github_repo": None,  # repo name only
    "issue_title": "New feature request",  # Title for issues created from mentions
    "issue_labels": ["discord-request", "feature-request"],

    # Progress monitoring
    "relay_enabled": True,  # Whether mentions create issues at all
    "initial_delay": 10,  # Seconds before the first progress check
    "poll_interval": 30,  # Seconds between progress checks
    "deadline_minutes": 30,  # Monitoring stops after this long
    "message_limit": DISCORD_MESSAGE_LIMIT,  # Max characters per relayed message
    "indicator_emoji": "👀",  # Reaction shown while an issue is being worked on
}

# Per-guild session storage (custom group "sessions")
DEFAULT_SESSION_CONFIG = {
    "links": {},  # "channel_id:thread_id" -> SessionLink dict
    "monitors": {},  # str(issue_number) -> MonitoringState dict
}


@dataclass(frozen=True)
class RelaySettings:
    """Resolved settings for one guild, passed explicitly into the relay components."""

    github_owner: str
    github_repo: str
    github_token: Optional[str] = None
    issue_title: str = DEFAULT_GUILD_CONFIG["issue_title"]
    issue_labels: List[str] = field(default_factory=lambda: list(DEFAULT_GUILD_CONFIG["issue_labels"]))
    relay_enabled: bool = True
    initial_delay: int = DEFAULT_GUILD_CONFIG["initial_delay"]
    poll_interval: int = DEFAULT_GUILD_CONFIG["poll_interval"]
    deadline_minutes: int = DEFAULT_GUILD_CONFIG["deadline_minutes"]
    message_limit: int = DISCORD_MESSAGE_LIMIT
    indicator_emoji: str = DEFAULT_GUILD_CONFIG["indicator_emoji"]
    session_ttl_days: int = 30

    @property
    def repository(self) -> str:
        return f"{self.github_owner}/{self.github_repo}"

    @property
    def is_configured(self) -> bool:
        return bool(self.github_token and self.github_owner and self.github_repo)

    @property
    def deadline(self) -> datetime.timedelta:
        return datetime.timedelta(minutes=self.deadline_minutes)

    @property
    def session_ttl(self) -> datetime.timedelta:
        return datetime.timedelta(days=self.session_ttl_days)

    @classmethod
    def from_guild_config(cls, data: Dict[str, Any]) -> "RelaySettings":
        """Build settings from ``await config.guild(guild).all()``."""
        return cls(
            github_owner=data.get("github_owner") or "",
            github_repo=data.get("github_repo") or "",
            github_token=data.get("github_token"),
            issue_title=data.get("issue_title") or DEFAULT_GUILD_CONFIG["issue_title"],
            issue_labels=list(data.get("issue_labels") or []),
            relay_enabled=bool(data.get("relay_enabled", True)),
            initial_delay=max(0, int(data.get("initial_delay", DEFAULT_GUILD_CONFIG["initial_delay"]))),
            poll_interval=max(MIN_POLL_INTERVAL, int(data.get("poll_interval", DEFAULT_GUILD_CONFIG["poll_interval"]))),
            deadline_minutes=int(data.get("deadline_minutes", DEFAULT_GUILD_CONFIG["deadline_minutes"])),
            message_limit=min(DISCORD_MESSAGE_LIMIT, int(data.get("message_limit", DISCORD_MESSAGE_LIMIT))),
            indicator_emoji=data.get("indicator_emoji") or DEFAULT_GUILD_CONFIG["indicator_emoji"],
        )
