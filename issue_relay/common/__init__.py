"""
Common configuration for the IssueRelay cog.
"""

from .config import (
    DEFAULT_GUILD_CONFIG,
    DEFAULT_SESSION_CONFIG,
    MIN_POLL_INTERVAL,
    RelaySettings,
)

__all__ = [
    "DEFAULT_GUILD_CONFIG",
    "DEFAULT_SESSION_CONFIG",
    "MIN_POLL_INTERVAL",
    "RelaySettings",
]
