"""
Persistence of thread links and live monitoring sessions in Red's Config.

Everything lives in the per-guild custom group ``sessions``:
``links`` maps ``"channel_id:thread_id"`` to a SessionLink dict and ``monitors``
maps ``str(issue_number)`` to the last MonitoringState handed to the scheduler.
"""
from __future__ import annotations

import datetime
import logging
from typing import Callable, Dict, List, Optional

from .models import MalformedState, MonitoringState, SessionLink, utc_now


log = logging.getLogger("red.issue_relay.store")

SESSION_GROUP = "sessions"
SESSION_TTL = datetime.timedelta(days=30)


class SessionStore:
    def __init__(self, config, *, clock: Callable[[], datetime.datetime] = utc_now) -> None:
        self.config = config
        self.clock = clock

    def _group(self, guild_id: int):
        return self.config.custom(SESSION_GROUP, guild_id)

    # ----------------------
    # Thread <-> issue links
    # ----------------------
    async def get_link(self, guild_id: int, channel_id: int, thread_id: int) -> Optional[SessionLink]:
        key = SessionLink.key_for(channel_id, thread_id)
        data = await self._group(guild_id).get_raw("links", key, default=None)
        if not data:
            return None
        try:
            link = SessionLink.from_dict(data)
        except (KeyError, TypeError, ValueError):
            log.warning("Dropping unreadable session link %s in guild %s", key, guild_id)
            await self._group(guild_id).clear_raw("links", key)
            return None
        if link.is_expired(self.clock()):
            log.debug("Session link %s in guild %s expired at %s", key, guild_id, link.expires_at)
            await self._group(guild_id).clear_raw("links", key)
            return None
        return link

    async def create_link(
        self,
        guild_id: int,
        channel_id: int,
        thread_id: int,
        issue_number: int,
        issue_url: str,
        issue_title: str = "",
        ttl: datetime.timedelta = SESSION_TTL,
    ) -> SessionLink:
        now = self.clock()
        link = SessionLink(
            channel_id=channel_id,
            thread_id=thread_id,
            issue_number=issue_number,
            issue_url=issue_url,
            issue_title=issue_title,
            created_at=now,
            expires_at=now + ttl,
        )
        await self._group(guild_id).set_raw("links", link.key, value=link.to_dict())
        log.debug("Stored session link %s -> #%s (guild=%s)", link.key, issue_number, guild_id)
        return link

    async def prune_expired(self, guild_id: int) -> int:
        links: Dict[str, dict] = await self._group(guild_id).get_raw("links", default={})
        now = self.clock()
        stale = []
        for key, data in links.items():
            try:
                if SessionLink.from_dict(data).is_expired(now):
                    stale.append(key)
            except (KeyError, TypeError, ValueError):
                stale.append(key)
        for key in stale:
            await self._group(guild_id).clear_raw("links", key)
        return len(stale)

    # ----------------------
    # Live monitoring sessions
    # ----------------------
    async def save_monitor(self, guild_id: int, state: MonitoringState) -> None:
        await self._group(guild_id).set_raw("monitors", str(state.issue_number), value=state.to_dict())

    async def drop_monitor(self, guild_id: int, issue_number: int) -> None:
        monitors = await self._group(guild_id).get_raw("monitors", default={})
        if str(issue_number) in monitors:
            await self._group(guild_id).clear_raw("monitors", str(issue_number))

    async def load_monitors(self, guild_id: int) -> List[MonitoringState]:
        monitors: Dict[str, dict] = await self._group(guild_id).get_raw("monitors", default={})
        states = []
        broken = []
        for key, data in monitors.items():
            try:
                states.append(MonitoringState.from_dict(data))
            except MalformedState:
                log.error("Discarding malformed monitoring state %s in guild %s", key, guild_id)
                broken.append(key)
        for key in broken:
            await self._group(guild_id).clear_raw("monitors", key)
        return states
