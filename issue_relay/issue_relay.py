from __future__ import annotations

from typing import List, Optional, Tuple

import asyncio
import contextlib
import logging

import discord
from redbot.core import commands, Config
from redbot.core.bot import Red
from discord.ext import tasks
from github import GithubException

from .common.config import (
    DEFAULT_GUILD_CONFIG,
    DEFAULT_SESSION_CONFIG,
    MIN_POLL_INTERVAL,
    RelaySettings,
)
from .formatting import (
    DEBUG_FLAG,
    clean_mention_text,
    format_debug,
    format_history_line,
    format_issue_body,
    format_reply_comment_body,
    tracker_error_hints,
)
from .models import Err, MessageRef, MonitoringState
from .progress import ProgressMonitor, Terminate
from .scheduler import PollScheduler
from .sinks import DiscordThreadSink
from .sources import GitHubCommentSource, GitHubIssueTracker, validate_token
from .store import SESSION_GROUP, SessionStore


SessionKey = Tuple[int, int]  # (guild_id, issue_number)


class IssueRelay(commands.Cog):
    """
    Turn bot mentions into GitHub issues and relay the issue's progress back to Discord.

    - Mentioning the bot creates a GitHub issue with the thread's history as context
    - Later messages in that thread are added to the issue as comments
    - New and edited issue comments are mirrored into the thread until the work is
      reported finished, or the monitoring deadline passes
    """

    def __init__(self, bot: Red) -> None:
        self.bot = bot
        self.config = Config.get_conf(self, identifier=908039527271104515, force_registration=True)
        self.log = logging.getLogger(f"red.{__name__}")

        self.config.register_guild(**DEFAULT_GUILD_CONFIG)

        # Thread links and live monitoring sessions
        self.config.init_custom(SESSION_GROUP, 1)
        self.config.register_custom(SESSION_GROUP, **DEFAULT_SESSION_CONFIG)

        self.store = SessionStore(self.config)
        self.scheduler = PollScheduler()
        self._resume_task: Optional[asyncio.Task] = None

    # ----------------------
    # Lifecycle
    # ----------------------
    async def cog_load(self) -> None:
        """Start background work when the cog loads."""
        if not self.prune_links_task.is_running():
            self.prune_links_task.start()
        self._resume_task = asyncio.create_task(self._resume_monitors())

    async def cog_unload(self) -> None:
        """Stop background work; saved sessions resume on the next load."""
        if self.prune_links_task.is_running():
            self.prune_links_task.cancel()
        if self._resume_task and not self._resume_task.done():
            self._resume_task.cancel()
        await self.scheduler.shutdown()
        self.log.debug("Issue relay stopped")

    async def _resume_monitors(self) -> None:
        await self.bot.wait_until_red_ready()
        for guild in self.bot.guilds:
            try:
                settings = await self._settings(guild)
                if not settings.is_configured:
                    continue
                states = await self.store.load_monitors(guild.id)
                for state in states:
                    await self._start_monitoring(guild, state, settings, delay=settings.initial_delay)
                if states:
                    self.log.info("Resumed %d monitoring sessions in guild %s", len(states), guild.id)
            except Exception:
                self.log.exception("Failed to resume monitoring sessions for guild %s", guild.id)

    @tasks.loop(hours=6)
    async def prune_links_task(self) -> None:
        """Forget thread links that outlived their expiry."""
        for guild in self.bot.guilds:
            try:
                removed = await self.store.prune_expired(guild.id)
                if removed:
                    self.log.debug("Pruned %d expired thread links in guild %s", removed, guild.id)
            except Exception:
                self.log.exception("Failed to prune thread links for guild %s", guild.id)

    @prune_links_task.before_loop
    async def before_prune_links_task(self) -> None:
        await self.bot.wait_until_red_ready()

    # ----------------------
    # Utilities
    # ----------------------
    async def _settings(self, guild: discord.Guild) -> RelaySettings:
        return RelaySettings.from_guild_config(await self.config.guild(guild).all())

    async def _start_monitoring(
        self, guild: discord.Guild, state: MonitoringState, settings: RelaySettings, *, delay: float
    ) -> bool:
        monitor = ProgressMonitor(
            GitHubCommentSource(settings),
            DiscordThreadSink(self.bot, settings.indicator_emoji),
            settings,
        )

        async def persist(next_state: MonitoringState) -> None:
            await self.store.save_monitor(guild.id, next_state)

        async def finish(last_state: MonitoringState, outcome: Terminate) -> None:
            await self.store.drop_monitor(guild.id, last_state.issue_number)

        key: SessionKey = (guild.id, state.issue_number)
        started = self.scheduler.start(
            key,
            state,
            monitor.step,
            delay=delay,
            interval=settings.poll_interval,
            on_continue=persist,
            on_terminate=finish,
        )
        if started:
            await self.store.save_monitor(guild.id, state)
        return started

    async def _resolve_thread(self, message: discord.Message, name: str) -> discord.Thread:
        if isinstance(message.channel, discord.Thread):
            return message.channel
        return await message.create_thread(name=(name or "Issue request")[:90], auto_archive_duration=1440)

    async def _fetch_thread_history(self, thread: discord.Thread, message: discord.Message) -> str:
        """Render the conversation leading to the mention, oldest first."""
        if thread.id != message.channel.id:
            # Fresh thread created from the mention itself
            return format_history_line(
                message.created_at, message.author.bot, message.author.display_name, message.clean_content
            )
        lines: List[str] = []
        try:
            async for msg in thread.history(limit=100, oldest_first=True):
                lines.append(format_history_line(msg.created_at, msg.author.bot, msg.author.display_name, msg.clean_content))
        except discord.HTTPException:
            self.log.exception("Failed to fetch thread history for %s", thread.id)
            return "Failed to fetch thread history"
        return "\n".join(lines) or "No thread history available"

    def _mentions_bot(self, message: discord.Message) -> bool:
        return self.bot.user is not None and self.bot.user.id in message.raw_mentions

    # ----------------------
    # Configuration Commands
    # ----------------------
    @commands.group(name="issuerelayset")
    @commands.guild_only()
    @commands.admin_or_permissions(manage_guild=True)
    async def issuerelayset(self, ctx: commands.Context) -> None:
        """Configure the issue relay."""

    @issuerelayset.command(name="token")
    async def issuerelayset_token(self, ctx: commands.Context, token: str) -> None:
        """Set the GitHub Personal Access Token (needs issue read/write)."""
        if len(token) < 40:
            await ctx.send("❌ Token looks invalid.")
            return
        try:
            self.log.debug("Validating GitHub token by fetching user login")
            login = await asyncio.to_thread(validate_token, token)
        except GithubException:
            await ctx.send("❌ Token validation failed.")
            self.log.warning("GitHub token validation failed")
            return
        except Exception:
            await ctx.send("❌ Error validating token.")
            self.log.exception("Error validating GitHub token")
            return
        await self.config.guild(ctx.guild).github_token.set(token)
        await ctx.send(f"✅ GitHub token set (authenticated as `{login}`).")
        with contextlib.suppress(discord.HTTPException):
            await ctx.message.delete()

    @issuerelayset.command(name="repo")
    async def issuerelayset_repo(self, ctx: commands.Context, owner: str, repo: str) -> None:
        """Set the GitHub repository as OWNER REPO (space separated)."""
        await self.config.guild(ctx.guild).github_owner.set(owner)
        await self.config.guild(ctx.guild).github_repo.set(repo)
        self.log.debug("Repo configured to %s/%s (guild=%s)", owner, repo, ctx.guild.id)
        await ctx.send(f"✅ Repository set to `{owner}/{repo}`.")

    @issuerelayset.command(name="title")
    async def issuerelayset_title(self, ctx: commands.Context, *, title: str) -> None:
        """Set the title used for issues created from mentions."""
        await self.config.guild(ctx.guild).issue_title.set(title[:256])
        await ctx.send(f"✅ New issues will be titled `{title[:256]}`.")

    @issuerelayset.command(name="labels")
    async def issuerelayset_labels(self, ctx: commands.Context, *labels: str) -> None:
        """Set the labels applied to new issues. Give none to clear them."""
        await self.config.guild(ctx.guild).issue_labels.set(list(labels))
        shown = ", ".join(f"`{label}`" for label in labels) or "none"
        await ctx.send(f"✅ Issue labels set to {shown}.")

    @issuerelayset.command(name="poll")
    async def issuerelayset_poll(self, ctx: commands.Context, interval: Optional[int] = None) -> None:
        """Show or set the seconds between progress checks."""
        if interval is None:
            current = await self.config.guild(ctx.guild).poll_interval()
            await ctx.send(f"Progress checks run every {current} seconds.")
            return
        if interval < MIN_POLL_INTERVAL:
            await ctx.send(f"❌ Minimum interval is {MIN_POLL_INTERVAL} seconds.")
            return
        await self.config.guild(ctx.guild).poll_interval.set(interval)
        await ctx.send(f"✅ Progress checks will run every {interval} seconds for new sessions.")

    @issuerelayset.command(name="deadline")
    async def issuerelayset_deadline(self, ctx: commands.Context, minutes: int) -> None:
        """Set how many minutes an issue is monitored before giving up."""
        if minutes < 1:
            await ctx.send("❌ The deadline must be at least one minute.")
            return
        await self.config.guild(ctx.guild).deadline_minutes.set(minutes)
        await ctx.send(f"✅ Monitoring now stops after {minutes} minutes.")

    @issuerelayset.command(name="toggle")
    async def issuerelayset_toggle(self, ctx: commands.Context, enabled: Optional[bool] = None) -> None:
        """Enable or disable creating issues from mentions."""
        if enabled is None:
            enabled = not await self.config.guild(ctx.guild).relay_enabled()
        await self.config.guild(ctx.guild).relay_enabled.set(enabled)
        status = "✅ Enabled" if enabled else "❌ Disabled"
        await ctx.send(f"Issue relay is now: {status}")

    @issuerelayset.command(name="show")
    async def issuerelayset_show(self, ctx: commands.Context) -> None:
        """Show current issue relay configuration."""
        settings = await self._settings(ctx.guild)
        embed = discord.Embed(
            title="Issue Relay Configuration",
            color=await ctx.embed_color(),
        )
        embed.add_field(name="Repository", value=f"`{settings.repository}`" if settings.github_repo else "Not set", inline=False)
        embed.add_field(name="Token", value="Set" if settings.github_token else "Not set")
        embed.add_field(name="Enabled", value="Yes" if settings.relay_enabled else "No")
        embed.add_field(name="Issue title", value=settings.issue_title, inline=False)
        embed.add_field(name="Labels", value=", ".join(settings.issue_labels) or "None", inline=False)
        embed.add_field(name="First check", value=f"{settings.initial_delay}s")
        embed.add_field(name="Poll interval", value=f"{settings.poll_interval}s")
        embed.add_field(name="Deadline", value=f"{settings.deadline_minutes} min")
        await ctx.send(embed=embed)

    # ----------------------
    # Session commands
    # ----------------------
    @commands.group(name="issuerelay")
    @commands.guild_only()
    async def issuerelay(self, ctx: commands.Context) -> None:
        """Inspect issue monitoring sessions."""

    @issuerelay.command(name="status")
    async def issuerelay_status(self, ctx: commands.Context) -> None:
        """List issues currently being monitored in this server."""
        sessions = [
            state for (guild_id, _), state in self.scheduler.active().items() if guild_id == ctx.guild.id
        ]
        if not sessions:
            await ctx.send("No issues are being monitored right now.")
            return
        settings = await self._settings(ctx.guild)
        embed = discord.Embed(title="Monitored Issues", color=await ctx.embed_color())
        for state in sorted(sessions, key=lambda s: s.issue_number)[:25]:
            embed.add_field(
                name=f"#{state.issue_number}",
                value=(
                    f"Thread: <#{state.thread_id}>\n"
                    f"Started: {discord.utils.format_dt(state.started_at, style='R')}\n"
                    f"Checks: {state.attempt_count} · Phase: {state.phase.value}"
                ),
                inline=False,
            )
        embed.set_footer(text=f"{settings.repository} · polling every {settings.poll_interval}s")
        await ctx.send(embed=embed)

    @issuerelay.command(name="stop")
    @commands.admin_or_permissions(manage_guild=True)
    async def issuerelay_stop(self, ctx: commands.Context, issue_number: int) -> None:
        """Stop monitoring an issue."""
        state = self.scheduler.stop((ctx.guild.id, issue_number))
        await self.store.drop_monitor(ctx.guild.id, issue_number)
        if state is None:
            await ctx.send(f"Issue #{issue_number} is not being monitored.")
            return
        settings = await self._settings(ctx.guild)
        if not state.is_final_pass:
            await DiscordThreadSink(self.bot, settings.indicator_emoji).clear_indicator(state.original_message_ref)
        self.log.info("Monitoring of issue #%s stopped by %s", issue_number, ctx.author.id)
        await ctx.send(f"✅ Stopped monitoring issue #{issue_number}.")

    # ----------------------
    # Discord -> GitHub: listeners
    # ----------------------
    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        """Create issues from mentions and forward thread replies as issue comments."""
        if message.author.bot or not message.guild:
            return
        if await self.bot.cog_disabled_in_guild(self, message.guild):
            return
        ctx = await self.bot.get_context(message)
        if ctx.valid:
            return

        if self._mentions_bot(message):
            await self._handle_mention(message)
        elif isinstance(message.channel, discord.Thread):
            await self._handle_reply(message)

    async def _handle_mention(self, message: discord.Message) -> None:
        guild = message.guild
        settings = await self._settings(guild)
        if not settings.relay_enabled:
            return
        if not settings.is_configured:
            await message.reply("GitHub is not configured for this server yet. An admin can use `issuerelayset`.")
            return

        is_debug = DEBUG_FLAG in message.content
        debug_info: List[str] = []
        if is_debug:
            debug_info.extend([
                "🔍 **DEBUG MODE ENABLED**",
                f"Channel: {message.channel.id}",
                f"Message: {message.id}",
            ])

        sink = DiscordThreadSink(self.bot, settings.indicator_emoji)
        origin = MessageRef(channel_id=message.channel.id, message_id=message.id)
        reply_to: discord.abc.Messageable = message.channel

        try:
            await sink.add_indicator(origin)
            cleaned = clean_mention_text(message.content)
            if is_debug:
                debug_info.append(f"Original message: \"{message.content}\"")
                debug_info.append(f"Cleaned message: \"{cleaned}\"")

            thread = await self._resolve_thread(message, cleaned)
            reply_to = thread
            parent_id = thread.parent_id or message.channel.id
            if is_debug:
                debug_info.append(f"Thread: {thread.id} (parent {parent_id})")

            # An issue already exists for this thread
            existing = await self.store.get_link(guild.id, parent_id, thread.id)
            if existing:
                if is_debug:
                    debug_info.append(f"Found existing session link: #{existing.issue_number}")
                response = "\n".join([
                    "ℹ️ An issue already exists for this thread!",
                    "",
                    f"**Issue #{existing.issue_number}**",
                    f"**Link:** [View on GitHub](<{existing.issue_url}>)",
                    f"**Created:** {discord.utils.format_dt(existing.created_at, style='f')}",
                ])
                await thread.send(format_debug(debug_info, response) if is_debug else response)
                await sink.clear_indicator(origin)
                return

            history = await self._fetch_thread_history(thread, message)
            if is_debug:
                debug_info.append(f"Thread history fetched: {len(history.splitlines())} lines")
                debug_info.append(f"Repository: {settings.repository}")
                debug_info.append(f"Title: \"{settings.issue_title}\"")
                debug_info.append(f"Labels: {', '.join(settings.issue_labels) or 'none'}")

            tracker = GitHubIssueTracker(settings)
            result = await tracker.create_issue(
                settings.issue_title, format_issue_body(history, cleaned), settings.issue_labels
            )
            if isinstance(result, Err):
                error = result.error
                await sink.clear_indicator(origin)
                if is_debug:
                    debug_info.append(f"❌ Failed to create issue: {error.message}")
                    debug_info.append(f"Status code: {error.status}")
                    debug_info.extend(tracker_error_hints(error.status, settings.repository))
                    await thread.send(format_debug(debug_info, f"Failed to create GitHub issue: {error}"))
                else:
                    await thread.send(f"Failed to create GitHub issue: {error.message}")
                return

            issue = result.value
            await self.store.create_link(
                guild.id, parent_id, thread.id, issue.number, issue.url, issue.title, ttl=settings.session_ttl
            )
            if is_debug:
                debug_info.append(f"✅ Issue #{issue.number} created: {issue.url}")
                debug_info.append(f"Session link TTL: {settings.session_ttl_days} days")

            response = "\n".join([
                "✅ GitHub issue created successfully!",
                "",
                f"**Issue #{issue.number}:** {issue.title}",
                f"**Link:** [View on GitHub](<{issue.url}>)",
                "",
                "The full thread context has been included in the issue description. "
                "Progress will be posted here.",
            ])
            await thread.send(format_debug(debug_info, response) if is_debug else response)

            state = MonitoringState.begin(issue.number, thread.id, origin)
            await self._start_monitoring(guild, state, settings, delay=settings.initial_delay)

        except Exception as e:
            self.log.exception("Error processing mention %s", message.id)
            await sink.clear_indicator(origin)
            error_message = f"Error: {e}"
            if is_debug:
                error_message = format_debug(debug_info, error_message)
            with contextlib.suppress(discord.HTTPException):
                await reply_to.send(error_message[:2000])

    async def _handle_reply(self, message: discord.Message) -> None:
        thread = message.channel
        guild = message.guild
        try:
            link = await self.store.get_link(guild.id, thread.parent_id, thread.id)
            if not link:
                return
            settings = await self._settings(guild)
            if not settings.is_configured:
                return
        except Exception:
            self.log.exception("Failed to look up session link for thread %s", thread.id)
            return

        sink = DiscordThreadSink(self.bot, settings.indicator_emoji)
        origin = MessageRef(channel_id=thread.id, message_id=message.id)
        is_debug = DEBUG_FLAG in message.content

        try:
            await sink.add_indicator(origin)
            body = format_reply_comment_body(
                clean_mention_text(message.content),
                message.author.display_name,
                message.jump_url,
                message.created_at,
            )
            result = await GitHubIssueTracker(settings).create_comment(link.issue_number, body)
            await sink.clear_indicator(origin)
            if isinstance(result, Err):
                error = result.error
                if is_debug:
                    lines = [f"❌ Failed to create comment: {error.message}", f"Status code: {error.status}"]
                    lines.extend(tracker_error_hints(error.status, settings.repository))
                    await thread.send(format_debug(lines, f"Failed to add comment: {error}"))
                else:
                    await thread.send(f"Failed to add comment to issue #{link.issue_number}: {error.message}")
                return

            self.log.debug("Forwarded message %s as comment %s on #%s", message.id, result.value, link.issue_number)
            await thread.send("\n".join([
                f"💬 Comment added to GitHub issue #{link.issue_number}",
                "",
                f"**View issue:** [#{link.issue_number}](<{link.issue_url}>)",
            ]))
        except Exception as e:
            self.log.exception("Error processing reply %s", message.id)
            await sink.clear_indicator(origin)
            with contextlib.suppress(discord.HTTPException):
                await thread.send(f"Error: {e}"[:2000])
