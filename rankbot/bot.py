from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Optional

import discord
from discord import app_commands
from discord.ext import commands

from .config import BotConfig, load_config
from .models import PLATFORMS, REGIONS, AccountRecord, AccountStore, PersistenceFailure
from .notifications import NotificationDispatcher
from .ranks import ParseFailure
from .roles import RoleReconciler
from .sync import AccountOutcome, MemberNotFoundError, RankSynchronizer, SyncSummary
from .valorant import RetryPolicy, ValorantAPIError, ValorantClient

# Default to INFO until the configured level is applied at startup
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
LOGGER = logging.getLogger(__name__)

IDLE_ACTIVITY = "Valorant"
UPDATING_ACTIVITY = "Updating ranks..."
MAX_MESSAGE_LENGTH = 1900


def user_label(member: Any) -> str:
    name = getattr(member, "display_name", None)
    return f"{name} ({member.id})" if name else str(member.id)


def _member_is_admin(member: Any) -> bool:
    perms = getattr(member, "guild_permissions", None)
    return bool(perms and (perms.administrator or perms.manage_guild))


class RankBot(commands.Bot):
    def __init__(
        self,
        config: BotConfig,
        store: AccountStore | None = None,
        client: ValorantClient | None = None,
    ):
        intents = discord.Intents.default()
        intents.members = True
        intents.guilds = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config
        self.store = store or AccountStore(config.database_path)
        self.client = client or ValorantClient(
            base_url=config.api_base_url,
            timeout=config.request_timeout,
            retry_policy=RetryPolicy(
                max_retries=config.max_retries, base_delay=config.backoff_base
            ),
        )
        self.reconciler = RoleReconciler()
        self.dispatcher = NotificationDispatcher(self, config.notification_channel_id)
        self.synchronizer = RankSynchronizer(
            self.store, self.client, self.reconciler, self.dispatcher
        )
        self.scheduler_task: asyncio.Task[None] | None = None
        self.last_summary: SyncSummary | None = None

    @property
    def managed_guild(self) -> Optional[discord.Guild]:
        return self.get_guild(self.config.guild_id)

    async def setup_hook(self) -> None:
        await self.tree.sync()
        if self.scheduler_task is None:
            self.scheduler_task = self.loop.create_task(self._scheduler_loop())

    async def close(self) -> None:
        if self.scheduler_task:
            self.scheduler_task.cancel()
            try:
                await self.scheduler_task
            except asyncio.CancelledError:
                pass
        await super().close()
        await self.client.close()
        self.store.close()

    async def on_ready(self):
        LOGGER.info("Bot ready as %s", self.user)
        guild = self.managed_guild
        if guild is None:
            LOGGER.warning("Configured guild %s not available", self.config.guild_id)
            return
        try:
            await self.tree.sync(guild=guild)
        except discord.HTTPException as exc:
            LOGGER.warning("Failed to sync commands for guild %s: %s", guild.id, exc)
        await self._set_activity(IDLE_ACTIVITY)

    async def _set_activity(self, name: str):
        try:
            await self.change_presence(activity=discord.Game(name=name))
        except Exception as exc:
            LOGGER.debug("Failed to update presence: %s", exc)

    async def _scheduler_loop(self):
        await self.wait_until_ready()
        interval = self.config.sync_interval_seconds
        # First pass shortly after startup, then on a fixed interval.
        await asyncio.sleep(5)
        while not self.is_closed():
            try:
                await self.run_sync()
            except Exception as exc:
                LOGGER.exception("Scheduled rank sync failed: %s", exc)
            await asyncio.sleep(interval)

    async def run_sync(self) -> str:
        guild = self.managed_guild
        if guild is None:
            return "Guild unavailable"
        if self.synchronizer.running:
            return "Sync already running"
        await self._set_activity(UPDATING_ACTIVITY)
        try:
            summary = await self.synchronizer.run_pass(guild)
        finally:
            await self._set_activity(IDLE_ACTIVITY)
        if summary is None:
            return "Sync already running"
        self.last_summary = summary
        return summary.describe()


def _member_from_interaction(
    interaction: discord.Interaction,
) -> Optional[discord.Member]:
    member = interaction.user
    if not isinstance(member, discord.Member):
        return None
    return member


def _truncate(text: str) -> str:
    if len(text) <= MAX_MESSAGE_LENGTH:
        return text
    return text[: MAX_MESSAGE_LENGTH - 3] + "..."


# Command registrations
async def setup_commands(bot: RankBot):
    tree = bot.tree
    region_choices = [app_commands.Choice(name=r.upper(), value=r) for r in REGIONS]
    platform_choices = [app_commands.Choice(name=p, value=p) for p in PLATFORMS]

    async def resolve_guild(interaction: discord.Interaction) -> Optional[discord.Guild]:
        guild = interaction.guild
        if guild is None or guild.id != bot.config.guild_id:
            await interaction.response.send_message(
                "Commands must be used inside the configured server.", ephemeral=True
            )
            return None
        return guild

    async def require_admin(interaction: discord.Interaction) -> Optional[discord.Guild]:
        guild = await resolve_guild(interaction)
        if not guild:
            return None
        member = _member_from_interaction(interaction)
        if not member or not _member_is_admin(member):
            await interaction.response.send_message(
                "You do not have permission to use this command.", ephemeral=True
            )
            return None
        return guild

    @tree.error
    async def on_app_command_error(
        interaction: discord.Interaction, error: app_commands.AppCommandError
    ):
        if isinstance(error, app_commands.CheckFailure):
            if not interaction.response.is_done():
                await interaction.response.send_message(
                    "You do not have permission to use this command.",
                    ephemeral=True,
                )
            return
        LOGGER.exception("App command error: %s", error)
        message = f"Command failed: {error}"
        try:
            if interaction.response.is_done():
                await interaction.followup.send(message, ephemeral=True)
            else:
                await interaction.response.send_message(message, ephemeral=True)
        except discord.HTTPException as exc:
            LOGGER.warning("Failed sending error response for command: %s", exc)

    async def validate_registration(
        interaction: discord.Interaction,
        username: str,
        tag: str,
        region: str,
        platform: str,
    ) -> Optional[tuple[str, str, str]]:
        username = username.strip()
        tag = tag.strip().lstrip("#")
        region = region.lower()
        if not username or not tag:
            await interaction.response.send_message(
                "Username and tag are required.", ephemeral=True
            )
            return None
        if region not in REGIONS or platform not in PLATFORMS:
            await interaction.response.send_message(
                f"Region must be one of {', '.join(REGIONS)} and platform one of "
                f"{', '.join(PLATFORMS)}.",
                ephemeral=True,
            )
            return None
        return username, tag, region

    def describe_registration(record: AccountRecord, outcome) -> str:
        lines = [
            f"Registered `{record.riot_id}` ({record.region.upper()}, {record.platform})."
        ]
        if outcome is not None and not outcome.skipped:
            lines.append(f"Current rank: `{outcome.rank.label}` (roles refreshed)")
        else:
            lines.append("Could not fetch the rank right now; it will update on the next sync.")
        return "\n".join(lines)

    async def lookup_record(
        interaction: discord.Interaction, member: Optional[discord.Member]
    ) -> Optional[AccountRecord]:
        target_id = member.id if member else interaction.user.id
        record = bot.store.get_one(target_id)
        if record is None:
            message = (
                f"{member.display_name} is not registered."
                if member
                else "Not registered. Use /register first."
            )
            await interaction.response.send_message(message, ephemeral=True)
        return record

    @tree.command(name="register", description="Register your Valorant account")
    @app_commands.describe(
        username="Riot ID name", tag="Riot ID tag (without #)", region="Account region"
    )
    @app_commands.choices(region=region_choices, platform=platform_choices)
    async def register(
        interaction: discord.Interaction,
        username: str,
        tag: str,
        region: str,
        platform: str = "pc",
    ):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        fields = await validate_registration(interaction, username, tag, region, platform)
        if not fields:
            return
        username, tag, region = fields
        LOGGER.info(
            "Register request user=%s riot_id=%s#%s region=%s platform=%s",
            user_label(interaction.user),
            username,
            tag,
            region,
            platform,
        )
        await interaction.response.defer(ephemeral=True, thinking=True)
        record, outcome = await register_account(
            bot, guild, interaction.user.id, username, tag, region, platform
        )
        await interaction.followup.send(
            describe_registration(record, outcome), ephemeral=True
        )

    @app_commands.default_permissions(administrator=True)
    @tree.command(
        name="adminregister", description="Register a Valorant account for another member"
    )
    @app_commands.describe(
        member="Member to register",
        username="Riot ID name",
        tag="Riot ID tag (without #)",
        region="Account region",
    )
    @app_commands.choices(region=region_choices, platform=platform_choices)
    async def adminregister(
        interaction: discord.Interaction,
        member: discord.Member,
        username: str,
        tag: str,
        region: str,
        platform: str = "pc",
    ):
        guild = await require_admin(interaction)
        if not guild:
            return
        fields = await validate_registration(interaction, username, tag, region, platform)
        if not fields:
            return
        username, tag, region = fields
        LOGGER.info(
            "Admin register actor=%s member=%s riot_id=%s#%s region=%s platform=%s",
            user_label(interaction.user),
            user_label(member),
            username,
            tag,
            region,
            platform,
        )
        await interaction.response.defer(ephemeral=True, thinking=True)
        record, outcome = await register_account(
            bot, guild, member.id, username, tag, region, platform
        )
        await interaction.followup.send(
            f"{member.display_name}: {describe_registration(record, outcome)}",
            ephemeral=True,
        )

    @tree.command(name="unregister", description="Remove your registered Valorant account")
    async def unregister(interaction: discord.Interaction):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        record = bot.store.get_one(interaction.user.id)
        if record is None:
            await interaction.response.send_message(
                "No registered account found.", ephemeral=True
            )
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        removed_count = await unregister_member(bot, guild, interaction.user.id)
        LOGGER.info(
            "Unregistered %s (%s); removed %s rank roles",
            user_label(interaction.user),
            record.riot_id,
            removed_count,
        )
        await interaction.followup.send(
            f"Removed registration for `{record.riot_id}`.", ephemeral=True
        )

    @tree.command(name="rank", description="Show a registered account and its last synced rank")
    @app_commands.describe(member="Member to look up (defaults to you)")
    async def rank(
        interaction: discord.Interaction, member: Optional[discord.Member] = None
    ):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        record = await lookup_record(interaction, member)
        if record is None:
            return
        await interaction.response.send_message(format_rank(record), ephemeral=True)

    @tree.command(name="notify", description="Toggle rank change DMs")
    @app_commands.describe(enabled="Send rank change notifications by DM")
    async def notify(interaction: discord.Interaction, enabled: bool):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        if not bot.store.set_notify_dm(interaction.user.id, enabled):
            await interaction.response.send_message(
                "Not registered. Use /register first.", ephemeral=True
            )
            return
        state = "enabled" if enabled else "disabled"
        await interaction.response.send_message(
            f"Rank change DMs {state}.", ephemeral=True
        )

    @tree.command(name="matchhistory", description="Show recent matches")
    @app_commands.describe(
        member="Member to look up (defaults to you)",
        timezone="IANA timezone for match times",
    )
    async def matchhistory(
        interaction: discord.Interaction,
        member: Optional[discord.Member] = None,
        timezone: Optional[str] = None,
    ):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        record = await lookup_record(interaction, member)
        if record is None:
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            history = await bot.client.fetch_match_history(
                record.username,
                record.tag,
                record.region,
                record.platform,
                timezone or bot.config.timezone,
            )
        except ValorantAPIError as exc:
            LOGGER.warning("Match history fetch failed for %s: %s", record.riot_id, exc)
            await interaction.followup.send(
                "Could not fetch match history right now.", ephemeral=True
            )
            return
        await interaction.followup.send(
            _truncate(str(history or "")) or "No matches found.", ephemeral=True
        )

    @tree.command(name="follow_add", description="Get DMs when a member's rank changes")
    @app_commands.describe(member="Registered member to follow")
    async def follow_add(interaction: discord.Interaction, member: discord.Member):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        if member.id == interaction.user.id:
            await interaction.response.send_message(
                "Use /notify for your own rank changes.", ephemeral=True
            )
            return
        target = bot.store.get_one(member.id)
        if target is None:
            await interaction.response.send_message(
                f"{member.display_name} is not registered.", ephemeral=True
            )
            return
        if bot.store.follow(interaction.user.id, member.id):
            message = f"Now following {member.display_name} (`{target.riot_id}`)."
        else:
            message = f"Already following {member.display_name}."
        await interaction.response.send_message(message, ephemeral=True)

    @tree.command(name="follow_remove", description="Stop following a member")
    @app_commands.describe(member="Member to stop following")
    async def follow_remove(interaction: discord.Interaction, member: discord.Member):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        if bot.store.unfollow(interaction.user.id, member.id):
            message = f"Stopped following {member.display_name}."
        else:
            message = f"You were not following {member.display_name}."
        await interaction.response.send_message(message, ephemeral=True)

    @tree.command(name="follow_list", description="List members you follow")
    async def follow_list(interaction: discord.Interaction):
        guild = await resolve_guild(interaction)
        if not guild:
            return
        lines = []
        for target_id in bot.store.following(interaction.user.id):
            record = bot.store.get_one(target_id)
            if record is None:
                continue
            member = guild.get_member(target_id)
            name = member.display_name if member else str(target_id)
            lines.append(f"{name}: `{record.riot_id}`")
        if not lines:
            await interaction.response.send_message(
                "You are not following anyone.", ephemeral=True
            )
            return
        await interaction.response.send_message(
            _truncate("\n".join(lines)), ephemeral=True
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="sync", description="Sync registered ranks now")
    @app_commands.describe(member="Only sync this member")
    async def sync(
        interaction: discord.Interaction, member: Optional[discord.Member] = None
    ):
        guild = await require_admin(interaction)
        if not guild:
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        if member is None:
            summary = await bot.run_sync()
            await interaction.followup.send(summary, ephemeral=True)
            return

        record = bot.store.get_one(member.id)
        if record is None:
            await interaction.followup.send(
                f"{member.display_name} is not registered.", ephemeral=True
            )
            return
        try:
            outcome = await bot.synchronizer.sync_one(guild, record)
        except (ValorantAPIError, ParseFailure, MemberNotFoundError, PersistenceFailure) as exc:
            LOGGER.warning("Manual sync failed for %s: %s", record.riot_id, exc)
            await interaction.followup.send(
                f"Sync failed for `{record.riot_id}`: {exc}", ephemeral=True
            )
            return
        if outcome is None:
            message = "Sync already running"
        elif outcome.skipped:
            message = f"`{record.riot_id}` changed during the sync; nothing was written."
        else:
            message = f"`{record.riot_id}` is now `{outcome.rank.label}`."
        await interaction.followup.send(message, ephemeral=True)

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="setup_roles", description="Create all rank roles")
    async def setup_roles(interaction: discord.Interaction):
        guild = await require_admin(interaction)
        if not guild:
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await bot.reconciler.initialize_rank_roles(guild)
        await interaction.followup.send(
            f"Created {result.created} roles, {result.existing} already existed, "
            f"{result.errors} errors.",
            ephemeral=True,
        )

    @app_commands.default_permissions(manage_guild=True)
    @tree.command(name="delete_rank_roles", description="Delete every rank role")
    @app_commands.describe(confirm="Set to true to confirm deletion")
    async def delete_rank_roles(interaction: discord.Interaction, confirm: bool = False):
        guild = await require_admin(interaction)
        if not guild:
            return
        if not confirm:
            await interaction.response.send_message(
                "This deletes all rank roles. Re-run with confirm=true to proceed.",
                ephemeral=True,
            )
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        deleted, failed = await bot.reconciler.delete_rank_roles(guild)
        await interaction.followup.send(
            f"Deleted {deleted} rank roles, failures: {failed}.", ephemeral=True
        )


async def register_account(
    bot: RankBot,
    guild: Any,
    member_id: int,
    username: str,
    tag: str,
    region: str,
    platform: str = "pc",
) -> tuple[AccountRecord, Optional[AccountOutcome]]:
    """Store a registration and try an immediate sync for it.

    Re-registering the same Riot ID keeps rank history; a different Riot ID
    starts over but keeps the DM preference.
    """
    record = AccountRecord(
        member_id=member_id,
        username=username,
        tag=tag,
        region=region,
        platform=platform,
    )
    existing = bot.store.get_one(member_id)
    if existing is not None:
        if (
            existing.username.casefold() == username.casefold()
            and existing.tag.casefold() == tag.casefold()
        ):
            record = replace(
                existing, username=username, tag=tag, region=region, platform=platform
            )
        else:
            record = replace(record, notify_dm=existing.notify_dm)
    record = bot.store.upsert(record)

    try:
        outcome = await bot.synchronizer.sync_one(guild, record)
    except (ValorantAPIError, ParseFailure, MemberNotFoundError, PersistenceFailure) as exc:
        LOGGER.warning("Immediate sync after register failed for %s: %s", record.riot_id, exc)
        outcome = None
    return record, outcome


def format_rank(record: AccountRecord) -> str:
    lines = [f"`{record.riot_id}` ({record.region.upper()}, {record.platform})"]
    if record.rank is None:
        lines.append("Not synced yet.")
        return "\n".join(lines)
    current = f"Rank: **{record.rank.label}**"
    if record.rank.score is not None:
        current += f" ({record.rank.score} RR)"
    lines.append(current)
    if record.previous_rank is not None:
        lines.append(f"Previous: {record.previous_rank.label}")
    if record.last_updated:
        lines.append(f"Last updated: {record.last_updated:%Y-%m-%d %H:%M} UTC")
    return "\n".join(lines)


async def unregister_member(bot: RankBot, guild: Any, member_id: int) -> int:
    """Delete the member's account record and strip their rank roles."""
    bot.store.delete(member_id)
    member = guild.get_member(member_id)
    if member is None:
        return 0
    removed = await bot.reconciler.strip_rank_roles(member)
    return len(removed)


async def main():
    bot_config = load_config()
    logging.getLogger().setLevel(bot_config.log_level)
    LOGGER.setLevel(bot_config.log_level)
    bot = RankBot(bot_config)
    await setup_commands(bot)
    async with bot:
        await bot.start(bot_config.token)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
