from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import discord

from .ranks import Rank

LOGGER = logging.getLogger(__name__)


class ChangeKind(enum.Enum):
    RANK_UP = "rank_up"
    RANK_DOWN = "rank_down"
    DIVISION_UP = "division_up"
    DIVISION_DOWN = "division_down"

    @property
    def is_promotion(self) -> bool:
        return self in (ChangeKind.RANK_UP, ChangeKind.DIVISION_UP)


@dataclass(frozen=True)
class Notification:
    kind: ChangeKind
    previous_label: str
    new_label: str


def classify(previous: Optional[Rank], current: Rank) -> Optional[Notification]:
    """Classify a rank transition; score-only movement is not a change."""
    if previous is None:
        return None
    if current.tier > previous.tier:
        kind = ChangeKind.RANK_UP
    elif current.tier < previous.tier:
        kind = ChangeKind.RANK_DOWN
    elif current.division != previous.division:
        if (current.division or 0) > (previous.division or 0):
            kind = ChangeKind.DIVISION_UP
        else:
            kind = ChangeKind.DIVISION_DOWN
    else:
        return None
    return Notification(kind=kind, previous_label=previous.label, new_label=current.label)


TITLES = {
    ChangeKind.RANK_UP: "Rank Up!",
    ChangeKind.DIVISION_UP: "Promoted!",
    ChangeKind.RANK_DOWN: "Rank Down",
    ChangeKind.DIVISION_DOWN: "Demoted",
}


def build_embed(notification: Notification, member: Any, riot_id: str) -> discord.Embed:
    if notification.kind.is_promotion:
        color = discord.Color.green()
    else:
        color = discord.Color.orange()
    embed = discord.Embed(
        title=TITLES[notification.kind],
        description=f"**{member.display_name}** had a rank change!",
        color=color,
    )
    embed.add_field(name="Valorant ID", value=riot_id, inline=True)
    embed.add_field(
        name="Change",
        value=f"{notification.previous_label} → {notification.new_label}",
        inline=True,
    )
    return embed


class NotificationDispatcher:
    """Delivers rank-change notifications to a channel, the member and followers."""

    def __init__(self, bot: Any, channel_id: Optional[int] = None):
        self.bot = bot
        self.channel_id = channel_id

    async def _resolve_user(self, user_id: int) -> Any:
        user = self.bot.get_user(user_id)
        if user is not None:
            return user
        try:
            return await self.bot.fetch_user(user_id)
        except discord.HTTPException as exc:
            LOGGER.info("Could not resolve follower %s: %s", user_id, exc)
            return None

    async def _notify_followers(
        self, embed: discord.Embed, member: Any, followers: Iterable[int]
    ) -> int:
        sent = 0
        for follower_id in followers:
            if follower_id == member.id:
                continue
            user = await self._resolve_user(follower_id)
            if user is None:
                continue
            try:
                await user.send(embed=embed)
            except discord.HTTPException as exc:
                LOGGER.info("Could not DM follower %s: %s", follower_id, exc)
                continue
            sent += 1
        return sent

    async def dispatch(
        self,
        notification: Notification,
        member: Any,
        riot_id: str,
        dm: bool = False,
        followers: Iterable[int] = (),
    ) -> bool:
        embed = build_embed(notification, member, riot_id)
        delivered = False
        if self.channel_id:
            channel = self.bot.get_channel(self.channel_id)
            if channel is None:
                LOGGER.warning("Notification channel %s not found", self.channel_id)
            else:
                try:
                    await channel.send(embed=embed)
                    delivered = True
                except discord.HTTPException as exc:
                    LOGGER.warning(
                        "Failed posting rank notification for %s: %s",
                        member.display_name,
                        exc,
                    )
        if dm:
            try:
                await member.send(embed=embed)
                delivered = True
            except discord.HTTPException as exc:
                LOGGER.info("Could not DM %s: %s", member.display_name, exc)
        if await self._notify_followers(embed, member, followers):
            delivered = True
        if delivered:
            LOGGER.info(
                "Sent notification: %s %s -> %s",
                member.display_name,
                notification.previous_label,
                notification.new_label,
            )
        return delivered
