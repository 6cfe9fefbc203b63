from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol

import discord

from .ranks import ALL_ROLE_NAMES, RankTier, is_rank_role_name, role_name, tier_from_role_name

LOGGER = logging.getLogger(__name__)

MAX_ROLES_ERROR_CODE = 30005
DEFAULT_MUTATION_DELAY = 0.1


class SupportsRole(Protocol):
    id: int
    name: str
    hoist: bool
    mentionable: bool

    async def edit(self, **kwargs: Any) -> Any: ...

    async def delete(self, **kwargs: Any) -> Any: ...


class SupportsGuild(Protocol):
    id: int
    roles: Iterable[Any]

    async def create_role(self, **kwargs: Any) -> Any: ...

    async def fetch_roles(self) -> Iterable[Any]: ...


class SupportsMember(Protocol):
    id: int
    roles: Iterable[Any]
    display_name: str

    async def add_roles(self, *roles: Any, **kwargs: Any) -> Any: ...

    async def remove_roles(self, *roles: Any, **kwargs: Any) -> Any: ...


class RoleError(Exception):
    pass


class RolePermissionError(RoleError):
    pass


class RoleLimitReachedError(RoleError):
    pass


@dataclass
class ReconcileResult:
    role: Any
    added: Any | None = None
    removed: List[Any] = field(default_factory=list)
    created: bool = False

    @property
    def changed(self) -> bool:
        return self.added is not None or bool(self.removed)


@dataclass
class RoleInitSummary:
    created: int = 0
    existing: int = 0
    errors: int = 0


def find_role(roles: Iterable[Any], name: str) -> Any | None:
    for role in roles:
        if role.name == name:
            return role
    return None


def rank_roles_of(member: SupportsMember) -> List[Any]:
    return [role for role in member.roles if is_rank_role_name(role.name)]


def _creation_error(name: str, exc: discord.HTTPException) -> Optional[RoleError]:
    if isinstance(exc, discord.Forbidden):
        return RolePermissionError(f"Missing permission to create role {name}: {exc}")
    if getattr(exc, "code", None) == MAX_ROLES_ERROR_CODE:
        return RoleLimitReachedError(f"Role limit reached creating {name}: {exc}")
    return None


class RoleReconciler:
    """Keeps each member on exactly one rank role matching their rank."""

    def __init__(self, mutation_delay: float = DEFAULT_MUTATION_DELAY, sleep=asyncio.sleep):
        self.mutation_delay = mutation_delay
        self._sleep = sleep

    async def _pause(self):
        if self.mutation_delay > 0:
            await self._sleep(self.mutation_delay)

    async def _normalize_settings(self, role: Any):
        if getattr(role, "hoist", True) and not getattr(role, "mentionable", False):
            return
        try:
            await role.edit(hoist=True, mentionable=False, reason="Update rank role settings")
            await self._pause()
        except discord.HTTPException as exc:
            LOGGER.warning("Failed to update settings of role %s: %s", role.name, exc)

    async def ensure_role(
        self, guild: SupportsGuild, tier: RankTier, division: Optional[int]
    ) -> tuple[Any, bool]:
        """Return ``(role, created)`` for the rank role, creating it if missing."""
        name = role_name(tier, division)
        role = find_role(guild.roles, name)
        if role is not None:
            await self._normalize_settings(role)
            return role, False
        try:
            role = await guild.create_role(
                name=name,
                colour=discord.Colour(tier.color),
                hoist=True,
                mentionable=False,
                reason=f"Rank role for {tier.display_name}",
            )
        except discord.HTTPException as exc:
            error = _creation_error(name, exc)
            if error is not None:
                raise error from exc
            # Another reconciliation may have created it first.
            role = find_role(await guild.fetch_roles(), name)
            if role is None:
                raise RoleError(f"Failed to create role {name}: {exc}") from exc
            LOGGER.info("Role %s already existed in guild %s", name, guild.id)
            return role, False
        LOGGER.info("Created role %s (%s) in guild %s", name, role.id, guild.id)
        await self._pause()
        return role, True

    async def reconcile(
        self,
        guild: SupportsGuild,
        member: SupportsMember,
        tier: RankTier,
        division: Optional[int],
    ) -> ReconcileResult:
        """Leave ``member`` holding exactly the rank role for ``tier``/``division``.

        The target is assigned before stale rank roles are removed, so a
        failed assignment leaves the member's previous rank role in place.
        """
        target, created = await self.ensure_role(guild, tier, division)
        result = ReconcileResult(role=target, created=created)

        if all(role.id != target.id for role in member.roles):
            try:
                await member.add_roles(target, reason=f"Rank sync: {target.name}")
            except discord.Forbidden as exc:
                raise RolePermissionError(
                    f"Missing permission to assign role {target.name}: {exc}"
                ) from exc
            except discord.HTTPException as exc:
                raise RoleError(f"Failed to assign role {target.name}: {exc}") from exc
            result.added = target
            LOGGER.info("Assigned role %s to %s", target.name, member.display_name)
            await self._pause()

        for role in rank_roles_of(member):
            if role.id == target.id:
                continue
            try:
                await member.remove_roles(role, reason="Rank update")
            except discord.HTTPException as exc:
                LOGGER.warning(
                    "Failed to remove role %s from %s: %s",
                    role.name,
                    member.display_name,
                    exc,
                )
                continue
            result.removed.append(role)
            LOGGER.info("Removed role %s from %s", role.name, member.display_name)
            await self._pause()
        return result

    async def strip_rank_roles(self, member: SupportsMember) -> List[Any]:
        removed = []
        for role in rank_roles_of(member):
            try:
                await member.remove_roles(role, reason="Account unregistered")
            except discord.HTTPException as exc:
                LOGGER.warning(
                    "Failed to remove role %s from %s: %s",
                    role.name,
                    member.display_name,
                    exc,
                )
                continue
            removed.append(role)
            await self._pause()
        return removed

    async def initialize_rank_roles(self, guild: SupportsGuild) -> RoleInitSummary:
        summary = RoleInitSummary()
        for name in ALL_ROLE_NAMES:
            tier = tier_from_role_name(name)
            division = int(name[-1]) if tier and tier.has_divisions else None
            try:
                _role, created = await self.ensure_role(guild, tier, division)
            except RoleError as exc:
                LOGGER.warning("Could not initialize role %s: %s", name, exc)
                summary.errors += 1
                continue
            if created:
                summary.created += 1
            else:
                summary.existing += 1
        LOGGER.info(
            "Rank role initialization for guild %s: created=%s existing=%s errors=%s",
            guild.id,
            summary.created,
            summary.existing,
            summary.errors,
        )
        return summary

    async def delete_rank_roles(self, guild: SupportsGuild) -> tuple[int, int]:
        deleted = 0
        failed = 0
        for role in [r for r in guild.roles if is_rank_role_name(r.name)]:
            try:
                await role.delete(reason="Rank roles removed by admin")
            except discord.HTTPException as exc:
                LOGGER.warning("Failed to delete role %s: %s", role.name, exc)
                failed += 1
                continue
            deleted += 1
            await self._pause()
        LOGGER.info(
            "Deleted %s rank roles in guild %s (failures: %s)", deleted, guild.id, failed
        )
        return deleted, failed
