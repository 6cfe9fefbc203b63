from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, Tuple

import discord

from .models import AccountRecord, AccountStore, PersistenceFailure, utcnow_naive
from .notifications import Notification, NotificationDispatcher, classify
from .ranks import ParseFailure, Rank, require_rank
from .roles import ReconcileResult, RoleError, RoleReconciler
from .valorant import ValorantAPIError

LOGGER = logging.getLogger(__name__)

DEFAULT_ACCOUNT_DELAY = 1.0


class RankFetcher(Protocol):
    async def fetch_rank(
        self, username: str, tag: str, region: str, platform: str = "pc"
    ) -> Any: ...


class MemberNotFoundError(LookupError):
    pass


@dataclass
class SyncSummary:
    processed: int = 0
    updated: int = 0
    errored: int = 0
    notified: int = 0
    skipped: int = 0
    errors: List[Tuple[int, str]] = field(default_factory=list)

    def describe(self) -> str:
        text = (
            f"Processed {self.processed} accounts, updated: {self.updated}, "
            f"errors: {self.errored}, notifications: {self.notified}"
        )
        if self.skipped:
            text += f", skipped: {self.skipped}"
        return text


@dataclass
class AccountOutcome:
    record: AccountRecord
    rank: Rank
    notification: Optional[Notification] = None
    roles: Optional[ReconcileResult] = None
    updated: bool = False
    notified: bool = False
    # Record was removed or pointed at another account before the result landed.
    skipped: bool = False


class RankSynchronizer:
    """Runs sync passes: fetch, parse, classify, reconcile roles, persist."""

    def __init__(
        self,
        store: AccountStore,
        client: RankFetcher,
        reconciler: RoleReconciler,
        dispatcher: Optional[NotificationDispatcher] = None,
        account_delay: float = DEFAULT_ACCOUNT_DELAY,
        sleep=asyncio.sleep,
        clock: Callable[[], datetime] = utcnow_naive,
        backup_after_pass: bool = True,
    ):
        self.store = store
        self.client = client
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.account_delay = account_delay
        self._sleep = sleep
        self._clock = clock
        self.backup_after_pass = backup_after_pass
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_pass(self, guild: Any) -> Optional[SyncSummary]:
        """Sync every registered account once. Returns ``None`` if a pass is running."""
        if self._lock.locked():
            LOGGER.info("Rank sync already running; skipping this pass")
            return None
        async with self._lock:
            summary = SyncSummary()
            accounts = self.store.get_all()
            LOGGER.info("Rank sync started for %s accounts", len(accounts))
            for index, record in enumerate(accounts):
                if index and self.account_delay > 0:
                    await self._sleep(self.account_delay)
                try:
                    outcome = await self._sync_account(guild, record)
                except (
                    MemberNotFoundError,
                    ValorantAPIError,
                    ParseFailure,
                    PersistenceFailure,
                ) as exc:
                    summary.errored += 1
                    summary.errors.append((record.member_id, str(exc)))
                    LOGGER.warning("Failed syncing %s: %s", record.riot_id, exc)
                    continue
                except Exception as exc:
                    summary.errored += 1
                    summary.errors.append((record.member_id, str(exc)))
                    LOGGER.exception(
                        "Unexpected error syncing %s: %s", record.riot_id, exc
                    )
                    continue
                if outcome.skipped:
                    summary.skipped += 1
                    continue
                summary.processed += 1
                if outcome.updated:
                    summary.updated += 1
                if outcome.notified:
                    summary.notified += 1

            LOGGER.info("Guild %s rank sync: %s", getattr(guild, "id", "?"), summary.describe())
            if self.backup_after_pass and accounts:
                try:
                    self.store.backup()
                except (OSError, sqlite3.Error) as exc:
                    LOGGER.warning("Account store backup failed: %s", exc)
            return summary

    async def sync_one(self, guild: Any, record: AccountRecord) -> Optional[AccountOutcome]:
        """Sync a single account now, unless a full pass is in progress."""
        if self._lock.locked():
            return None
        async with self._lock:
            return await self._sync_account(guild, record)

    async def _resolve_member(self, guild: Any, member_id: int) -> Any:
        member = guild.get_member(member_id)
        if member is None:
            try:
                member = await guild.fetch_member(member_id)
            except discord.HTTPException:
                member = None
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found in guild {guild.id}")
        return member

    def _current_record(self, record: AccountRecord) -> Optional[AccountRecord]:
        """Re-read ``record``; None if it was deleted or re-pointed meanwhile."""
        current = self.store.get_one(record.member_id)
        if current is None or not current.same_account(record):
            LOGGER.info(
                "Account for member %s changed during sync; dropping result for %s",
                record.member_id,
                record.riot_id,
            )
            return None
        return current

    async def _sync_account(self, guild: Any, record: AccountRecord) -> AccountOutcome:
        member = await self._resolve_member(guild, record.member_id)

        raw = await self.client.fetch_rank(
            record.username, record.tag, record.region, record.platform
        )
        rank = require_rank(raw)

        # Commands may have changed the record while the fetch was in flight.
        current = self._current_record(record)
        if current is None:
            return AccountOutcome(record=record, rank=rank, skipped=True)
        notification = classify(current.rank, rank)

        roles: Optional[ReconcileResult] = None
        try:
            roles = await self.reconciler.reconcile(guild, member, rank.tier, rank.division)
        except (RoleError, discord.HTTPException) as exc:
            LOGGER.warning(
                "Role update failed for %s (%s): %s", member.display_name, rank.label, exc
            )

        moved = current.rank is None or not current.rank.same_position(rank)
        previous = current.rank if moved and current.rank else current.previous_rank
        now = self._clock()
        if not self.store.update_rank(current.member_id, rank, previous, now):
            # Unregistered while roles were being reconciled.
            await self.reconciler.strip_rank_roles(member)
            LOGGER.info("Member %s unregistered during sync", current.member_id)
            return AccountOutcome(record=current, rank=rank, roles=roles, skipped=True)
        new_record = replace(current, rank=rank, previous_rank=previous, last_updated=now)
        LOGGER.debug(
            "Synced %s member=%s rank=%s previous=%s roles_changed=%s",
            current.riot_id,
            current.member_id,
            rank.label,
            current.rank.label if current.rank else None,
            roles.changed if roles else None,
        )

        outcome = AccountOutcome(
            record=new_record,
            rank=rank,
            notification=notification,
            roles=roles,
            updated=moved or bool(roles and roles.changed),
        )
        if notification and self.dispatcher:
            outcome.notified = await self.dispatcher.dispatch(
                notification,
                member,
                current.riot_id,
                dm=current.notify_dm,
                followers=self.store.followers_of(current.member_id),
            )
        return outcome
