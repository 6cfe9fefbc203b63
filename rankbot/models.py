from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from peewee import (
    BooleanField,
    CharField,
    CompositeKey,
    DatabaseError,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
)

from .ranks import Rank, RankTier

LOGGER = logging.getLogger(__name__)

REGIONS = ("eu", "na", "ap", "kr", "latam", "br")
PLATFORMS = ("pc", "console")


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PersistenceFailure(Exception):
    pass


@dataclass
class AccountRecord:
    member_id: int
    username: str
    tag: str
    region: str
    platform: str = "pc"
    rank: Optional[Rank] = None
    previous_rank: Optional[Rank] = None
    notify_dm: bool = False
    last_updated: Optional[datetime] = None
    registered_at: Optional[datetime] = None

    @property
    def riot_id(self) -> str:
        return f"{self.username}#{self.tag}"

    def same_account(self, other: "AccountRecord") -> bool:
        """True when both records point at the same ranked account."""
        return (
            self.username.casefold() == other.username.casefold()
            and self.tag.casefold() == other.tag.casefold()
            and self.region == other.region
            and self.platform == other.platform
        )


@dataclass
class StoreModels:
    db: SqliteDatabase
    Account: type
    Follow: type


def _create_models(db: SqliteDatabase) -> StoreModels:
    class BaseModel(Model):
        class Meta:
            database = db

    class Account(BaseModel):
        discord_user_id = IntegerField(primary_key=True)
        username = CharField()
        tag = CharField()
        region = CharField()
        platform = CharField(default="pc")
        current_tier = IntegerField(null=True)
        current_division = IntegerField(null=True)
        current_score = IntegerField(null=True)
        previous_tier = IntegerField(null=True)
        previous_division = IntegerField(null=True)
        notify_dm = BooleanField(default=False)
        registered_at = DateTimeField(default=utcnow_naive)
        last_updated = DateTimeField(null=True)

    class Follow(BaseModel):
        follower_id = IntegerField()
        target_id = IntegerField(index=True)
        created_at = DateTimeField(default=utcnow_naive)

        class Meta:
            primary_key = CompositeKey("follower_id", "target_id")

    return StoreModels(db=db, Account=Account, Follow=Follow)


def _rank_from_columns(
    tier_value: Optional[int], division: Optional[int], score: Optional[int] = None
) -> Optional[Rank]:
    if tier_value is None:
        return None
    try:
        return Rank(tier=RankTier(tier_value), division=division, score=score)
    except ValueError as exc:
        LOGGER.warning("Ignoring invalid stored rank %s/%s: %s", tier_value, division, exc)
        return None


class AccountStore:
    """Durable mapping of Discord member id to registered Valorant account."""

    def __init__(self, path: str):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.db = SqliteDatabase(path)
        self.models = _create_models(self.db)
        self.db.connect(reuse_if_open=True)
        self.db.create_tables([self.models.Account, self.models.Follow])

    def close(self):
        if not self.db.is_closed():
            self.db.close()

    def _to_record(self, row) -> AccountRecord:
        return AccountRecord(
            member_id=row.discord_user_id,
            username=row.username,
            tag=row.tag,
            region=row.region,
            platform=row.platform,
            rank=_rank_from_columns(
                row.current_tier, row.current_division, row.current_score
            ),
            previous_rank=_rank_from_columns(row.previous_tier, row.previous_division),
            notify_dm=bool(row.notify_dm),
            last_updated=row.last_updated,
            registered_at=row.registered_at,
        )

    def get_all(self) -> List[AccountRecord]:
        Account = self.models.Account
        query = Account.select().order_by(Account.registered_at, Account.discord_user_id)
        return [self._to_record(row) for row in query]

    def get_one(self, member_id: int) -> Optional[AccountRecord]:
        Account = self.models.Account
        row = Account.get_or_none(Account.discord_user_id == member_id)
        return self._to_record(row) if row else None

    def _rank_values(
        self,
        rank: Optional[Rank],
        previous: Optional[Rank],
        last_updated: Optional[datetime],
    ) -> dict:
        Account = self.models.Account
        return {
            Account.current_tier: int(rank.tier) if rank else None,
            Account.current_division: rank.division if rank else None,
            Account.current_score: rank.score if rank else None,
            Account.previous_tier: int(previous.tier) if previous else None,
            Account.previous_division: previous.division if previous else None,
            Account.last_updated: last_updated,
        }

    def upsert(self, record: AccountRecord) -> AccountRecord:
        """Insert or fully replace the member's record; returns what was stored."""
        Account = self.models.Account
        if record.registered_at is None:
            record = replace(record, registered_at=utcnow_naive())
        values = {
            Account.username: record.username,
            Account.tag: record.tag,
            Account.region: record.region,
            Account.platform: record.platform,
            Account.notify_dm: record.notify_dm,
            **self._rank_values(record.rank, record.previous_rank, record.last_updated),
        }
        try:
            with self.db.atomic():
                Account.insert(
                    {
                        Account.discord_user_id: record.member_id,
                        Account.registered_at: record.registered_at,
                        **values,
                    }
                ).on_conflict(
                    conflict_target=[Account.discord_user_id],
                    update=values,
                ).execute()
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Failed to store account for member {record.member_id}: {exc}"
            ) from exc
        return record

    def update_rank(
        self,
        member_id: int,
        rank: Optional[Rank],
        previous_rank: Optional[Rank],
        last_updated: Optional[datetime],
    ) -> bool:
        """Write only the rank columns of an existing record.

        Returns False when the member has no record (it was deleted).
        """
        Account = self.models.Account
        try:
            with self.db.atomic():
                updated = (
                    Account.update(self._rank_values(rank, previous_rank, last_updated))
                    .where(Account.discord_user_id == member_id)
                    .execute()
                )
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Failed to store rank for member {member_id}: {exc}"
            ) from exc
        return updated > 0

    def set_notify_dm(self, member_id: int, enabled: bool) -> bool:
        Account = self.models.Account
        try:
            with self.db.atomic():
                updated = (
                    Account.update({Account.notify_dm: enabled})
                    .where(Account.discord_user_id == member_id)
                    .execute()
                )
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Failed to store notification setting for member {member_id}: {exc}"
            ) from exc
        return updated > 0

    def delete(self, member_id: int) -> bool:
        Account = self.models.Account
        try:
            with self.db.atomic():
                deleted = (
                    Account.delete()
                    .where(Account.discord_user_id == member_id)
                    .execute()
                )
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Failed to delete account for member {member_id}: {exc}"
            ) from exc
        return deleted > 0

    def follow(self, follower_id: int, target_id: int) -> bool:
        """Returns False if the follow already existed."""
        Follow = self.models.Follow
        try:
            with self.db.atomic():
                existing = Follow.get_or_none(
                    (Follow.follower_id == follower_id) & (Follow.target_id == target_id)
                )
                if existing is not None:
                    return False
                Follow.create(follower_id=follower_id, target_id=target_id)
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Failed to follow {target_id} for {follower_id}: {exc}"
            ) from exc
        return True

    def unfollow(self, follower_id: int, target_id: int) -> bool:
        Follow = self.models.Follow
        try:
            with self.db.atomic():
                deleted = (
                    Follow.delete()
                    .where(
                        (Follow.follower_id == follower_id)
                        & (Follow.target_id == target_id)
                    )
                    .execute()
                )
        except DatabaseError as exc:
            raise PersistenceFailure(
                f"Failed to unfollow {target_id} for {follower_id}: {exc}"
            ) from exc
        return deleted > 0

    def following(self, follower_id: int) -> List[int]:
        Follow = self.models.Follow
        query = (
            Follow.select(Follow.target_id)
            .where(Follow.follower_id == follower_id)
            .order_by(Follow.created_at, Follow.target_id)
        )
        return [row.target_id for row in query]

    def followers_of(self, target_id: int) -> List[int]:
        Follow = self.models.Follow
        query = (
            Follow.select(Follow.follower_id)
            .where(Follow.target_id == target_id)
            .order_by(Follow.follower_id)
        )
        return [row.follower_id for row in query]

    def backup(self, path: Optional[str] = None) -> str:
        """Copy the database to ``path`` (default ``<db>.bak``) atomically."""
        target = path or f"{self.path}.bak"
        tmp_path = f"{target}.tmp"
        dest = sqlite3.connect(tmp_path)
        try:
            self.db.connection().backup(dest)
        finally:
            dest.close()
        os.replace(tmp_path, target)
        return target
