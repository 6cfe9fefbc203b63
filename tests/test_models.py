import sqlite3
from dataclasses import replace
from datetime import datetime

from rankbot.models import AccountRecord, AccountStore
from rankbot.ranks import Rank, RankTier


def make_store(tmp_path):
    return AccountStore(str(tmp_path / "data" / "accounts.db"))


def test_upsert_and_get_one_round_trip(tmp_path):
    store = make_store(tmp_path)
    record = AccountRecord(
        member_id=42,
        username="Sage",
        tag="0001",
        region="eu",
        platform="pc",
        rank=Rank(RankTier.GOLD, 3, 55),
        previous_rank=Rank(RankTier.GOLD, 2),
        last_updated=datetime(2025, 1, 2, 3, 4, 5),
    )

    store.upsert(record)
    loaded = store.get_one(42)

    assert loaded.riot_id == "Sage#0001"
    assert loaded.rank == Rank(RankTier.GOLD, 3, 55)
    assert loaded.previous_rank == Rank(RankTier.GOLD, 2)
    assert loaded.last_updated == datetime(2025, 1, 2, 3, 4, 5)
    assert loaded.registered_at is not None
    assert loaded.notify_dm is False


def test_one_record_per_member(tmp_path):
    store = make_store(tmp_path)
    record = AccountRecord(member_id=42, username="Sage", tag="0001", region="eu")
    store.upsert(record)

    store.upsert(replace(record, region="na", rank=Rank(RankTier.RADIANT)))

    records = store.get_all()
    assert len(records) == 1
    assert records[0].region == "na"
    assert records[0].rank == Rank(RankTier.RADIANT)


def test_upsert_can_clear_rank(tmp_path):
    store = make_store(tmp_path)
    record = AccountRecord(
        member_id=1, username="a", tag="1", region="eu", rank=Rank(RankTier.IRON, 1)
    )
    store.upsert(record)

    store.upsert(replace(record, rank=None))

    assert store.get_one(1).rank is None


def test_delete(tmp_path):
    store = make_store(tmp_path)
    store.upsert(AccountRecord(member_id=1, username="a", tag="1", region="eu"))

    assert store.delete(1) is True
    assert store.delete(1) is False
    assert store.get_one(1) is None
    assert store.get_all() == []


def test_records_survive_reopen(tmp_path):
    store = make_store(tmp_path)
    store.upsert(
        AccountRecord(member_id=7, username="b", tag="2", region="ap", notify_dm=True)
    )
    store.close()

    reopened = make_store(tmp_path)

    assert reopened.get_one(7).notify_dm is True


def test_backup_writes_copy(tmp_path):
    store = make_store(tmp_path)
    store.upsert(AccountRecord(member_id=9, username="c", tag="3", region="kr"))

    target = store.backup()

    assert target.endswith("accounts.db.bak")
    conn = sqlite3.connect(target)
    try:
        rows = conn.execute("SELECT discord_user_id, username FROM account").fetchall()
    finally:
        conn.close()
    assert rows == [(9, "c")]


def test_upsert_leaves_callers_record_untouched(tmp_path):
    store = make_store(tmp_path)
    record = AccountRecord(member_id=3, username="a", tag="1", region="eu")

    stored = store.upsert(record)

    assert record.registered_at is None
    assert stored.registered_at is not None
    assert store.get_one(3).registered_at == stored.registered_at


def test_update_rank_only_touches_rank_columns(tmp_path):
    store = make_store(tmp_path)
    store.upsert(
        AccountRecord(
            member_id=5, username="a", tag="1", region="eu", rank=Rank(RankTier.IRON, 1)
        )
    )
    store.set_notify_dm(5, True)

    written = store.update_rank(
        5, Rank(RankTier.IRON, 2, 30), Rank(RankTier.IRON, 1), datetime(2025, 1, 1)
    )

    loaded = store.get_one(5)
    assert written is True
    assert loaded.notify_dm is True
    assert loaded.username == "a"
    assert loaded.rank == Rank(RankTier.IRON, 2, 30)
    assert loaded.previous_rank == Rank(RankTier.IRON, 1)
    assert loaded.last_updated == datetime(2025, 1, 1)


def test_update_rank_does_not_recreate_deleted_record(tmp_path):
    store = make_store(tmp_path)
    store.upsert(AccountRecord(member_id=5, username="a", tag="1", region="eu"))
    store.delete(5)

    assert store.update_rank(5, Rank(RankTier.GOLD, 1), None, datetime(2025, 1, 1)) is False
    assert store.get_one(5) is None


def test_set_notify_dm_requires_record(tmp_path):
    store = make_store(tmp_path)

    assert store.set_notify_dm(1, True) is False


def test_follows(tmp_path):
    store = make_store(tmp_path)

    assert store.follow(1, 10) is True
    assert store.follow(1, 10) is False
    store.follow(1, 11)
    store.follow(2, 10)

    assert store.following(1) == [10, 11]
    assert store.followers_of(10) == [1, 2]
    assert store.unfollow(1, 10) is True
    assert store.unfollow(1, 10) is False
    assert store.followers_of(10) == [2]


def test_account_table_columns(tmp_path):
    store = make_store(tmp_path)

    columns = {
        row[1] for row in store.db.execute_sql("PRAGMA table_info(account)").fetchall()
    }

    assert columns == {
        "discord_user_id",
        "username",
        "tag",
        "region",
        "platform",
        "current_tier",
        "current_division",
        "current_score",
        "previous_tier",
        "previous_division",
        "notify_dm",
        "registered_at",
        "last_updated",
    }
