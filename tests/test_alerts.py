from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from vrcpulse.alerts import (
    MAX_RECENT_REPORTS,
    RecordResult,
    check_and_send_alerts,
    count_active_reports,
    delete_sent_alert,
    format_recent_reports,
    generate_reference_id,
    get_config_value,
    get_recent_reports,
    get_registered_guilds,
    get_registered_users,
    try_record_sent_alert,
)
from vrcpulse.schema import migrate_up


@asynccontextmanager
async def open_db():
    async with aiosqlite.connect(":memory:") as db:
        await migrate_up(db)
        yield db


def _now():
    return datetime.now(timezone.utc)


async def add_report(db, user_id, incident_type="login", minutes_ago=0, status="active"):
    created = (_now() - timedelta(minutes=minutes_ago)).isoformat()
    await db.execute(
        "INSERT INTO user_reports (user_id, incident_type, status, created_at) "
        "VALUES (?, ?, ?, ?)",
        (user_id, incident_type, status, created),
    )
    await db.commit()


async def add_guild(db, guild_id, channel_id, enabled=True, language=None):
    now = _now().isoformat()
    await db.execute(
        "INSERT INTO guild_configs (guild_id, channel_id, enabled, created_at, updated_at, "
        "language) VALUES (?, ?, ?, ?, ?, ?)",
        (guild_id, channel_id, enabled, now, now, language),
    )
    await db.commit()


async def add_user(db, user_id, enabled=True, language=None):
    now = _now().isoformat()
    await db.execute(
        "INSERT INTO user_configs (user_id, enabled, created_at, updated_at, language) "
        "VALUES (?, ?, ?, ?, ?)",
        (user_id, enabled, now, now, language),
    )
    await db.commit()


async def set_config(db, key, value):
    await db.execute("UPDATE bot_config SET value = ? WHERE key = ?", (value, key))
    await db.commit()


async def sent_rows(db):
    async with db.execute("SELECT guild_id, user_id FROM sent_alerts") as cursor:
        return await cursor.fetchall()


class FakeNotifier:
    def __init__(self, fail_channel=False, fail_user=False):
        self.fail_channel = fail_channel
        self.fail_user = fail_user
        self.channel_calls = []
        self.user_calls = []

    async def send_to_channel(self, channel_id, alert, language):
        if self.fail_channel:
            raise RuntimeError("channel unavailable")
        self.channel_calls.append((channel_id, alert, language))

    async def send_to_user(self, user_id, alert, language):
        if self.fail_user:
            raise RuntimeError("dm unavailable")
        self.user_calls.append((user_id, alert, language))


def test_reference_id_uses_fifteen_minute_block():
    moment = datetime(2026, 1, 8, 12, 47, tzinfo=timezone.utc)
    assert generate_reference_id("login", moment) == "threshold_login_2026-01-08T12:45"


def test_reference_id_same_within_block():
    first = datetime(2026, 1, 8, 12, 45, 0, tzinfo=timezone.utc)
    last = datetime(2026, 1, 8, 12, 59, 59, tzinfo=timezone.utc)
    after = datetime(2026, 1, 8, 13, 0, 0, tzinfo=timezone.utc)
    assert generate_reference_id("x", first) == generate_reference_id("x", last)
    assert generate_reference_id("x", last) != generate_reference_id("x", after)


def test_reference_id_converts_to_utc():
    seoul = timezone(timedelta(hours=9))
    local = datetime(2026, 1, 8, 21, 50, tzinfo=seoul)
    utc = datetime(2026, 1, 8, 12, 50, tzinfo=timezone.utc)
    assert generate_reference_id("login", local) == generate_reference_id("login", utc)


def test_format_recent_reports_relative_times():
    now = datetime(2026, 1, 8, 12, 0, tzinfo=timezone.utc)
    reports = [now - timedelta(seconds=30), now - timedelta(minutes=1), now - timedelta(minutes=7)]
    lines = format_recent_reports(reports, now).split("\n")
    assert len(lines) == 3
    assert lines[0] == "- just now"
    assert lines[1] == "- 1 min ago"
    assert "7" in lines[2]
    assert all(line.startswith("- ") for line in lines)


def test_format_recent_reports_empty_is_single_line():
    text = format_recent_reports([])
    assert "\n" not in text
    assert not text.startswith("- ")


@pytest.mark.asyncio
async def test_config_value_seeded_and_missing():
    async with open_db() as db:
        assert await get_config_value(db, "report_threshold") == 1
        assert await get_config_value(db, "report_interval") == 60
        assert await get_config_value(db, "no.such.key") is None


@pytest.mark.asyncio
async def test_config_value_not_a_number():
    async with open_db() as db:
        await set_config(db, "report_threshold", "many")
        assert await get_config_value(db, "report_threshold") is None


@pytest.mark.asyncio
async def test_count_active_reports_counts_distinct_users():
    async with open_db() as db:
        await add_report(db, "100")
        await add_report(db, "100")
        await add_report(db, "200")
        await add_report(db, "300", incident_type="other")
        await add_report(db, "400", status="expired")
        await add_report(db, "500", minutes_ago=120)
        assert await count_active_reports(db, "login", 60) == 2
        assert await count_active_reports(db, "other", 60) == 1
        assert await count_active_reports(db, "missing", 60) == 0


@pytest.mark.asyncio
async def test_recent_reports_newest_first_and_limited():
    async with open_db() as db:
        for minutes in (10, 2, 30, 5, 20, 1, 15):
            await add_report(db, f"u{minutes}", minutes_ago=minutes)
        reports = await get_recent_reports(db, "login", 60, MAX_RECENT_REPORTS)
        assert len(reports) == MAX_RECENT_REPORTS
        assert reports == sorted(reports, reverse=True)
        assert all(r.tzinfo is not None for r in reports)


@pytest.mark.asyncio
async def test_registered_guilds_and_users_filtered():
    async with open_db() as db:
        await add_guild(db, "1", "555", language="ko")
        await add_guild(db, "2", None)
        await add_guild(db, "3", "777", enabled=False)
        await add_user(db, "300")
        await add_user(db, "400", enabled=False)
        guilds = await get_registered_guilds(db)
        users = await get_registered_users(db)
        assert [g["guild_id"] for g in guilds] == ["1"]
        assert guilds[0]["language"] == "ko"
        assert [u["user_id"] for u in users] == ["300"]


@pytest.mark.asyncio
async def test_record_sent_alert_deduplicates_and_rollback_allows_retry():
    async with open_db() as db:
        outcome, record_id = await try_record_sent_alert(db, "1", None, "ref")
        assert outcome is RecordResult.RECORDED
        assert isinstance(record_id, int)

        again, again_id = await try_record_sent_alert(db, "1", None, "ref")
        assert again is RecordResult.ALREADY_SENT
        assert again_id is None

        user_outcome, _ = await try_record_sent_alert(db, None, "1", "ref")
        assert user_outcome is RecordResult.RECORDED

        await delete_sent_alert(db, record_id)
        retry, _ = await try_record_sent_alert(db, "1", None, "ref")
        assert retry is RecordResult.RECORDED


@pytest.mark.asyncio
async def test_below_threshold_sends_nothing():
    async with open_db() as db:
        await set_config(db, "report_threshold", "2")
        await add_guild(db, "1", "555")
        await add_report(db, "100")
        notifier = FakeNotifier()
        assert await check_and_send_alerts(db, "login", notifier) == 0
        assert notifier.channel_calls == []
        assert await sent_rows(db) == []


@pytest.mark.asyncio
async def test_threshold_reached_alerts_guilds_and_users_once():
    async with open_db() as db:
        await set_config(db, "report_threshold", "2")
        await add_guild(db, "1", "555", language="ko")
        await add_user(db, "300")
        await add_report(db, "100")
        await add_report(db, "200")
        notifier = FakeNotifier()

        assert await check_and_send_alerts(db, "login", notifier) == 2
        channel_id, alert, language = notifier.channel_calls[0]
        assert channel_id == 555
        assert language == "ko"
        assert alert.count == 2
        assert alert.interval == 60
        assert len(alert.recent_reports) == 2
        assert alert.reference_id.startswith("threshold_login_")
        assert notifier.user_calls[0][0] == 300

        assert await check_and_send_alerts(db, "login", notifier) == 0
        assert len(notifier.channel_calls) == 1
        assert len(notifier.user_calls) == 1


@pytest.mark.asyncio
async def test_failed_delivery_is_retried_next_time():
    async with open_db() as db:
        await add_guild(db, "1", "555")
        await add_user(db, "300")
        await add_report(db, "100")
        notifier = FakeNotifier(fail_channel=True)

        assert await check_and_send_alerts(db, "login", notifier) == 1
        assert [row for row in await sent_rows(db) if row[0] == "1"] == []

        notifier.fail_channel = False
        assert await check_and_send_alerts(db, "login", notifier) == 1
        assert [c[0] for c in notifier.channel_calls] == [555]


@pytest.mark.asyncio
async def test_invalid_channel_id_is_skipped():
    async with open_db() as db:
        await add_guild(db, "1", "general")
        await add_report(db, "100")
        notifier = FakeNotifier()
        assert await check_and_send_alerts(db, "login", notifier) == 0
        assert notifier.channel_calls == []
        assert await sent_rows(db) == []


@pytest.mark.asyncio
async def test_missing_config_sends_nothing():
    async with open_db() as db:
        await db.execute("DELETE FROM bot_config WHERE key = 'report_interval'")
        await db.commit()
        await add_guild(db, "1", "555")
        await add_report(db, "100")
        notifier = FakeNotifier()
        assert await check_and_send_alerts(db, "login", notifier) == 0
        assert notifier.channel_calls == []