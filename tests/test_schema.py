import sqlite3

import aiosqlite
import pytest
import pytest_asyncio

from vrcpulse.schema import (
    Migration,
    applied_migrations,
    main,
    migrate_down,
    migrate_up,
    migrations,
)

NAMES = [m.name for m in migrations()]
TS = "2026-01-01T00:00:00Z"

ALL_TABLES = {
    "guild_configs",
    "user_configs",
    "user_reports",
    "status_logs",
    "component_logs",
    "incidents",
    "incident_updates",
    "maintenances",
    "metric_logs",
    "sent_alerts",
    "command_logs",
    "bot_config",
}


@pytest_asyncio.fixture
async def conn():
    async with aiosqlite.connect(":memory:") as connection:
        yield connection


@pytest_asyncio.fixture
async def migrated(conn):
    await migrate_up(conn)
    return conn


async def _fetchall(conn, sql, params=()):
    async with conn.execute(sql, params) as cursor:
        return await cursor.fetchall()


async def _tables(conn):
    rows = await _fetchall(
        conn, "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
    )
    return {row[0] for row in rows}


async def _columns(conn, table):
    return [row[1] for row in await _fetchall(conn, f'PRAGMA table_info("{table}")')]


def _scalar(db_path, sql):
    with sqlite3.connect(db_path) as connection:
        return connection.execute(sql).fetchone()[0]


def test_migrations_are_ordered():
    assert NAMES == ["m20260103_001_create_table", "m20260108_001_add_language_column"]
    assert all(isinstance(m, Migration) and m.up and m.down for m in migrations())


@pytest.mark.asyncio
async def test_up_creates_all_tables_and_records(conn):
    applied = await migrate_up(conn)
    assert applied == NAMES
    assert await applied_migrations(conn) == applied
    assert ALL_TABLES <= await _tables(conn)
    for table in ("guild_configs", "user_configs"):
        assert "language" in await _columns(conn, table)


@pytest.mark.asyncio
async def test_up_seeds_bot_config(migrated):
    config = dict(await _fetchall(migrated, "SELECT key, value FROM bot_config"))
    assert config == {
        "polling.status": "60",
        "polling.incident": "60",
        "polling.maintenance": "60",
        "polling.metrics": "60",
        "report_threshold": "1",
        "report_interval": "60",
    }


@pytest.mark.asyncio
async def test_up_is_idempotent(migrated):
    assert await migrate_up(migrated) == []
    assert len(await applied_migrations(migrated)) == len(NAMES)


@pytest.mark.asyncio
async def test_up_with_steps_applies_only_first(conn):
    assert await migrate_up(conn, 1) == [NAMES[0]]
    assert "language" not in await _columns(conn, "guild_configs")
    assert await migrate_up(conn, 1) == [NAMES[1]]
    assert "language" in await _columns(conn, "guild_configs")


@pytest.mark.asyncio
async def test_down_reverts_latest_by_default(migrated):
    assert await migrate_down(migrated) == [NAMES[1]]
    assert "language" not in await _columns(migrated, "user_configs")
    assert await applied_migrations(migrated) == [NAMES[0]]


@pytest.mark.asyncio
async def test_down_all_drops_tables(migrated):
    assert await migrate_down(migrated, None) == list(reversed(NAMES))
    assert await _tables(migrated) & ALL_TABLES == set()
    assert await applied_migrations(migrated) == []


@pytest.mark.asyncio
async def test_down_with_large_steps_reverts_everything_applied(migrated):
    assert len(await migrate_down(migrated, 10)) == len(NAMES)
    assert await migrate_down(migrated) == []


@pytest.mark.asyncio
async def test_round_trip_restores_schema(migrated):
    before = await _columns(migrated, "guild_configs")
    await migrate_down(migrated, None)
    await migrate_up(migrated)
    assert await _columns(migrated, "guild_configs") == before


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", [migrate_up, migrate_down])
async def test_negative_steps_rejected(conn, operation):
    with pytest.raises(ValueError):
        await operation(conn, -1)


@pytest.mark.asyncio
async def test_unknown_applied_migration_cannot_be_reverted(migrated):
    await migrated.execute(
        "INSERT INTO seaql_migrations (version, applied_at) VALUES ('m99999999_999_unknown', 0)"
    )
    await migrated.commit()
    with pytest.raises(LookupError):
        await migrate_down(migrated)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "insert",
    [
        pytest.param(
            "INSERT INTO metric_logs (metric_name, value, unit, interval_sec, timestamp, created_at) "
            f"VALUES ('visits', 1.0, 'count', 60, '{TS}', '{TS}')",
            id="metric_logs_name_time",
        ),
        pytest.param(
            "INSERT INTO status_logs (indicator, description, source_timestamp, created_at) "
            f"VALUES ('none', 'ok', '{TS}', '{TS}')",
            id="status_logs_source_timestamp",
        ),
    ],
)
async def test_unique_constraints(migrated, insert):
    await migrated.execute(insert)
    with pytest.raises(sqlite3.IntegrityError):
        await migrated.execute(insert)


@pytest.mark.asyncio
async def test_defaults_for_enabled_and_report_status(migrated):
    await migrated.execute(
        "INSERT INTO user_reports (user_id, incident_type, created_at) VALUES ('42', 'login', ?)",
        (TS,),
    )
    await migrated.execute(
        "INSERT INTO user_configs (user_id, created_at, updated_at) VALUES ('42', ?, ?)",
        (TS, TS),
    )
    assert await _fetchall(migrated, "SELECT status FROM user_reports") == [("active",)]
    assert await _fetchall(migrated, "SELECT enabled, language FROM user_configs") == [(1, None)]


@pytest.mark.asyncio
async def test_incident_updates_cascade_on_delete(migrated):
    await migrated.execute("PRAGMA foreign_keys = ON")
    await migrated.execute(
        "INSERT INTO incidents VALUES ('inc1', 't', 'minor', 'investigating', ?, NULL, ?, ?)",
        (TS, TS, TS),
    )
    await migrated.execute(
        "INSERT INTO incident_updates VALUES ('upd1', 'inc1', 'b', 'investigating', ?, ?, ?)",
        (TS, TS, TS),
    )
    await migrated.execute("DELETE FROM incidents WHERE id = 'inc1'")
    assert await _fetchall(migrated, "SELECT COUNT(*) FROM incident_updates") == [(0,)]


def test_main_up_and_down(tmp_path):
    db_path = tmp_path / "pulse.db"
    url = f"sqlite://{db_path}?mode=rwc"
    assert main(["--database-url", url, "up"]) == 0
    with sqlite3.connect(db_path) as connection:
        versions = [
            r[0] for r in connection.execute("SELECT version FROM seaql_migrations ORDER BY version")
        ]
    assert versions == NAMES

    assert main(["--database-url", url, "down", "-n", "2"]) == 0
    assert _scalar(db_path, "SELECT COUNT(*) FROM seaql_migrations") == 0


def test_main_fresh_rebuilds(tmp_path):
    db_path = tmp_path / "pulse.db"
    url = f"sqlite://{db_path}"
    assert main(["--database-url", url, "up"]) == 0
    with sqlite3.connect(db_path) as connection:
        connection.execute("DELETE FROM bot_config")
    assert main(["--database-url", url, "fresh"]) == 0
    assert _scalar(db_path, "SELECT COUNT(*) FROM bot_config") == 6


def test_main_status_lists_migrations(tmp_path, capsys):
    url = f"sqlite://{tmp_path / 'pulse.db'}"
    assert main(["--database-url", url, "up", "-n", "1"]) == 0
    capsys.readouterr()
    assert main(["--database-url", url, "status"]) == 0
    out = capsys.readouterr().out
    assert f"{NAMES[0]}\tApplied" in out
    assert f"{NAMES[1]}\tPending" in out


def test_main_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(SystemExit):
        main(["up"])


def test_main_rejects_other_schemes():
    assert main(["--database-url", "postgres://localhost/db", "up"]) == 1