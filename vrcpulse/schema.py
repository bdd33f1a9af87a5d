"""Database schema migrations for the SQLite store."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
from collections.abc import Sequence
from dataclasses import dataclass

import aiosqlite

TRACKING_TABLE = "seaql_migrations"


@dataclass(frozen=True)
class Migration:
    """A named schema change with the statements to apply and revert it."""

    name: str
    up: tuple[str, ...]
    down: tuple[str, ...]


_CREATE_TABLES = Migration(
    name="m20260103_001_create_table",
    up=(
        'CREATE TABLE IF NOT EXISTS "guild_configs" ('
        '"guild_id" varchar NOT NULL PRIMARY KEY, '
        '"channel_id" varchar NULL, '
        '"enabled" boolean NOT NULL DEFAULT TRUE, '
        '"created_at" timestamp_text NOT NULL, '
        '"updated_at" timestamp_text NOT NULL)',
        'CREATE TABLE IF NOT EXISTS "user_configs" ('
        '"user_id" varchar NOT NULL PRIMARY KEY, '
        '"enabled" boolean NOT NULL DEFAULT TRUE, '
        '"created_at" timestamp_text NOT NULL, '
        '"updated_at" timestamp_text NOT NULL)',
        'CREATE TABLE IF NOT EXISTS "user_reports" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"guild_id" varchar NULL, '
        '"user_id" varchar NOT NULL, '
        '"incident_type" varchar NOT NULL, '
        '"content" text NULL, '
        "\"status\" varchar NOT NULL DEFAULT 'active', "
        '"created_at" timestamp_text NOT NULL)',
        'CREATE INDEX "idx_user_reports_type_created" '
        'ON "user_reports" ("incident_type", "created_at")',
        'CREATE INDEX "idx_user_reports_user_type_created" '
        'ON "user_reports" ("user_id", "incident_type", "created_at")',
        'CREATE TABLE IF NOT EXISTS "status_logs" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"indicator" varchar NOT NULL, '
        '"description" text NOT NULL, '
        '"source_timestamp" timestamp_text NOT NULL UNIQUE, '
        '"created_at" timestamp_text NOT NULL)',
        'CREATE TABLE IF NOT EXISTS "component_logs" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"component_id" varchar NOT NULL, '
        '"name" varchar NOT NULL, '
        '"status" varchar NOT NULL, '
        '"source_timestamp" timestamp_text NOT NULL, '
        '"created_at" timestamp_text NOT NULL)',
        'CREATE INDEX "idx_component_logs_component_time" '
        'ON "component_logs" ("component_id", "source_timestamp")',
        'CREATE TABLE IF NOT EXISTS "incidents" ('
        '"id" varchar NOT NULL PRIMARY KEY, '
        '"title" varchar NOT NULL, '
        '"impact" varchar NOT NULL, '
        '"status" varchar NOT NULL, '
        '"started_at" timestamp_text NOT NULL, '
        '"resolved_at" timestamp_text NULL, '
        '"created_at" timestamp_text NOT NULL, '
        '"updated_at" timestamp_text NOT NULL)',
        'CREATE TABLE IF NOT EXISTS "incident_updates" ('
        '"id" varchar NOT NULL PRIMARY KEY, '
        '"incident_id" varchar NOT NULL, '
        '"body" text NOT NULL, '
        '"status" varchar NOT NULL, '
        '"published_at" timestamp_text NOT NULL, '
        '"created_at" timestamp_text NOT NULL, '
        '"updated_at" timestamp_text NOT NULL, '
        'FOREIGN KEY ("incident_id") REFERENCES "incidents" ("id") '
        "ON DELETE CASCADE)",
        'CREATE TABLE IF NOT EXISTS "maintenances" ('
        '"id" varchar NOT NULL PRIMARY KEY, '
        '"title" varchar NOT NULL, '
        '"status" varchar NOT NULL, '
        '"scheduled_for" timestamp_text NOT NULL, '
        '"scheduled_until" timestamp_text NOT NULL, '
        '"created_at" timestamp_text NOT NULL, '
        '"updated_at" timestamp_text NOT NULL)',
        'CREATE TABLE IF NOT EXISTS "metric_logs" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"metric_name" varchar NOT NULL, '
        '"value" double NOT NULL, '
        '"unit" varchar NOT NULL, '
        '"interval_sec" integer NOT NULL, '
        '"timestamp" timestamp_text NOT NULL, '
        '"created_at" timestamp_text NOT NULL)',
        'CREATE UNIQUE INDEX "idx_metric_logs_name_time" '
        'ON "metric_logs" ("metric_name", "timestamp")',
        'CREATE TABLE IF NOT EXISTS "sent_alerts" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"guild_id" varchar NULL, '
        '"user_id" varchar NULL, '
        '"alert_type" varchar NOT NULL, '
        '"reference_id" varchar NOT NULL, '
        '"notified_at" timestamp_text NOT NULL, '
        '"created_at" timestamp_text NOT NULL)',
        'CREATE UNIQUE INDEX "idx_sent_alerts_lookup" '
        'ON "sent_alerts" ("guild_id", "user_id", "alert_type", "reference_id")',
        'CREATE TABLE IF NOT EXISTS "command_logs" ('
        '"id" integer NOT NULL PRIMARY KEY AUTOINCREMENT, '
        '"command_name" varchar NOT NULL, '
        '"subcommand" varchar NULL, '
        '"user_id" varchar NOT NULL, '
        '"guild_id" varchar NULL, '
        '"channel_id" varchar NULL, '
        '"executed_at" timestamp_text NOT NULL)',
        'CREATE INDEX "idx_command_logs_user_id" ON "command_logs" ("user_id")',
        'CREATE INDEX "idx_command_logs_guild_id" ON "command_logs" ("guild_id")',
        'CREATE TABLE IF NOT EXISTS "bot_config" ('
        '"key" varchar NOT NULL PRIMARY KEY, '
        '"value" varchar NOT NULL, '
        '"updated_at" timestamp_text NOT NULL)',
        "INSERT INTO bot_config (key, value, updated_at) VALUES "
        "('polling.status', '60', datetime('now')), "
        "('polling.incident', '60', datetime('now')), "
        "('polling.maintenance', '60', datetime('now')), "
        "('polling.metrics', '60', datetime('now')), "
        "('report_threshold', '1', datetime('now')), "
        "('report_interval', '60', datetime('now'))",
    ),
    down=tuple(
        f'DROP TABLE "{table}"'
        for table in (
            "bot_config",
            "command_logs",
            "sent_alerts",
            "metric_logs",
            "maintenances",
            "incident_updates",
            "incidents",
            "component_logs",
            "status_logs",
            "user_reports",
            "user_configs",
            "guild_configs",
        )
    ),
)

_ADD_LANGUAGE = Migration(
    name="m20260108_001_add_language_column",
    up=(
        'ALTER TABLE "guild_configs" ADD COLUMN "language" varchar NULL',
        'ALTER TABLE "user_configs" ADD COLUMN "language" varchar NULL',
    ),
    down=(
        'ALTER TABLE "user_configs" DROP COLUMN "language"',
        'ALTER TABLE "guild_configs" DROP COLUMN "language"',
    ),
)

_MIGRATIONS: tuple[Migration, ...] = (_CREATE_TABLES, _ADD_LANGUAGE)


def migrations() -> list[Migration]:
    """Return every known migration in the order it is applied."""
    return list(_MIGRATIONS)


def _check_steps(steps: int | None) -> None:
    if steps is not None and steps < 0:
        raise ValueError(f"steps must not be negative, got {steps}")


async def _ensure_tracking(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        f'CREATE TABLE IF NOT EXISTS "{TRACKING_TABLE}" ('
        '"version" varchar NOT NULL PRIMARY KEY, '
        '"applied_at" bigint NOT NULL)'
    )
    await conn.commit()


async def applied_migrations(conn: aiosqlite.Connection) -> list[str]:
    """Return the names of the migrations recorded as applied, oldest first."""
    await _ensure_tracking(conn)
    async with conn.execute(
        f'SELECT "version" FROM "{TRACKING_TABLE}" ORDER BY "version"'
    ) as cursor:
        rows = await cursor.fetchall()
    return [row[0] for row in rows]


async def _run_atomically(
    conn: aiosqlite.Connection, statements: Sequence[str], record: tuple[str, tuple]
) -> None:
    if not conn.in_transaction:
        await conn.execute("BEGIN")
    try:
        for statement in statements:
            await conn.execute(statement)
        await conn.execute(*record)
    except BaseException:
        await conn.rollback()
        raise
    await conn.commit()


async def migrate_up(conn: aiosqlite.Connection, steps: int | None = None) -> list[str]:
    """Apply pending migrations (all of them, or at most ``steps``)."""
    _check_steps(steps)
    done = set(await applied_migrations(conn))
    pending = [m for m in _MIGRATIONS if m.name not in done]
    if steps is not None:
        pending = pending[:steps]
    for migration in pending:
        await _run_atomically(
            conn,
            migration.up,
            (
                f'INSERT INTO "{TRACKING_TABLE}" ("version", "applied_at") VALUES (?, ?)',
                (migration.name, int(time.time())),
            ),
        )
    return [m.name for m in pending]


async def migrate_down(conn: aiosqlite.Connection, steps: int | None = 1) -> list[str]:
    """Revert the latest applied migrations (one by default, all if ``steps`` is None)."""
    _check_steps(steps)
    known = {m.name: m for m in _MIGRATIONS}
    applied = list(reversed(await applied_migrations(conn)))
    if steps is not None:
        applied = applied[:steps]
    missing = [name for name in applied if name not in known]
    if missing:
        raise LookupError(f"Migration file of version '{missing[0]}' is missing")
    for name in applied:
        await _run_atomically(
            conn,
            known[name].down,
            (f'DELETE FROM "{TRACKING_TABLE}" WHERE "version" = ?', (name,)),
        )
    return applied


def _sqlite_path(database_url: str) -> str:
    if database_url.startswith("sqlite://"):
        rest = database_url[len("sqlite://"):]
    elif database_url.startswith("sqlite:"):
        rest = database_url[len("sqlite:"):]
    else:
        raise ValueError(f"Unsupported database URL: {database_url}")
    path = rest.split("?", 1)[0]
    return path or ":memory:"


async def _drop_all_tables(conn: aiosqlite.Connection) -> None:
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
    ) as cursor:
        tables = [row[0] for row in await cursor.fetchall()]
    await conn.execute("PRAGMA foreign_keys = OFF")
    for table in tables:
        await conn.execute(f'DROP TABLE IF EXISTS "{table}"')
    await conn.commit()


async def _run_command(database_url: str, command: str, num: int | None) -> None:
    async with aiosqlite.connect(_sqlite_path(database_url)) as conn:
        if command == "up":
            names = await migrate_up(conn, num)
            verb = "Applied"
        elif command == "down":
            names = await migrate_down(conn, 1 if num is None else num)
            verb = "Rolled back"
        elif command == "reset":
            names = await migrate_down(conn, None)
            verb = "Rolled back"
        elif command == "refresh":
            for name in await migrate_down(conn, None):
                print(f"Rolled back {name}")
            names = await migrate_up(conn)
            verb = "Applied"
        elif command == "fresh":
            await _drop_all_tables(conn)
            names = await migrate_up(conn)
            verb = "Applied"
        else:
            done = set(await applied_migrations(conn))
            for migration in _MIGRATIONS:
                state = "Applied" if migration.name in done else "Pending"
                print(f"{migration.name}\t{state}")
            return
        if not names:
            print("No migrations to run")
        for name in names:
            print(f"{verb} {name}")


def main(argv: Sequence[str] | None = None) -> int:
    """Run the migration command line."""
    parser = argparse.ArgumentParser(prog="vrcpulse-migrate", description=__doc__)
    parser.add_argument(
        "-u",
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="database URL (defaults to $DATABASE_URL)",
    )
    sub = parser.add_subparsers(dest="command")
    for name, text in (
        ("up", "apply pending migrations"),
        ("down", "roll back applied migrations"),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("-n", "--num", type=int, default=None)
    sub.add_parser("status", help="show migration status")
    sub.add_parser("fresh", help="drop all tables and apply all migrations")
    sub.add_parser("refresh", help="roll back all migrations and apply them again")
    sub.add_parser("reset", help="roll back all applied migrations")

    args = parser.parse_args(argv)
    if not args.database_url:
        parser.error("a database URL is required (--database-url or DATABASE_URL)")
    command = args.command or "up"
    num = getattr(args, "num", None)
    try:
        asyncio.run(_run_command(args.database_url, command, num))
    except (ValueError, LookupError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())