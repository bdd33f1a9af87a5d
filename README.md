# vrcpulse

vrcpulse keeps a running record of VRChat's service health in a SQLite
database. It polls the public status page for the overall status, component
states, unresolved incidents and scheduled maintenances, and the public
metrics feed for API latency, visits, request and error counts and external
authentication timings. Each source is polled on its own interval, and the
intervals can be changed while the collector runs.

The package also holds the alert logic for user reports. When enough distinct
users report the same kind of problem within the configured window, a
threshold alert is handed to every registered guild channel and user, at most
once per fifteen-minute block.

## Installation

```
pip install vrcpulse
```

For running the tests:

```
pip install "vrcpulse[test]"
pytest
```

## The database URL

Both commands take the database as `--database-url` (`-u`), or from the
`DATABASE_URL` environment variable. Only SQLite is supported, written as
`sqlite://path/to/file.db` or `sqlite:path/to/file.db`; anything after a `?`
is ignored, and an empty path means an in-memory database.

## Setting up the database

Apply the migrations before the first run:

```
DATABASE_URL=sqlite://vrcpulse.db vrcpulse-migrate
```

With no subcommand this applies every pending migration. The subcommands are:

| command              | what it does                                         |
|----------------------|------------------------------------------------------|
| `up [-n N]`          | apply pending migrations (all, or at most N)         |
| `down [-n N]`        | roll back the latest applied migrations (1 default)  |
| `status`             | list every migration as Applied or Pending           |
| `reset`              | roll back all applied migrations                     |
| `refresh`            | roll back all migrations, then apply them again      |
| `fresh`              | drop every table, then apply all migrations          |

The first migration creates every table and seeds the default settings in
`bot_config`:

| key                   | default | meaning                                   |
|-----------------------|---------|-------------------------------------------|
| `polling.status`      | 60      | seconds between status polls              |
| `polling.incident`    | 60      | seconds between incident polls            |
| `polling.maintenance` | 60      | seconds between maintenance polls         |
| `polling.metrics`     | 60      | seconds between metrics polls             |
| `report_threshold`    | 1       | distinct reporters needed to raise alerts |
| `report_interval`     | 60      | report window in minutes                  |

The second migration adds a nullable `language` column to `guild_configs` and
`user_configs`.

## Running the collector

```
DATABASE_URL=sqlite://vrcpulse.db vrcpulse
```

This opens the database with WAL journaling and a busy timeout, loads the
polling intervals from `bot_config` and runs the four pollers side by side
until it is stopped. Options:

- `--migrate` applies pending migrations before starting.
- `--log-level LEVEL` sets the logging level (default `INFO`).

Each poller runs once at start and then once per interval; ticks missed while
a poll is slow are skipped, and a failed poll is logged without stopping the
loop.

## Using it from Python

- `vrcpulse.schema`: `migrations()`, `applied_migrations(conn)`,
  `migrate_up(conn, steps)` and `migrate_down(conn, steps)` work on an open
  `aiosqlite` connection.
- `vrcpulse.config`: `init_config(db)` loads every interval into a
  `CollectorConfig`; it raises `MissingKeyError` or `InvalidValueError` (both
  `ConfigError`) when a key is absent or not a number.
  `validate_interval(seconds)` raises `ValueError` unless the value lies
  between 60 and 3600. `CollectorConfig.update(db, poller, seconds)` changes
  one poller's interval in the database and in the running collector, and
  `CollectorConfig.reset_all(db)` sets every poller back to 60 seconds.
  `PollerType.parse(text)` looks a poller up by name, ignoring case.
- `vrcpulse.status`, `vrcpulse.incident`, `vrcpulse.maintenance` and
  `vrcpulse.metrics` each offer a `poll(client, db)` coroutine that runs one
  poll of its source, raising `vrcpulse.client.CollectorError` on HTTP or
  database failure. The incident poller marks incidents that are no longer
  listed as resolved; the maintenance poller marks maintenances completed
  once their window has passed.
- `vrcpulse.collector`: `start(client, db, config)` runs all four pollers;
  `connect_database(url)` and `create_http_client()` build what it needs.
- `vrcpulse.alerts.check_and_send_alerts(db, incident_type, notifier)` checks
  the report threshold and, when it is reached, passes a `ThresholdAlert` to
  your `AlertNotifier` (`send_to_channel` for guilds, `send_to_user` for
  users) together with the recipient's stored language. It returns the
  number of alerts delivered. If delivery raises, the record of the alert is
  removed so that it is tried again on the next check.
  `format_recent_reports(reports, now)` gives lines such as `- just now` or
  `- 3 mins ago` for use in a message.
- `vrcpulse.audit.log_command(db, command_name, subcommand, user_id, guild_id,
  channel_id)` logs a command and records it in `command_logs`, returning the
  new row id, or `None` if there was no database or the insert failed.

## What it does not do

vrcpulse contains no chat bot. It does not connect to a chat service,
register commands, accept user reports or render alert messages: reports are
expected to be written to `user_reports` by your own code, and getting an
alert to a channel or user is the job of the `AlertNotifier` you pass in.