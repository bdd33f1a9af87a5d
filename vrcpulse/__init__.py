"""VRChat service status collector for SQLite, with schema migrations and report-threshold alerts."""

__version__ = "1.0.0"