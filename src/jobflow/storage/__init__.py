"""SQLite storage helpers and ORM tables for durable job records."""
