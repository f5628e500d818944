"""SQLite storage primitives shared by the table-backed event store."""
