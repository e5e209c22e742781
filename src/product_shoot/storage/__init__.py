"""SQLite storage layer: SQLModel tables and migration runner."""
