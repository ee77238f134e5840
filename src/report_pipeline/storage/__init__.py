"""SQLite persistence helpers and ORM tables."""
