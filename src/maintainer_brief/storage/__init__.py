"""SQLite storage layer: engine policy, Alembic migrations, SQLModel tables."""
