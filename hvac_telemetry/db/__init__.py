"""Database models, partition tables, engine and session factory."""
