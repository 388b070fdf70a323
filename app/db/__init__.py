"""Database engine and session factory."""
