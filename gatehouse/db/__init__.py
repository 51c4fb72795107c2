"""Database Metadata — declarative Base shared by the store-backed tables."""
