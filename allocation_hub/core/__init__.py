"""Core configuration, database and security."""
