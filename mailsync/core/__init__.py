"""Core infrastructure: settings, database, credential storage and errors."""
