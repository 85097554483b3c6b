"""Background worker and scheduler processes."""
