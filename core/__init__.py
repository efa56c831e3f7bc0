"""Working directory, settings and logging helpers."""
