"""Core configuration, models, errors and logging for Prism."""
