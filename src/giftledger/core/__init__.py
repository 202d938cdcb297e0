"""Core configuration, persistence and error types."""
