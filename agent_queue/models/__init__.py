"""Data models for the agent task queue."""
