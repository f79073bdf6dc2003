"""Command-line interface for the agent task queue."""
