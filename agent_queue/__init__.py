"""Agent Task Queue - headless priority queue for AI coding agent prompts."""

__version__ = "1.0.0"
