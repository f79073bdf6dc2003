"""Process-level helpers: log file setup and shutdown signals."""
