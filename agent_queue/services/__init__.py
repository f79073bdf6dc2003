"""Services for queue persistence, scheduling and agent execution."""
