"""Click subcommands of the agent-queue CLI."""
