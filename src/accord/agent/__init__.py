"""Processing daemon, diagnostic commands, worker invocation and lifecycle."""
