"""Git-backed synchronization between a repository and the shared hub."""
