"""Agent core: locate, execute, verify, recover, and the session loop."""
