"""Host agent — runs on every Toolbox, manages tool containers and executes capabilities."""

AGENT_VERSION = "0.1.0"
