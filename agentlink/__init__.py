"""agentlink: one canonical event stream for local and remote coding-agent sessions."""

__version__ = "0.1.0"
