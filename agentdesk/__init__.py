"""agentdesk: chat host engine for a streaming coding-agent CLI."""

__version__ = "0.1.0"
