"""Agent Ledger: ingest coding-assistant activity logs into one canonical store."""

__version__ = "0.1.0"
