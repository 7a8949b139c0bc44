"""Agent Fleet - supervision, error recovery and board sync for coding agents."""

__version__ = "0.1.0"
