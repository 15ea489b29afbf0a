"""Ticket to pull request workflow orchestration."""

__version__ = "0.1.0"
