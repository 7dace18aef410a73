"""Durable task and workflow queue for an interactive CLI agent session."""

__version__ = "0.4.0"
