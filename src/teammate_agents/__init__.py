"""Capability-scored assignment, peer review and stall escalation for agent teams."""

__version__ = "0.1.0"
