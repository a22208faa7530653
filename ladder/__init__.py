"""Ladder: an escalating council of model tiers working through a task backlog."""

__version__ = "0.1.0"
