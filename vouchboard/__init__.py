"""Vouchboard: Trustdown indexing, audit chain and leaderboard."""

__version__ = "0.1.0"
