"""Accord: request-queue coordination between agents in separate repositories."""

__version__ = "0.1.0"
