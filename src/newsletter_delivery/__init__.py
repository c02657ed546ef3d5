"""Durable newsletter issue delivery queue worker."""

__version__ = "0.1.0"
