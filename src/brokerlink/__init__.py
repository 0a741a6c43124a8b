"""Pooled connection adapters for persistent-connection brokers."""

__version__ = "0.1.0"
