"""Shared certificate storage for ACME clients running as a fleet."""

__version__ = "0.1.0"
