"""Tamper-evident security audit log engine."""

__version__ = "0.1.0"
