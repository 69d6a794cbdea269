"""Reconciliation, classification and autonomous resolution engine."""

__version__ = "1.0.0"
