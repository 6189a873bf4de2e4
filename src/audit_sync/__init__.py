"""Offline-first reconciliation for inspection audits."""

__version__ = "0.3.0"
