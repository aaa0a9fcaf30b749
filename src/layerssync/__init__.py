"""Layers Sync - offline-first document synchronization engine."""

__version__ = "0.1.0"
