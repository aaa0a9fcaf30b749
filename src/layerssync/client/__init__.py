"""Layers sync client: local store, sync engine, platform adapters and CLI."""
