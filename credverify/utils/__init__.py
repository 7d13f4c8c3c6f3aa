"""Shared helpers: address parsing and per-caller rate limiting."""
