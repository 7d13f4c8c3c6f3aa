"""
Configuration management for credverify.

Loads and validates settings from environment variables and an optional
.env file. ClientSettings is the single source of truth for endpoints,
timeouts, retry policy and rate limits.
"""

from credverify.config.settings import ClientSettings, get_settings  # noqa: F401

__all__ = ["ClientSettings", "get_settings"]
