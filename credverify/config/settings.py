"""
Client settings from environment variables and .env files.

ClientSettings is a plain dataclass whose defaults read the environment, so
tests and callers can construct isolated instances with explicit values.
Out-of-range numbers are clamped in __post_init__; missing secrets are
reported when the component that needs them is built, not here.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from credverify.config.env import (
    get_attestation_program_id,
    get_solana_rpc_url,
    get_solana_ws_url,
    load_credverify_env,
    parse_bool_env,
    parse_float_env,
    parse_int_env,
)

DEFAULT_CONFIRM_TIMEOUT_SEC = 30.0
DEFAULT_CONFIRM_POLL_INTERVAL_SEC = 1.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY_SEC = 1.0
DEFAULT_RETRY_MAX_DELAY_SEC = 30.0
DEFAULT_RETRY_JITTER_FRACTION = 0.1
DEFAULT_SESSION_TIMEOUT_SEC = 3600.0
DEFAULT_RECONNECT_BASE_DELAY_SEC = 1.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5
DEFAULT_RATE_LIMIT_CAPACITY = 100
DEFAULT_RATE_LIMIT_INTERVAL_SEC = 3600.0
DEFAULT_BATCH_CHUNK_SIZE = 10
DEFAULT_BATCH_PAUSE_SEC = 0.5
DEFAULT_RPC_TIMEOUT_SEC = 15.0


def _env_str(name: str) -> str:
    load_credverify_env()
    return (os.getenv(name) or "").strip()


@dataclass
class ClientSettings:
    """Typed settings for every credverify component."""

    rpc_url: str = field(default_factory=get_solana_rpc_url)
    ws_url: str = field(default_factory=get_solana_ws_url)
    program_id: str = field(default_factory=get_attestation_program_id)
    authority_private_key: str = field(default_factory=lambda: _env_str("SOLANA_PRIVATE_KEY"), repr=False)
    identity_salt: str = field(default_factory=lambda: _env_str("NIN_SALT"), repr=False)
    commitment: str = field(default_factory=lambda: _env_str("SOLANA_COMMITMENT") or "confirmed")
    rpc_timeout_sec: float = field(default_factory=lambda: parse_float_env("RPC_TIMEOUT_SEC", DEFAULT_RPC_TIMEOUT_SEC))

    confirm_timeout_sec: float = field(default_factory=lambda: parse_float_env("CONFIRM_TIMEOUT_SEC", DEFAULT_CONFIRM_TIMEOUT_SEC))
    confirm_poll_interval_sec: float = field(
        default_factory=lambda: parse_float_env("CONFIRM_POLL_INTERVAL_SEC", DEFAULT_CONFIRM_POLL_INTERVAL_SEC)
    )
    max_retries: int = field(default_factory=lambda: parse_int_env("MAX_RETRIES", DEFAULT_MAX_RETRIES))
    retry_base_delay_sec: float = field(default_factory=lambda: parse_float_env("RETRY_BASE_DELAY_SEC", DEFAULT_RETRY_BASE_DELAY_SEC))
    retry_max_delay_sec: float = field(default_factory=lambda: parse_float_env("RETRY_MAX_DELAY_SEC", DEFAULT_RETRY_MAX_DELAY_SEC))
    retry_jitter_fraction: float = DEFAULT_RETRY_JITTER_FRACTION

    sas_api_key: str = field(default_factory=lambda: _env_str("SAS_API_KEY"), repr=False)
    sas_auth_endpoint: str = field(default_factory=lambda: _env_str("SAS_AUTH_ENDPOINT"))
    sas_ws_endpoint: str = field(default_factory=lambda: _env_str("SAS_WS_ENDPOINT"))
    sas_session_timeout_sec: float = field(default_factory=lambda: parse_float_env("SAS_SESSION_TIMEOUT", DEFAULT_SESSION_TIMEOUT_SEC))
    sas_auto_refresh: bool = field(default_factory=lambda: parse_bool_env("SAS_AUTO_REFRESH", True))
    reconnect_base_delay_sec: float = DEFAULT_RECONNECT_BASE_DELAY_SEC
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS

    rate_limit_capacity: int = field(default_factory=lambda: parse_int_env("RATE_LIMIT_CAPACITY", DEFAULT_RATE_LIMIT_CAPACITY))
    rate_limit_interval_sec: float = field(
        default_factory=lambda: parse_float_env("RATE_LIMIT_INTERVAL_SEC", DEFAULT_RATE_LIMIT_INTERVAL_SEC)
    )
    batch_chunk_size: int = DEFAULT_BATCH_CHUNK_SIZE
    batch_pause_sec: float = DEFAULT_BATCH_PAUSE_SEC

    def __post_init__(self) -> None:
        if self.confirm_timeout_sec <= 0:
            self.confirm_timeout_sec = DEFAULT_CONFIRM_TIMEOUT_SEC
        if self.confirm_poll_interval_sec <= 0:
            self.confirm_poll_interval_sec = DEFAULT_CONFIRM_POLL_INTERVAL_SEC
        if self.max_retries < 1:
            self.max_retries = 1
        if self.retry_base_delay_sec < 0:
            self.retry_base_delay_sec = 0.0
        if self.retry_max_delay_sec < self.retry_base_delay_sec:
            self.retry_max_delay_sec = self.retry_base_delay_sec
        if self.sas_session_timeout_sec <= 0:
            self.sas_session_timeout_sec = DEFAULT_SESSION_TIMEOUT_SEC
        if self.max_reconnect_attempts < 0:
            self.max_reconnect_attempts = 0
        if self.rate_limit_capacity < 1:
            self.rate_limit_capacity = 1
        if self.rate_limit_interval_sec <= 0:
            self.rate_limit_interval_sec = DEFAULT_RATE_LIMIT_INTERVAL_SEC
        if self.batch_chunk_size < 1:
            self.batch_chunk_size = DEFAULT_BATCH_CHUNK_SIZE

    @property
    def sas_enabled(self) -> bool:
        return bool(self.sas_auth_endpoint)


def get_settings() -> ClientSettings:
    """Return settings resolved from the current environment."""
    return ClientSettings()
