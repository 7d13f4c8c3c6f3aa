"""
Environment variable loading and validation for credverify.

- SOLANA_NETWORK: devnet | mainnet (default: devnet)
- SOLANA_RPC_URL: RPC endpoint (read from .env)
- SOLANA_WS_URL: RPC websocket endpoint (derived from SOLANA_RPC_URL when unset)
- ATTESTATION_PROGRAM_ID: program that owns attestation accounts
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is credverify/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

DEVNET_RPC_URL = "https://api.devnet.solana.com"
MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"

# Placeholder until the attestation program is deployed; override via env.
DEFAULT_ATTESTATION_PROGRAM_ID = "11111111111111111111111111111111"


def load_credverify_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides set vars."""
    load_dotenv(_ENV_PATH, override=False)


def parse_bool_env(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    return default


def parse_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def parse_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_solana_network() -> str:
    """
    Return SOLANA_NETWORK from env: devnet | mainnet.
    Default: devnet.
    """
    load_credverify_env()
    raw = (os.getenv("SOLANA_NETWORK") or os.getenv("SOLANA_CLUSTER") or "devnet").strip().lower()
    if raw in ("mainnet", "mainnet-beta"):
        return "mainnet"
    return "devnet"


def get_solana_rpc_url() -> str:
    """
    Resolve Solana RPC URL from env.
    Order: SOLANA_RPC_URL > devnet/mainnet default.
    """
    load_credverify_env()
    url = (os.getenv("SOLANA_RPC_URL") or "").strip()
    if url:
        return url
    return DEVNET_RPC_URL if get_solana_network() == "devnet" else MAINNET_RPC_URL


def http_url_to_ws(url: str) -> str:
    """Convert https:// or http:// to wss:// or ws:// for websocket subscriptions."""
    s = url.strip()
    if s.startswith("https://"):
        return "wss://" + s[8:]
    if s.startswith("http://"):
        return "ws://" + s[7:]
    return s


def get_solana_ws_url() -> str:
    """SOLANA_WS_URL, else the RPC URL with its scheme swapped to ws(s)."""
    load_credverify_env()
    url = (os.getenv("SOLANA_WS_URL") or "").strip()
    if url:
        return url
    return http_url_to_ws(get_solana_rpc_url())


def get_attestation_program_id() -> str:
    """ATTESTATION_PROGRAM_ID from env, or the placeholder default."""
    load_credverify_env()
    pid = (os.getenv("ATTESTATION_PROGRAM_ID") or "").strip()
    return pid or DEFAULT_ATTESTATION_PROGRAM_ID


def is_devnet() -> bool:
    """Return True if SOLANA_NETWORK is devnet."""
    return get_solana_network() == "devnet"
