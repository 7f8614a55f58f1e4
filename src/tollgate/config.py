"""Explicit configuration for payment authorization.

Core functions receive a ``PaymentConfig`` through their arguments. Only the
CLI builds one from the environment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_NETWORK = "eip155:84532"

_CAIP_NETWORK_RE = re.compile(r"^eip155:(\d+)$")

LEGACY_NETWORKS = {
    "base": "eip155:8453",
    "base-sepolia": "eip155:84532",
    "ethereum": "eip155:1",
    "sepolia": "eip155:11155111",
    "arbitrum": "eip155:42161",
    "optimism": "eip155:10",
    "polygon": "eip155:137",
}

USDC_ADDRESSES = {
    1: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    10: "0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85",
    137: "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359",
    42161: "0xaf88d065e77c8cC2239327C5EDb3A432268e5831",
    8453: "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    11155111: "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
    84532: "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
}


def normalize_network(network: str) -> str:
    """Return the CAIP-2 form of a network name, chain id, or CAIP-2 string."""
    raw = network.strip().lower()
    if raw in LEGACY_NETWORKS:
        return LEGACY_NETWORKS[raw]
    if raw.isdigit():
        return f"eip155:{int(raw)}"
    match = _CAIP_NETWORK_RE.match(raw)
    if match is None:
        raise ValueError(f"Unsupported network format: {network}")
    return f"eip155:{int(match.group(1))}"


def network_to_chain_id(network: str) -> int:
    return int(normalize_network(network).split(":", 1)[1])


@dataclass(frozen=True)
class PaymentConfig:
    network: str = DEFAULT_NETWORK
    token_name: str = "USD Coin"
    token_version: str = "2"
    clock_skew_seconds: int = 30
    max_validity_seconds: int = 600
    payment_header: str = "X-PAYMENT"
    payment_required_header: str = "X-PAYMENT-REQUIRED"
    http_timeout_seconds: float = 30.0

    def __post_init__(self):
        object.__setattr__(self, "network", normalize_network(self.network))
        if self.clock_skew_seconds < 0:
            raise ValueError("clock_skew_seconds must be >= 0")
        if self.max_validity_seconds <= 0:
            raise ValueError("max_validity_seconds must be > 0")

    @property
    def chain_id(self) -> int:
        return network_to_chain_id(self.network)

    @property
    def default_asset(self) -> Optional[str]:
        return USDC_ADDRESSES.get(self.chain_id)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PaymentConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            network=env.get("TOLLGATE_NETWORK", defaults.network),
            token_name=env.get("TOLLGATE_TOKEN_NAME", defaults.token_name),
            token_version=env.get("TOLLGATE_TOKEN_VERSION", defaults.token_version),
            clock_skew_seconds=int(
                env.get("TOLLGATE_CLOCK_SKEW_SECONDS", defaults.clock_skew_seconds)
            ),
            max_validity_seconds=int(
                env.get("TOLLGATE_MAX_VALIDITY_SECONDS", defaults.max_validity_seconds)
            ),
            http_timeout_seconds=float(
                env.get("TOLLGATE_HTTP_TIMEOUT", defaults.http_timeout_seconds)
            ),
        )


def tollgate_home(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Directory for local key files, ledgers and the audit log."""
    env = os.environ if environ is None else environ
    configured = env.get("TOLLGATE_HOME")
    return Path(configured).expanduser() if configured else Path.home() / ".tollgate"
