"""Operator node configuration loaded from environment variables."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
KNOWN_NETWORKS = ("local", "testnet", "mainnet")


def _int_env(key: str, default: str) -> int:
    val = os.getenv(key, default)
    try:
        return int(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid integer for {key}: {val!r}")


def _float_env(key: str, default: str) -> float:
    val = os.getenv(key, default)
    try:
        return float(val)
    except (ValueError, TypeError, OverflowError):
        raise ValueError(f"Invalid float for {key}: {val!r}")


@dataclass(frozen=True)
class Config:
    network: str = os.getenv("NETWORK", "local")

    # Operator identity (hex secp256k1 key; identity is its Ethereum address)
    operator_private_key: str = os.getenv("OPERATOR_PRIVATE_KEY", "")

    # Chain (comma-separated URLs for failover)
    rpc_url: str = os.getenv("RPC_URL", "http://localhost:8545")
    chain_id: int = _int_env("CHAIN_ID", "1337")

    @property
    def rpc_urls(self) -> list[str]:
        """Parse comma-separated RPC URLs for failover support."""
        return [u.strip() for u in self.rpc_url.split(",") if u.strip()]

    # Registry contract emitting OperatorSelected; the directory defaults to it
    registry_address: str = os.getenv("REGISTRY_ADDRESS", "")
    directory_address_override: str = os.getenv("DIRECTORY_ADDRESS", "")

    @property
    def directory_address(self) -> str:
        return self.directory_address_override or self.registry_address

    # Selection event subscription
    event_poll_interval: float = _float_env("EVENT_POLL_INTERVAL", "2.0")
    event_start_block: int = _int_env("EVENT_START_BLOCK", "-1")
    resubscribe_backoff_max: float = _float_env("RESUBSCRIBE_BACKOFF_MAX", "60.0")

    # Threshold scheme
    shares_total: int = _int_env("SHARES_TOTAL", "5")
    shares_threshold: int = _int_env("SHARES_THRESHOLD", "3")

    # Share delivery
    delivery_timeout: float = _float_env("DELIVERY_TIMEOUT", "10.0")
    delivery_retries: int = _int_env("DELIVERY_RETRIES", "2")
    delivery_pending_retries: int = _int_env("DELIVERY_PENDING_RETRIES", "4")
    delivery_concurrency: int = _int_env("DELIVERY_CONCURRENCY", "4")

    # Peer directory
    directory_retries: int = _int_env("DIRECTORY_RETRIES", "3")
    directory_backoff: float = _float_env("DIRECTORY_BACKOFF", "0.5")
    default_peer_port: int = _int_env("DEFAULT_PEER_PORT", "8431")
    allow_private_endpoints_env: str = os.getenv("ALLOW_PRIVATE_ENDPOINTS", "")

    @property
    def allow_private_endpoints(self) -> bool:
        """Loopback/private peer endpoints are allowed off mainnet unless overridden."""
        if self.allow_private_endpoints_env:
            return self.allow_private_endpoints_env.strip().lower() in ("1", "true", "yes", "on")
        return self.network != "mainnet"

    # Node API
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = _int_env("API_PORT", "8431")
    rate_limit_capacity: int = _int_env("RATE_LIMIT_CAPACITY", "60")
    rate_limit_rate: int = _int_env("RATE_LIMIT_RATE", "10")

    # Storage
    data_dir: str = os.getenv("DATA_DIR", "data")

    def validate(self, *, strict: bool | None = None) -> list[str]:
        """Validate config at startup. Returns list of warnings (empty = all good).

        Args:
            strict: If True, raise ValueError on any warning. Defaults to True
                    on mainnet.
        """
        if strict is None:
            strict = self.network == "mainnet"

        warnings: list[str] = []
        if self.network not in KNOWN_NETWORKS:
            warnings.append(f"NETWORK={self.network!r} is not a recognized network ({', '.join(KNOWN_NETWORKS)})")
        if not self.operator_private_key:
            raise ValueError("OPERATOR_PRIVATE_KEY must be set; it defines the operator identity")
        if not _PRIVATE_KEY_RE.match(self.operator_private_key):
            raise ValueError("OPERATOR_PRIVATE_KEY must be a 32-byte hex string (with optional 0x prefix)")
        if not self.rpc_urls:
            raise ValueError("RPC_URL must contain at least one URL")
        for url in self.rpc_urls:
            if not url.startswith(("http://", "https://")):
                raise ValueError(f"RPC_URL entries must start with http:// or https://, got {url!r}")

        # Discovery and selection must both point at real, configured contracts
        if not self.registry_address:
            raise ValueError("REGISTRY_ADDRESS must be set")
        for name, addr in (("REGISTRY_ADDRESS", self.registry_address), ("DIRECTORY_ADDRESS", self.directory_address)):
            if not _ADDRESS_RE.match(addr):
                raise ValueError(f"{name} is not a valid Ethereum address: {addr!r}")
            if int(addr, 16) == 0:
                raise ValueError(f"{name} must not be the zero address")
        if self.directory_address.lower() != self.registry_address.lower():
            warnings.append(
                "DIRECTORY_ADDRESS differs from REGISTRY_ADDRESS: peers are discovered "
                "from a different contract than the one emitting selection events"
            )

        if self.shares_threshold < 1:
            raise ValueError(f"SHARES_THRESHOLD must be >= 1, got {self.shares_threshold}")
        if self.shares_threshold > self.shares_total:
            raise ValueError(
                f"SHARES_THRESHOLD ({self.shares_threshold}) must not exceed SHARES_TOTAL ({self.shares_total})"
            )
        if self.shares_threshold == 1 and self.shares_total > 1:
            warnings.append("SHARES_THRESHOLD=1: every share alone reveals the secret")

        if self.delivery_timeout <= 0 or self.delivery_timeout > 120.0:
            raise ValueError(f"DELIVERY_TIMEOUT must be in (0, 120], got {self.delivery_timeout}")
        if self.delivery_retries < 0 or self.delivery_retries > 10:
            raise ValueError(f"DELIVERY_RETRIES must be 0-10, got {self.delivery_retries}")
        if self.delivery_pending_retries < 0 or self.delivery_pending_retries > 10:
            raise ValueError(f"DELIVERY_PENDING_RETRIES must be 0-10, got {self.delivery_pending_retries}")
        if self.delivery_concurrency < 1 or self.delivery_concurrency > 64:
            raise ValueError(f"DELIVERY_CONCURRENCY must be 1-64, got {self.delivery_concurrency}")
        if self.directory_retries < 0:
            raise ValueError(f"DIRECTORY_RETRIES must be >= 0, got {self.directory_retries}")
        if self.event_poll_interval <= 0:
            raise ValueError(f"EVENT_POLL_INTERVAL must be > 0, got {self.event_poll_interval}")
        if self.resubscribe_backoff_max < 1.0:
            raise ValueError(f"RESUBSCRIBE_BACKOFF_MAX must be >= 1.0, got {self.resubscribe_backoff_max}")
        for name, port in (("API_PORT", self.api_port), ("DEFAULT_PEER_PORT", self.default_peer_port)):
            if port < 1 or port > 65535:
                raise ValueError(f"{name} must be 1-65535, got {port}")
        if self.rate_limit_capacity < 1:
            raise ValueError(f"RATE_LIMIT_CAPACITY must be >= 1, got {self.rate_limit_capacity}")
        if self.rate_limit_rate < 1:
            raise ValueError(f"RATE_LIMIT_RATE must be >= 1, got {self.rate_limit_rate}")
        if self.network == "mainnet" and self.allow_private_endpoints:
            warnings.append("ALLOW_PRIVATE_ENDPOINTS is on for mainnet; peers may point at internal hosts")

        if strict and warnings:
            raise ValueError("Config validation failed in strict mode:\n" + "\n".join(f"  - {w}" for w in warnings))
        return warnings
