"""Peer directory: the ordered operator set for one distribution.

Builds a fresh, immutable list of PeerRecords from the registry every time it
is asked. Records are ordered by operator identity so every node derives the
same index-to-operator mapping without negotiation.
"""

from __future__ import annotations

import asyncio
import ipaddress
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import structlog

from ember_node.api.metrics import DIRECTORY_FAILURES
from ember_node.errors import DirectoryUnavailable

if TYPE_CHECKING:
    from ember_node.chain.contracts import ChainClient

log = structlog.get_logger()


@dataclass(frozen=True)
class PeerRecord:
    identity: str  # checksummed operator address
    endpoint: str  # base URL, e.g. http://10.0.0.5:8431
    index: int  # Shamir evaluation point, 1-based

    @property
    def breaker_name(self) -> str:
        return f"peer_{self.identity.lower()}"


def normalize_endpoint(raw: str, default_port: int, allow_private: bool = False) -> str | None:
    """Turn a registered endpoint (IP, host:port or URL) into a base URL.

    Returns None for anything unusable: empty values, unparseable values, a
    path component, or a loopback/private/unspecified IP when allow_private
    is off.
    """
    value = raw.strip()
    if not value:
        return None
    if "://" not in value:
        value = f"http://{value}"
    try:
        parts = urlsplit(value)
        host = parts.hostname
        port = parts.port or default_port
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not host:
        return None
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        return None

    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        ip = None
    if ip is not None:
        if ip.is_unspecified:
            return None
        if not allow_private and not ip.is_global:
            return None
        host_part = f"[{host}]" if ip.version == 6 else host
    else:
        if not allow_private and host.lower() == "localhost":
            return None
        host_part = host
    return f"{parts.scheme}://{host_part}:{port}"


class PeerDirectory:
    """Resolves the operator set and endpoints through the registry."""

    def __init__(
        self,
        chain: ChainClient,
        retries: int = 3,
        backoff: float = 0.5,
        default_port: int = 8431,
        allow_private: bool = False,
    ) -> None:
        self._chain = chain
        self._retries = retries
        self._backoff = backoff
        self._default_port = default_port
        self._allow_private = allow_private

    async def list_operators(self) -> list[PeerRecord]:
        """Return the ordered operators that have a usable endpoint.

        Transient registry failures are retried with exponential backoff;
        exhausting the retries raises DirectoryUnavailable.
        """
        last_exc: Exception | None = None
        for attempt in range(self._retries + 1):
            try:
                return await self._query()
            except Exception as e:
                last_exc = e
                DIRECTORY_FAILURES.inc()
                if attempt < self._retries:
                    delay = self._backoff * (2**attempt)
                    log.warning(
                        "directory_query_failed_retrying",
                        attempt=attempt + 1,
                        delay_s=delay,
                        err=str(e),
                        error_type=type(e).__name__,
                    )
                    await asyncio.sleep(delay)
        log.error("directory_unavailable", attempts=self._retries + 1, err=str(last_exc))
        raise DirectoryUnavailable(f"Registry query failed after {self._retries + 1} attempts: {last_exc}")

    async def _query(self) -> list[PeerRecord]:
        operators = await self._chain.get_all_operators()

        unique: dict[str, str] = {}
        for op in operators:
            unique.setdefault(op.lower(), op)

        usable: list[tuple[str, str]] = []
        for key in sorted(unique):
            identity = unique[key]
            try:
                raw = await self._chain.get_operator_endpoint(identity)
            except (ConnectionError, OSError, TimeoutError):
                # A dead RPC is a directory failure, not a missing endpoint
                raise
            except Exception as e:
                log.warning("operator_endpoint_lookup_failed", operator=identity, err=str(e))
                continue
            endpoint = normalize_endpoint(raw, self._default_port, self._allow_private)
            if endpoint is None:
                log.warning("operator_excluded_no_endpoint", operator=identity, registered=raw)
                continue
            usable.append((identity, endpoint))

        peers = [
            PeerRecord(identity=identity, endpoint=endpoint, index=i)
            for i, (identity, endpoint) in enumerate(usable, start=1)
        ]
        log.info("directory_resolved", registered=len(unique), usable=len(peers))
        return peers
