"""HTTP delivery transport for share envelopes.

A single send is one POST of the envelope to ``{endpoint}/v1/share`` and maps
to exactly one DeliveryOutcome. Retrying is the orchestrator's decision.

The share value is sealed to the recipient's operator key before it leaves
the node. The key is fetched once from ``{endpoint}/v1/identity`` and only
trusted if it hashes to the operator address the registry lists for the peer.
"""

from __future__ import annotations

import enum
from typing import Protocol

import httpx
import structlog

from ember_node.core.directory import PeerRecord
from ember_node.core.leadership import same_identity
from ember_node.core.signing import ShareEnvelope
from ember_node.errors import PeerKeyMismatch
from ember_node.utils.circuit_breaker import CircuitBreaker
from ember_node.utils.sealing import address_from_public_key, seal_value

log = structlog.get_logger()


class DeliveryOutcome(enum.Enum):
    DELIVERED = "delivered"
    PENDING = "pending"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


# Rejections the peer will repeat no matter how often we retry
_FINAL_REJECT_STATUSES = frozenset({400, 401, 403, 409, 422})


def is_final(outcome: DeliveryOutcome, status_code: int | None) -> bool:
    """True when retrying the same envelope cannot change the outcome.

    PENDING is never final: the follower only parked the share in memory and
    has not stored it, so the sender keeps asking until it gets a 200.
    """
    if outcome == DeliveryOutcome.DELIVERED:
        return True
    return outcome == DeliveryOutcome.REJECTED and status_code in _FINAL_REJECT_STATUSES


def _matches_stored(resp: httpx.Response) -> bool:
    try:
        return bool(resp.json().get("matches_stored", False))
    except (ValueError, AttributeError):
        return False


class ShareTransport(Protocol):
    async def send(self, peer: PeerRecord, envelope: ShareEnvelope) -> tuple[DeliveryOutcome, int | None]: ...


class HttpShareTransport:
    """Delivers sealed envelopes over HTTP with a per-peer circuit breaker."""

    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=100)
        self._http = client or httpx.AsyncClient(timeout=timeout, limits=limits)
        self._breakers: dict[str, CircuitBreaker] = {}
        self._public_keys: dict[str, bytes] = {}

    async def close(self) -> None:
        """Release the shared HTTP client."""
        await self._http.aclose()

    def _breaker(self, peer: PeerRecord) -> CircuitBreaker:
        if peer.identity not in self._breakers:
            self._breakers[peer.identity] = CircuitBreaker(
                name=peer.breaker_name,
                failure_threshold=3,
                recovery_timeout=20.0,
            )
        return self._breakers[peer.identity]

    async def _public_key(self, peer: PeerRecord, headers: dict[str, str]) -> bytes:
        """The peer's operator public key, checked against its registered address."""
        key = self._public_keys.get(peer.identity)
        if key is not None:
            return key
        resp = await self._http.get(f"{peer.endpoint}/v1/identity", headers=headers)
        resp.raise_for_status()
        try:
            data = resp.json()
            key = bytes.fromhex(data["public_key"].removeprefix("0x"))
            derived = address_from_public_key(key)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise PeerKeyMismatch(f"Unusable public key from {peer.identity}: {e}") from e
        if not same_identity(derived, peer.identity):
            raise PeerKeyMismatch(f"Endpoint key belongs to {derived}, not {peer.identity}")
        self._public_keys[peer.identity] = key
        return key

    async def send(self, peer: PeerRecord, envelope: ShareEnvelope) -> tuple[DeliveryOutcome, int | None]:
        """POST one sealed envelope. Returns (outcome, HTTP status or None)."""
        breaker = self._breaker(peer)
        if not breaker.allow_request():
            log.warning("share_send_skipped_breaker_open", peer=peer.identity, epoch=envelope.epoch.id)
            return DeliveryOutcome.TIMED_OUT, None

        headers = {}
        ctx = structlog.contextvars.get_contextvars()
        if "request_id" in ctx:
            headers["X-Request-ID"] = ctx["request_id"]

        try:
            public_key = await self._public_key(peer, headers)
            sealed = seal_value(envelope.share.y, public_key, envelope.context)
            resp = await self._http.post(
                f"{peer.endpoint}/v1/share",
                json=envelope.to_payload(sealed),
                headers=headers,
            )
        except PeerKeyMismatch as e:
            breaker.record_success()
            log.error("share_send_peer_key_mismatch", peer=peer.identity, epoch=envelope.epoch.id, error=str(e))
            return DeliveryOutcome.REJECTED, 403
        except httpx.TimeoutException as e:
            breaker.record_failure()
            log.warning("share_send_timeout", peer=peer.identity, epoch=envelope.epoch.id, error=str(e))
            return DeliveryOutcome.TIMED_OUT, None
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status >= 500:
                breaker.record_failure()
            log.warning("share_send_identity_unavailable", peer=peer.identity, epoch=envelope.epoch.id, status=status)
            return DeliveryOutcome.REJECTED, status
        except httpx.HTTPError as e:
            breaker.record_failure()
            log.warning("share_send_transport_error", peer=peer.identity, epoch=envelope.epoch.id, error=str(e))
            return DeliveryOutcome.TIMED_OUT, None

        if resp.status_code >= 500:
            breaker.record_failure()
        else:
            breaker.record_success()
        if resp.status_code == 202:
            log.info("share_pending_at_peer", peer=peer.identity, epoch=envelope.epoch.id)
            return DeliveryOutcome.PENDING, resp.status_code
        if 200 <= resp.status_code < 300:
            return DeliveryOutcome.DELIVERED, resp.status_code
        if resp.status_code == 409 and _matches_stored(resp):
            # An earlier attempt landed even though we never saw its response
            log.info("share_already_held", peer=peer.identity, epoch=envelope.epoch.id)
            return DeliveryOutcome.DELIVERED, resp.status_code
        log.warning(
            "share_send_rejected",
            peer=peer.identity,
            epoch=envelope.epoch.id,
            status=resp.status_code,
            detail=resp.text[:200],
        )
        return DeliveryOutcome.REJECTED, resp.status_code
