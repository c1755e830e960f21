"""Leader-side share distribution.

When the local operator is selected for an epoch, the orchestrator:
1. Resolves the ordered operator set from the peer directory
2. Aborts with quorum_unreachable if fewer than threshold peers are usable
3. Generates a fresh secret scalar and splits it into n Shamir shares
4. Self-tests the share set by reconstructing from two threshold subsets
5. Signs one envelope per peer and fans the envelopes out with bounded
   concurrency, a per-attempt timeout and bounded retries
6. Reports a DistributionResult judged against the threshold, not against n

The secret is wiped as soon as the shares and the custody address exist; it
never reaches logs, results or any follower-visible structure.
"""

from __future__ import annotations

import asyncio
import enum
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from ember_node.api.metrics import DELIVERIES, DISTRIBUTION_DURATION, DISTRIBUTIONS
from ember_node.core.leadership import Epoch, same_identity
from ember_node.core.transport import DeliveryOutcome, is_final
from ember_node.errors import (
    DirectoryUnavailable,
    DuplicateShare,
    PartialFailure,
    QuorumUnreachable,
    ShareRejected,
)
from ember_node.utils.crypto import SecretScalar, Share, custody_address, reconstruct_secret, split_secret

if TYPE_CHECKING:
    from ember_node.core.directory import PeerDirectory, PeerRecord
    from ember_node.core.receiver import ShareReceiver
    from ember_node.core.signing import EnvelopeSigner, ShareEnvelope
    from ember_node.core.transport import ShareTransport

log = structlog.get_logger()


class DistributionStatus(enum.Enum):
    COMPLETE = "complete"
    PARTIAL_FAILURE = "partial_failure"
    QUORUM_UNREACHABLE = "quorum_unreachable"
    DIRECTORY_UNAVAILABLE = "directory_unavailable"
    FAILED = "failed"


@dataclass(frozen=True)
class PeerDelivery:
    """Final delivery outcome for one peer."""

    identity: str
    index: int
    outcome: DeliveryOutcome
    attempts: int
    status_code: int | None = None


@dataclass(frozen=True)
class DistributionResult:
    epoch: Epoch
    status: DistributionStatus
    threshold: int
    total_shares: int
    peers: tuple[PeerDelivery, ...] = ()
    custody_address: str = ""
    superseded: bool = False
    duration_s: float = 0.0
    detail: str = ""
    finished_at: float = field(default_factory=time.time)

    @property
    def delivered(self) -> int:
        return sum(1 for p in self.peers if p.outcome == DeliveryOutcome.DELIVERED)

    @property
    def threshold_met(self) -> bool:
        return self.delivered >= self.threshold

    def raise_for_status(self) -> None:
        """Raise the error class matching a non-complete status."""
        if self.status == DistributionStatus.QUORUM_UNREACHABLE:
            raise QuorumUnreachable(self.detail)
        if self.status == DistributionStatus.DIRECTORY_UNAVAILABLE:
            raise DirectoryUnavailable(self.detail)
        if self.status == DistributionStatus.PARTIAL_FAILURE:
            raise PartialFailure(self.detail)
        if self.status == DistributionStatus.FAILED:
            raise RuntimeError(self.detail)

    def summary(self) -> dict[str, Any]:
        """Operator-facing summary; carries no share material."""
        return {
            "epoch": self.epoch.id,
            "status": self.status.value,
            "delivered": self.delivered,
            "threshold": self.threshold,
            "total_shares": self.total_shares,
            "threshold_met": self.threshold_met,
            "superseded": self.superseded,
            "custody_address": self.custody_address,
            "duration_s": round(self.duration_s, 3),
            "detail": self.detail,
            "peers": [
                {
                    "identity": p.identity,
                    "index": p.index,
                    "outcome": p.outcome.value,
                    "attempts": p.attempts,
                }
                for p in self.peers
            ],
        }


def _self_test(shares: list[Share], secret: int, threshold: int) -> None:
    """Reconstruct from the first and last threshold subsets before anything leaves the node."""
    for subset in (shares[:threshold], shares[-threshold:]):
        if reconstruct_secret(subset, threshold) != secret:
            raise RuntimeError("Share set failed reconstruction self-test")


class DistributionOrchestrator:
    """Runs at most one distribution per epoch."""

    _RETRY_BACKOFF = 0.3  # seconds, doubles each attempt
    _PENDING_BACKOFF = 1.0  # seconds, doubles each re-send of a parked share

    def __init__(
        self,
        directory: PeerDirectory,
        transport: ShareTransport,
        signer: EnvelopeSigner,
        receiver: ShareReceiver | None,
        shares_total: int,
        threshold: int,
        concurrency: int = 4,
        retries: int = 2,
        pending_retries: int = 4,
        timeout: float = 10.0,
    ) -> None:
        self._directory = directory
        self._transport = transport
        self._signer = signer
        self._receiver = receiver
        self._n = shares_total
        self._t = threshold
        self._concurrency = concurrency
        self._retries = retries
        self._pending_retries = pending_retries
        self._timeout = timeout
        self._runs: dict[Epoch, asyncio.Task[DistributionResult]] = {}

    @property
    def local_identity(self) -> str:
        return self._signer.address

    def has_run(self, epoch: Epoch) -> bool:
        return epoch in self._runs

    async def distribute(
        self,
        epoch: Epoch,
        is_current: Callable[[], bool] = lambda: True,
    ) -> DistributionResult:
        """Distribute a fresh secret for `epoch`.

        A repeated call for the same epoch awaits the first run and returns its
        result; it never splits a second secret. `is_current` is polled before
        each retry; once it returns False no more retries are scheduled.
        """
        task = self._runs.get(epoch)
        if task is None:
            task = asyncio.create_task(self._run(epoch, is_current), name=f"distribute-{epoch.id}")
            self._runs[epoch] = task
        else:
            log.info("distribution_already_started", epoch=epoch.id)
        return await asyncio.shield(task)

    def forget_before(self, epoch: Epoch) -> None:
        """Drop finished runs for epochs older than `epoch`."""
        for old in [e for e, t in self._runs.items() if e < epoch and t.done()]:
            del self._runs[old]

    async def _run(self, epoch: Epoch, is_current: Callable[[], bool]) -> DistributionResult:
        start = time.monotonic()
        bound = log.bind(epoch=epoch.id)
        try:
            result = await self._distribute(epoch, is_current, start, bound)
        except Exception as e:
            bound.error("distribution_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            result = DistributionResult(
                epoch=epoch,
                status=DistributionStatus.FAILED,
                threshold=self._t,
                total_shares=self._n,
                superseded=not is_current(),
                duration_s=time.monotonic() - start,
                detail=f"{type(e).__name__}: {e}",
            )
        DISTRIBUTIONS.labels(status=result.status.value).inc()
        DISTRIBUTION_DURATION.observe(result.duration_s)
        return result

    async def _distribute(
        self,
        epoch: Epoch,
        is_current: Callable[[], bool],
        start: float,
        bound: Any,
    ) -> DistributionResult:
        try:
            peers = await self._directory.list_operators()
        except DirectoryUnavailable as e:
            bound.error("distribution_aborted_directory", error=str(e))
            return DistributionResult(
                epoch=epoch,
                status=DistributionStatus.DIRECTORY_UNAVAILABLE,
                threshold=self._t,
                total_shares=self._n,
                duration_s=time.monotonic() - start,
                detail=str(e),
            )

        if len(peers) < self._t:
            detail = f"{len(peers)} usable peers, threshold {self._t}"
            bound.error("distribution_quorum_unreachable", usable=len(peers), threshold=self._t)
            return DistributionResult(
                epoch=epoch,
                status=DistributionStatus.QUORUM_UNREACHABLE,
                threshold=self._t,
                total_shares=self._n,
                duration_s=time.monotonic() - start,
                detail=detail,
            )
        if len(peers) != self._n:
            bound.warning("peer_count_mismatch", usable=len(peers), configured=self._n)
        targets = peers[: self._n]

        secret = SecretScalar.generate()
        try:
            shares = split_secret(secret.value, self._n, self._t)
            _self_test(shares, secret.value, self._t)
            custody = custody_address(secret)
        finally:
            secret.wipe()

        envelopes = [
            self._signer.seal(epoch, peer.identity, shares[peer.index - 1], custody)
            for peer in targets
        ]
        shares.clear()
        bound.info("distribution_started", peers=len(targets), threshold=self._t, custody_address=custody)

        semaphore = asyncio.Semaphore(self._concurrency)
        deliveries = await asyncio.gather(
            *(self._deliver(peer, env, semaphore, is_current) for peer, env in zip(targets, envelopes))
        )

        delivered = sum(1 for d in deliveries if d.outcome == DeliveryOutcome.DELIVERED)
        status = DistributionStatus.COMPLETE if delivered >= self._t else DistributionStatus.PARTIAL_FAILURE
        superseded = not is_current()
        result = DistributionResult(
            epoch=epoch,
            status=status,
            threshold=self._t,
            total_shares=self._n,
            peers=tuple(deliveries),
            custody_address=custody,
            superseded=superseded,
            duration_s=time.monotonic() - start,
            detail="" if status == DistributionStatus.COMPLETE else f"{delivered} delivered, threshold {self._t}",
        )
        level = "info" if status == DistributionStatus.COMPLETE else "warning"
        getattr(bound, level)(
            "distribution_" + status.value,
            delivered=delivered,
            threshold=self._t,
            peers=len(targets),
            superseded=superseded,
            duration_s=round(result.duration_s, 3),
        )
        return result

    async def _deliver(
        self,
        peer: PeerRecord,
        envelope: ShareEnvelope,
        semaphore: asyncio.Semaphore,
        is_current: Callable[[], bool],
    ) -> PeerDelivery:
        """Send until the peer stores the share, rejects it for good, or both retry budgets run out.

        Failures draw on `retries`. A PENDING answer means the peer parked the
        share without storing it; those re-sends draw on `pending_retries` so a
        follower that has not yet seen the selection event gets time to catch up.
        """
        outcome = DeliveryOutcome.TIMED_OUT
        status_code: int | None = None
        attempts = 0
        failures_left = self._retries
        pending_left = self._pending_retries
        while True:
            attempts += 1
            async with semaphore:
                outcome, status_code = await self._attempt(peer, envelope)
            DELIVERIES.labels(outcome=outcome.value).inc()
            if is_final(outcome, status_code):
                break
            if outcome == DeliveryOutcome.PENDING:
                if pending_left == 0:
                    log.warning("delivery_still_pending", epoch=envelope.epoch.id, peer=peer.identity)
                    break
                pending_left -= 1
                delay = self._PENDING_BACKOFF * (2 ** (self._pending_retries - pending_left - 1))
            else:
                if failures_left == 0:
                    break
                failures_left -= 1
                delay = self._RETRY_BACKOFF * (2 ** (self._retries - failures_left - 1))
            if not is_current():
                log.info("delivery_retry_skipped_superseded", epoch=envelope.epoch.id, peer=peer.identity)
                break
            await asyncio.sleep(delay)
        return PeerDelivery(
            identity=peer.identity,
            index=peer.index,
            outcome=outcome,
            attempts=attempts,
            status_code=status_code,
        )

    async def _attempt(self, peer: PeerRecord, envelope: ShareEnvelope) -> tuple[DeliveryOutcome, int | None]:
        if self._receiver is not None and same_identity(peer.identity, self.local_identity):
            return self._deliver_locally(envelope)
        try:
            return await asyncio.wait_for(self._transport.send(peer, envelope), timeout=self._timeout)
        except TimeoutError:
            log.warning("share_send_timeout", peer=peer.identity, epoch=envelope.epoch.id, timeout_s=self._timeout)
            return DeliveryOutcome.TIMED_OUT, None

    def _deliver_locally(self, envelope: ShareEnvelope) -> tuple[DeliveryOutcome, int | None]:
        try:
            stored = self._receiver.accept(envelope)  # type: ignore[union-attr]
            if stored is None:
                return DeliveryOutcome.PENDING, 202
            return DeliveryOutcome.DELIVERED, 200
        except DuplicateShare as e:
            return (DeliveryOutcome.DELIVERED if e.matches_stored else DeliveryOutcome.REJECTED), 409
        except ShareRejected as e:
            log.error("local_share_rejected", epoch=envelope.epoch.id, error=str(e))
            return DeliveryOutcome.REJECTED, 400
