"""Follower share receiver.

Inbound entry point for shares addressed to the local operator. A follower
validates and stores its share; it never reconstructs anything.

A share can arrive before this node has seen the selection event that made
its sender leader. Such shares are parked (signature, index and recipient
already checked) and settled once the event monitor records the epoch's
leader: kept if the signer is that leader, dropped otherwise. Parked shares
live in memory only, so a sender must not treat one as stored.
"""

from __future__ import annotations

import threading
from collections import OrderedDict

import structlog

from ember_node.api.metrics import SHARES_ACCEPTED, SHARES_REJECTED
from ember_node.core.leadership import Epoch, LeaderRecord, LeadershipTracker, same_identity
from ember_node.core.shares import ShareStore, StoredShare
from ember_node.core.signing import ShareEnvelope, verify_envelope
from ember_node.errors import (
    DuplicateShare,
    InvalidShare,
    InvalidSignature,
    ShareRejected,
    StaleShare,
    UnexpectedSender,
)
from ember_node.utils import field

log = structlog.get_logger()

_REJECT_REASONS: tuple[tuple[type[ShareRejected], str], ...] = (
    (DuplicateShare, "duplicate"),
    (StaleShare, "stale"),
    (InvalidSignature, "signature"),
    (UnexpectedSender, "sender"),
    (InvalidShare, "invalid"),
)


def _reason(exc: ShareRejected) -> str:
    for cls, reason in _REJECT_REASONS:
        if isinstance(exc, cls):
            return reason
    return "other"


class ShareReceiver:
    """Validates inbound share envelopes and stores accepted ones by epoch."""

    MAX_PENDING_EPOCHS = 16
    MAX_PENDING_PER_EPOCH = 4

    def __init__(
        self,
        store: ShareStore,
        tracker: LeadershipTracker,
        shares_total: int,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._shares_total = shares_total
        self._pending: OrderedDict[Epoch, list[ShareEnvelope]] = OrderedDict()
        self._pending_lock = threading.Lock()
        tracker.add_listener(self._on_leader_recorded)

    @property
    def local_identity(self) -> str:
        return self._tracker.local_identity

    def accept(self, envelope: ShareEnvelope) -> StoredShare | None:
        """Validate and store one share.

        Returns the stored share, or None when the share was parked until the
        epoch's leader is known. Raises a ShareRejected subclass on refusal;
        other peers and the event monitor are unaffected either way.
        """
        try:
            self._check_envelope(envelope)
            known = self._tracker.leader_for(envelope.epoch)
            if known is None:
                self._park(envelope)
                return None
            return self._settle(envelope, known)
        except ShareRejected as e:
            SHARES_REJECTED.labels(reason=_reason(e)).inc()
            raise

    def _check_envelope(self, envelope: ShareEnvelope) -> None:
        epoch = envelope.epoch
        if not verify_envelope(envelope):
            log.warning("share_bad_signature", epoch=epoch.id, sender=envelope.sender)
            raise InvalidSignature(f"Signature does not match sender {envelope.sender}")
        if not 1 <= envelope.share.x <= self._shares_total:
            raise InvalidShare(f"Share index {envelope.share.x} outside 1..{self._shares_total}")
        if not field.is_element(envelope.share.y):
            raise InvalidShare("Share value is not a field element")
        if not same_identity(envelope.recipient, self.local_identity):
            raise InvalidShare(f"Share is addressed to {envelope.recipient}, not this operator")
        latest = self._store.latest()
        if latest is not None and epoch < latest.epoch:
            raise StaleShare(f"Epoch {epoch.id} is older than stored epoch {latest.epoch.id}")

    def _settle(self, envelope: ShareEnvelope, leader: LeaderRecord) -> StoredShare:
        epoch = envelope.epoch
        if not same_identity(leader.identity, envelope.sender):
            log.warning("share_unexpected_sender", epoch=epoch.id, sender=envelope.sender, leader=leader.identity)
            raise UnexpectedSender(f"Epoch {epoch.id} is led by {leader.identity}, not {envelope.sender}")

        record = StoredShare(
            epoch=epoch,
            share=envelope.share,
            leader=envelope.sender,
            custody_address=envelope.custody_address,
            signature=envelope.signature,
        )
        self._store.store(record)
        SHARES_ACCEPTED.inc()
        log.info(
            "share_accepted",
            epoch=epoch.id,
            index=envelope.share.x,
            leader=envelope.sender,
            custody_address=envelope.custody_address,
        )
        return record

    def _park(self, envelope: ShareEnvelope) -> None:
        with self._pending_lock:
            queue = self._pending.setdefault(envelope.epoch, [])
            # A re-send of a parked share refreshes it instead of taking another slot
            self._pending.move_to_end(envelope.epoch)
            if envelope in queue:
                log.info("share_pending_resent", epoch=envelope.epoch.id, sender=envelope.sender)
                return
            if len(queue) >= self.MAX_PENDING_PER_EPOCH:
                raise InvalidShare(f"Too many unconfirmed shares for epoch {envelope.epoch.id}")
            queue.append(envelope)
            while len(self._pending) > self.MAX_PENDING_EPOCHS:
                dropped, _ = self._pending.popitem(last=False)
                log.warning("pending_shares_evicted", epoch=dropped.id)
        log.info("share_pending_leader", epoch=envelope.epoch.id, sender=envelope.sender)

    def _on_leader_recorded(self, leader: LeaderRecord) -> None:
        with self._pending_lock:
            waiting = self._pending.pop(leader.epoch, [])
        for envelope in waiting:
            if not same_identity(envelope.sender, leader.identity):
                SHARES_REJECTED.labels(reason="sender").inc()
                log.warning(
                    "pending_share_dropped",
                    epoch=leader.epoch.id,
                    sender=envelope.sender,
                    leader=leader.identity,
                )
                continue
            try:
                self._settle(envelope, leader)
            except ShareRejected as e:
                SHARES_REJECTED.labels(reason=_reason(e)).inc()
                log.warning("pending_share_rejected", epoch=leader.epoch.id, reason=_reason(e), error=str(e))

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return sum(len(q) for q in self._pending.values())

    def current(self) -> StoredShare | None:
        """The share held for the newest epoch, if any."""
        return self._store.latest()
