"""Per-epoch leadership state.

Every selection event opens an epoch. The tracker records, per epoch, who the
leader is and what role the local operator plays; it is the only place the
node keeps leadership state. The event monitor writes it; the share receiver
listens for new records to settle shares that arrived early.
"""

from __future__ import annotations

import enum
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

log = structlog.get_logger()


@dataclass(frozen=True, order=True)
class Epoch:
    """Identity of one selection event: its position in the chain log order."""

    block_number: int
    log_index: int
    tx_hash: str = field(default="", compare=False)

    @property
    def id(self) -> str:
        return f"{self.block_number}:{self.log_index}"

    @classmethod
    def parse(cls, epoch_id: str, tx_hash: str = "") -> Epoch:
        """Parse a "block:log_index" identifier."""
        try:
            block, index = epoch_id.split(":")
            epoch = cls(block_number=int(block), log_index=int(index), tx_hash=tx_hash)
        except (ValueError, AttributeError):
            raise ValueError(f"Invalid epoch id: {epoch_id!r}")
        if epoch.block_number < 0 or epoch.log_index < 0:
            raise ValueError(f"Invalid epoch id: {epoch_id!r}")
        return epoch

    def __str__(self) -> str:
        return self.id


class Role(enum.Enum):
    LEADER = "leader"
    FOLLOWER = "follower"


@dataclass(frozen=True)
class LeaderRecord:
    """Who led an epoch, as seen by the local operator."""

    epoch: Epoch
    identity: str
    local: bool
    recorded_at: float = field(default_factory=time.time, compare=False)

    @property
    def role(self) -> Role:
        return Role.LEADER if self.local else Role.FOLLOWER


def same_identity(a: str, b: str) -> bool:
    return a.lower() == b.lower()


class LeadershipTracker:
    """Bounded per-epoch leadership history for the local operator."""

    def __init__(self, local_identity: str, history: int = 256) -> None:
        self.local_identity = local_identity
        self._history = history
        self._records: OrderedDict[Epoch, LeaderRecord] = OrderedDict()
        self._bootstrap: str | None = None
        self._listeners: list[Callable[[LeaderRecord], None]] = []
        self._lock = threading.Lock()

    def add_listener(self, callback: Callable[[LeaderRecord], None]) -> None:
        """Call `callback` with every newly recorded LeaderRecord."""
        self._listeners.append(callback)

    def record(self, epoch: Epoch, leader: str) -> LeaderRecord:
        """Record the leader for an epoch.

        Recording the same leader twice is a no-op. A conflicting leader for an
        already-recorded epoch raises ValueError.
        """
        with self._lock:
            existing = self._records.get(epoch)
            if existing is not None:
                if not same_identity(existing.identity, leader):
                    raise ValueError(
                        f"Epoch {epoch} already led by {existing.identity}, not {leader}"
                    )
                return existing
            rec = LeaderRecord(epoch=epoch, identity=leader, local=same_identity(leader, self.local_identity))
            self._records[epoch] = rec
            # Keep the history in epoch order regardless of arrival order
            if len(self._records) > 1 and next(reversed(self._records)) != max(self._records):
                self._records = OrderedDict(sorted(self._records.items()))
            while len(self._records) > self._history:
                self._records.popitem(last=False)
        log.debug("leader_recorded", epoch=epoch.id, leader=leader, local=rec.local)
        for callback in self._listeners:
            try:
                callback(rec)
            except Exception:
                log.error("leader_listener_error", epoch=epoch.id, exc_info=True)
        return rec

    def bootstrap(self, leader: str) -> None:
        """Seed the current leader from the registry before any event is seen."""
        with self._lock:
            self._bootstrap = leader

    def leader_for(self, epoch: Epoch) -> LeaderRecord | None:
        with self._lock:
            return self._records.get(epoch)

    def role_for(self, epoch: Epoch) -> Role | None:
        rec = self.leader_for(epoch)
        return rec.role if rec else None

    @property
    def latest(self) -> LeaderRecord | None:
        """LeaderRecord of the newest known epoch."""
        with self._lock:
            if not self._records:
                return None
            return next(reversed(self._records.values()))

    @property
    def current_leader(self) -> str | None:
        """Identity of the most recently announced leader (bootstrap value if no epoch seen)."""
        latest = self.latest
        if latest is not None:
            return latest.identity
        with self._lock:
            return self._bootstrap
