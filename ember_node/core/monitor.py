"""Selection event monitor.

Consumes OperatorSelected logs one at a time, classifies the local operator
as leader or follower for each new epoch and, when leader, starts a share
distribution as a supervised task. Subscription failures never stop the
monitor: it resubscribes with capped, jittered exponential backoff.
"""

from __future__ import annotations

import asyncio
import enum
import random
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog

from ember_node.api.metrics import MONITOR_STATE, SELECTION_EVENTS, SUBSCRIPTION_RECONNECTS
from ember_node.chain.events import SelectionEvent, decode_selection_log
from ember_node.core.leadership import Epoch, LeadershipTracker, Role
from ember_node.errors import MalformedEvent

if TYPE_CHECKING:
    from ember_node.chain.contracts import ChainClient
    from ember_node.chain.events import SelectionEventSource
    from ember_node.core.distribution import DistributionOrchestrator, DistributionResult

log = structlog.get_logger()


class MonitorState(enum.Enum):
    DISCONNECTED = "disconnected"
    LISTENING = "listening"
    PROCESSING_EVENT = "processing_event"


class SelectionMonitor:
    """Long-running consumer of selection events."""

    _BACKOFF_BASE = 1.0
    _CRITICAL_AFTER = 10
    _KEEP_RESULTS = 64

    def __init__(
        self,
        source: SelectionEventSource,
        tracker: LeadershipTracker,
        orchestrator: DistributionOrchestrator,
        chain: ChainClient | None = None,
        backoff_max: float = 60.0,
    ) -> None:
        self._source = source
        self._tracker = tracker
        self._orchestrator = orchestrator
        self._chain = chain
        self._backoff_max = backoff_max
        self._state = MonitorState.DISCONNECTED
        self._current: Epoch | None = None
        self._tasks: dict[Epoch, asyncio.Task[DistributionResult]] = {}
        self._results: dict[Epoch, DistributionResult] = {}
        self._stopping = False
        self._set_state(MonitorState.DISCONNECTED)

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def current_epoch(self) -> Epoch | None:
        return self._current

    def _set_state(self, state: MonitorState) -> None:
        self._state = state
        for s in MonitorState:
            MONITOR_STATE.labels(state=s.value).set(1 if s is state else 0)

    async def bootstrap(self) -> None:
        """Seed the tracker with the registry's last selected operator."""
        if self._chain is None:
            return
        try:
            last = await self._chain.get_last_selected_operator()
        except Exception as e:
            log.warning("leader_bootstrap_failed", error=str(e))
            return
        if last:
            self._tracker.bootstrap(last)
            log.info("leader_bootstrapped", leader=last)

    async def run(self) -> None:
        """Consume events until cancelled or stopped."""
        await self.bootstrap()
        consecutive_errors = 0
        while not self._stopping:
            try:
                self._set_state(MonitorState.LISTENING)
                async for raw in self._source.subscribe():
                    consecutive_errors = 0
                    self._set_state(MonitorState.PROCESSING_EVENT)
                    self.handle_log(raw)
                    self._set_state(MonitorState.LISTENING)
                    if self._stopping:
                        break
                else:
                    # Source ended without error; treat like a dropped subscription
                    if not self._stopping:
                        raise ConnectionError("Event subscription ended")
            except asyncio.CancelledError:
                self._set_state(MonitorState.DISCONNECTED)
                log.info("selection_monitor_cancelled")
                raise
            except Exception as e:
                self._set_state(MonitorState.DISCONNECTED)
                SUBSCRIPTION_RECONNECTS.inc()
                consecutive_errors += 1
                base = min(self._BACKOFF_BASE * (2 ** (consecutive_errors - 1)), self._backoff_max)
                backoff = base * (0.5 + random.random() / 2)
                level = "critical" if consecutive_errors >= self._CRITICAL_AFTER else "error"
                getattr(log, level)(
                    "subscription_error",
                    err=str(e),
                    error_type=type(e).__name__,
                    consecutive=consecutive_errors,
                    backoff_s=round(backoff, 2),
                )
                await asyncio.sleep(backoff)
        self._set_state(MonitorState.DISCONNECTED)

    def handle_log(self, raw: Mapping[str, Any]) -> Role | None:
        """Process one raw selection log. Returns the local role, or None if ignored."""
        try:
            event = decode_selection_log(raw)
        except MalformedEvent as e:
            SELECTION_EVENTS.labels(result="malformed").inc()
            log.warning("selection_event_malformed", error=str(e))
            return None
        return self.handle_event(event)

    def handle_event(self, event: SelectionEvent) -> Role | None:
        epoch = event.epoch
        if self._current is not None and epoch <= self._current:
            SELECTION_EVENTS.labels(result="stale").inc()
            log.info("selection_event_ignored", epoch=epoch.id, current=self._current.id)
            return None

        try:
            record = self._tracker.record(epoch, event.selected)
        except ValueError as e:
            SELECTION_EVENTS.labels(result="stale").inc()
            log.warning("selection_event_conflict", epoch=epoch.id, error=str(e))
            return None
        self._current = epoch
        SELECTION_EVENTS.labels(result=record.role.value).inc()
        log.info(
            "operator_selected",
            epoch=epoch.id,
            tx_hash=epoch.tx_hash,
            leader=event.selected,
            role=record.role.value,
        )

        if record.role is Role.LEADER:
            self._start_distribution(epoch)
        return record.role

    def _is_current(self, epoch: Epoch) -> bool:
        return self._current == epoch

    def _start_distribution(self, epoch: Epoch) -> None:
        task = asyncio.create_task(
            self._orchestrator.distribute(epoch, is_current=lambda: self._is_current(epoch)),
            name=f"monitor-distribute-{epoch.id}",
        )
        self._tasks[epoch] = task
        task.add_done_callback(lambda t, e=epoch: self._on_distribution_done(e, t))

    def _on_distribution_done(self, epoch: Epoch, task: asyncio.Task[DistributionResult]) -> None:
        self._tasks.pop(epoch, None)
        if task.cancelled():
            log.warning("distribution_cancelled", epoch=epoch.id)
            return
        exc = task.exception()
        if exc is not None:
            log.error("distribution_task_error", epoch=epoch.id, error=str(exc))
            return
        self._results[epoch] = task.result()
        while len(self._results) > self._KEEP_RESULTS:
            del self._results[min(self._results)]
        self._orchestrator.forget_before(epoch)

    def distribution_result(self, epoch: Epoch) -> DistributionResult | None:
        return self._results.get(epoch)

    @property
    def latest_distribution(self) -> DistributionResult | None:
        if not self._results:
            return None
        return self._results[max(self._results)]

    async def wait_for_distribution(self, epoch: Epoch, timeout: float | None = None) -> DistributionResult | None:
        """Wait for the distribution started for `epoch`; None if none was started."""
        done = self._results.get(epoch)
        if done is not None:
            return done
        task = self._tasks.get(epoch)
        if task is None:
            return None
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def stop(self, timeout: float = 15.0) -> None:
        """Stop consuming events and wait (bounded) for in-flight distributions."""
        self._stopping = True
        pending = list(self._tasks.values())
        if not pending:
            return
        log.info("waiting_for_distributions", count=len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            log.warning("distributions_cancelled_on_stop", count=len(still_running))
