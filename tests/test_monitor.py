"""Tests for the selection event monitor."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FOLLOWER, LEADER, OTHER
from ember_node.core.distribution import DistributionResult, DistributionStatus
from ember_node.core.leadership import Epoch, LeadershipTracker, Role
from ember_node.core.monitor import MonitorState, SelectionMonitor


def _log(block: int, selected: str, log_index: int = 0) -> dict:
    return {
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": "0x" + f"{block:02x}" * 32,
        "data": "0x" + "00" * 12 + selected[2:].lower(),
    }


MALFORMED = {"blockNumber": 5, "logIndex": 0, "transactionHash": "0x" + "00" * 32, "data": "0x1234"}


class FakeSource:
    """Each subscribe() call plays one round; an exception in a round is raised mid-stream."""

    def __init__(self, rounds: list[list]) -> None:
        self.rounds = list(rounds)
        self.subscriptions = 0
        self.idle = asyncio.Event()

    async def subscribe(self):
        self.subscriptions += 1
        if not self.rounds:
            self.idle.set()
            await asyncio.Event().wait()
        for item in self.rounds.pop(0):
            if isinstance(item, Exception):
                raise item
            yield item


def _result(epoch: Epoch) -> DistributionResult:
    return DistributionResult(epoch=epoch, status=DistributionStatus.COMPLETE, threshold=3, total_shares=5)


def _orchestrator() -> MagicMock:
    orch = MagicMock()
    orch.distribute = AsyncMock(side_effect=lambda epoch, is_current: _result(epoch))
    return orch


@pytest.fixture
def leader_tracker() -> LeadershipTracker:
    return LeadershipTracker(LEADER)


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_leader_starts_distribution(self, leader_tracker: LeadershipTracker) -> None:
        orch = _orchestrator()
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, orch)

        assert monitor.handle_log(_log(10, LEADER)) is Role.LEADER
        result = await monitor.wait_for_distribution(Epoch(10, 0), timeout=1)

        assert result.status == DistributionStatus.COMPLETE
        assert orch.distribute.await_args.args[0] == Epoch(10, 0)
        assert monitor.latest_distribution is result
        assert monitor.distribution_result(Epoch(10, 0)) is result
        orch.forget_before.assert_called_once_with(Epoch(10, 0))

    @pytest.mark.asyncio
    async def test_follower_does_not_distribute(self, leader_tracker: LeadershipTracker) -> None:
        orch = _orchestrator()
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, orch)

        assert monitor.handle_log(_log(10, OTHER)) is Role.FOLLOWER
        await asyncio.sleep(0)
        orch.distribute.assert_not_called()
        assert leader_tracker.leader_for(Epoch(10, 0)).identity == OTHER
        assert monitor.in_flight == 0

    @pytest.mark.asyncio
    async def test_older_and_repeated_events_ignored(self, leader_tracker: LeadershipTracker) -> None:
        orch = _orchestrator()
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, orch)

        monitor.handle_log(_log(10, LEADER))
        assert monitor.handle_log(_log(10, LEADER)) is None
        assert monitor.handle_log(_log(9, LEADER)) is None
        await monitor.wait_for_distribution(Epoch(10, 0), timeout=1)

        assert orch.distribute.await_count == 1
        assert leader_tracker.leader_for(Epoch(9, 0)) is None
        assert monitor.current_epoch == Epoch(10, 0)

    @pytest.mark.asyncio
    async def test_later_log_in_same_block_is_new_epoch(self, leader_tracker: LeadershipTracker) -> None:
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, _orchestrator())
        monitor.handle_log(_log(10, OTHER, log_index=0))
        assert monitor.handle_log(_log(10, FOLLOWER, log_index=4)) is Role.FOLLOWER
        assert monitor.current_epoch == Epoch(10, 4)

    def test_malformed_log_dropped(self, leader_tracker: LeadershipTracker) -> None:
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, _orchestrator())
        assert monitor.handle_log(MALFORMED) is None
        assert monitor.current_epoch is None

    def test_conflicting_leader_ignored(self, leader_tracker: LeadershipTracker) -> None:
        orch = _orchestrator()
        leader_tracker.record(Epoch(10, 0), OTHER)
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, orch)
        assert monitor.handle_log(_log(10, LEADER)) is None
        orch.distribute.assert_not_called()

    @pytest.mark.asyncio
    async def test_newer_epoch_supersedes_running_distribution(self, leader_tracker: LeadershipTracker) -> None:
        orch = _orchestrator()
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, orch)

        monitor.handle_log(_log(10, LEADER))
        await monitor.wait_for_distribution(Epoch(10, 0), timeout=1)
        is_current = orch.distribute.await_args.kwargs["is_current"]
        assert is_current()

        monitor.handle_log(_log(11, OTHER))
        assert not is_current()

    @pytest.mark.asyncio
    async def test_wait_for_unknown_epoch(self, leader_tracker: LeadershipTracker) -> None:
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, _orchestrator())
        assert await monitor.wait_for_distribution(Epoch(1, 0)) is None


class TestRun:
    @pytest.mark.asyncio
    async def test_resubscribes_after_errors(self, leader_tracker: LeadershipTracker) -> None:
        source = FakeSource(
            [
                [MALFORMED, _log(10, LEADER)],
                [ConnectionError("socket closed")],
                [_log(11, OTHER)],
            ]
        )
        orch = _orchestrator()
        monitor = SelectionMonitor(source, leader_tracker, orch)
        monitor._BACKOFF_BASE = 0

        task = asyncio.create_task(monitor.run())
        await asyncio.wait_for(source.idle.wait(), timeout=2)

        assert source.subscriptions == 4
        assert monitor.current_epoch == Epoch(11, 0)
        assert monitor.state is MonitorState.LISTENING
        assert orch.distribute.await_count == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert monitor.state is MonitorState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_bootstrap_seeds_current_leader(self, leader_tracker: LeadershipTracker) -> None:
        chain = MagicMock()
        chain.get_last_selected_operator = AsyncMock(return_value=OTHER)
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, _orchestrator(), chain=chain)
        await monitor.bootstrap()
        assert leader_tracker.current_leader == OTHER

    @pytest.mark.asyncio
    async def test_bootstrap_failure_is_not_fatal(self, leader_tracker: LeadershipTracker) -> None:
        chain = MagicMock()
        chain.get_last_selected_operator = AsyncMock(side_effect=ConnectionError("rpc down"))
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, _orchestrator(), chain=chain)
        await monitor.bootstrap()
        assert leader_tracker.current_leader is None


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_waits_for_running_distribution(self, leader_tracker: LeadershipTracker) -> None:
        release = asyncio.Event()
        orch = MagicMock()

        async def slow(epoch, is_current):
            await release.wait()
            return _result(epoch)

        orch.distribute = AsyncMock(side_effect=slow)
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, orch)
        monitor.handle_log(_log(10, LEADER))
        assert monitor.in_flight == 1

        asyncio.get_running_loop().call_later(0.01, release.set)
        await monitor.stop(timeout=2)
        await asyncio.sleep(0)
        assert monitor.distribution_result(Epoch(10, 0)) is not None

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self, leader_tracker: LeadershipTracker) -> None:
        orch = MagicMock()

        async def hang(epoch, is_current):
            await asyncio.Event().wait()

        orch.distribute = AsyncMock(side_effect=hang)
        monitor = SelectionMonitor(FakeSource([]), leader_tracker, orch)
        monitor.handle_log(_log(10, LEADER))

        await monitor.stop(timeout=0.01)
        for _ in range(5):
            await asyncio.sleep(0)
        assert monitor.in_flight == 0
        assert monitor.distribution_result(Epoch(10, 0)) is None
