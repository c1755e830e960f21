"""Tests for selection log decoding and the polling event source."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from hexbytes import HexBytes

from ember_node.chain.events import RegistryEventSource, decode_selection_log
from ember_node.core.leadership import Epoch
from ember_node.errors import MalformedEvent

OP_A = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


def selection_log(selected: str = OP_A, block: int = 10, index: int = 0) -> dict:
    word = bytes(12) + bytes.fromhex(selected[2:])
    return {
        "blockNumber": block,
        "logIndex": index,
        "transactionHash": HexBytes("0x" + "cd" * 32),
        "data": HexBytes(word),
    }


class TestDecodeSelectionLog:
    def test_decodes_address_and_position(self) -> None:
        event = decode_selection_log(selection_log(block=42, index=3))
        assert event.selected == OP_A
        assert event.epoch == Epoch(block_number=42, log_index=3)
        assert event.epoch.tx_hash == "0x" + "cd" * 32

    def test_accepts_hex_string_fields(self) -> None:
        raw = selection_log()
        raw["data"] = "0x" + raw["data"].hex().removeprefix("0x")
        raw["transactionHash"] = "0x" + "ef" * 32
        assert decode_selection_log(raw).selected == OP_A

    def test_lowercase_address_is_checksummed(self) -> None:
        assert decode_selection_log(selection_log(OP_A.lower())).selected == OP_A

    def test_missing_field(self) -> None:
        raw = selection_log()
        del raw["logIndex"]
        with pytest.raises(MalformedEvent):
            decode_selection_log(raw)

    def test_wrong_data_length(self) -> None:
        raw = selection_log()
        raw["data"] = HexBytes(b"\x01" * 20)
        with pytest.raises(MalformedEvent):
            decode_selection_log(raw)

    @pytest.mark.parametrize("value", [32, 0, [0] * 32, None])
    def test_non_bytes_data_rejected(self, value: object) -> None:
        raw = selection_log()
        raw["data"] = value
        with pytest.raises(MalformedEvent):
            decode_selection_log(raw)

    def test_dirty_address_padding(self) -> None:
        raw = selection_log()
        raw["data"] = HexBytes(b"\xff" + bytes(raw["data"])[1:])
        with pytest.raises(MalformedEvent):
            decode_selection_log(raw)

    def test_negative_block(self) -> None:
        with pytest.raises(MalformedEvent):
            decode_selection_log(selection_log(block=-1))


def _chain(heads: list[int], logs_by_range: dict[tuple[int, int], list[dict]]) -> MagicMock:
    chain = MagicMock()
    chain.block_number = AsyncMock(side_effect=heads)
    chain.get_selection_logs = AsyncMock(side_effect=lambda f, t: logs_by_range.get((f, t), []))
    return chain


class TestRegistryEventSource:
    @pytest.mark.asyncio
    async def test_starts_at_head_and_yields_new_logs(self) -> None:
        first = selection_log(block=101)
        chain = _chain(heads=[100, 100, 101], logs_by_range={(101, 101): [first]})
        source = RegistryEventSource(chain, poll_interval=0)

        agen = source.subscribe()
        got = await asyncio.wait_for(agen.__anext__(), timeout=1)
        await agen.aclose()
        assert got is first
        assert source.next_block == 101

    @pytest.mark.asyncio
    async def test_explicit_start_block_replays_history(self) -> None:
        old = selection_log(block=5)
        chain = _chain(heads=[10], logs_by_range={(5, 10): [old]})
        source = RegistryEventSource(chain, poll_interval=0, start_block=5)
        agen = source.subscribe()
        assert await agen.__anext__() is old
        await agen.aclose()

    @pytest.mark.asyncio
    async def test_large_ranges_are_chunked(self) -> None:
        chain = MagicMock()
        chain.block_number = AsyncMock(return_value=25)
        chain.get_selection_logs = AsyncMock(return_value=[])
        source = RegistryEventSource(chain, poll_interval=0, start_block=0, max_block_range=10)
        task = asyncio.ensure_future(source.subscribe().__anext__())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        ranges = [c.args for c in chain.get_selection_logs.call_args_list]
        assert ranges == [(0, 9), (10, 19), (20, 25)]
        assert source.next_block == 26

    @pytest.mark.asyncio
    async def test_resubscribe_resumes_from_cursor(self) -> None:
        b = selection_log(block=14)
        chain = _chain(heads=[10, 11, ConnectionError("rpc down"), 15], logs_by_range={(12, 15): [b]})
        source = RegistryEventSource(chain, poll_interval=0)

        with pytest.raises(ConnectionError):
            await source.subscribe().__anext__()
        assert source.next_block == 12

        second = source.subscribe()
        assert await second.__anext__() is b
        await second.aclose()
        assert chain.get_selection_logs.call_args_list[-1].args == (12, 15)

    @pytest.mark.asyncio
    async def test_rpc_error_propagates(self) -> None:
        chain = MagicMock()
        chain.block_number = AsyncMock(side_effect=ConnectionError("rpc down"))
        source = RegistryEventSource(chain, poll_interval=0)
        with pytest.raises(ConnectionError):
            await source.subscribe().__anext__()
