"""OperatorSelected event source.

The registry announces each leader election with an
``OperatorSelected(address selectedOperator)`` log. RegistryEventSource turns
those logs into an async stream by polling ``eth_getLogs`` behind a block
cursor. The cursor lives on the source, not on a single subscription, so a
resubscribe after a failure continues where the last one stopped.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from ember_node.core.leadership import Epoch
from ember_node.errors import MalformedEvent

if TYPE_CHECKING:
    from ember_node.chain.contracts import ChainClient

log = structlog.get_logger()


@dataclass(frozen=True)
class SelectionEvent:
    """A decoded OperatorSelected log."""

    epoch: Epoch
    selected: str  # checksummed operator address


class SelectionEventSource(Protocol):
    def subscribe(self) -> AsyncIterator[Mapping[str, Any]]: ...


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return Web3.to_bytes(hexstr=value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raise TypeError(f"Expected bytes or hex string, got {type(value).__name__}")


def decode_selection_log(raw: Mapping[str, Any]) -> SelectionEvent:
    """Decode a raw OperatorSelected log into a SelectionEvent.

    Raises MalformedEvent when any field is missing or undecodable.
    """
    try:
        block_number = int(raw["blockNumber"])
        log_index = int(raw["logIndex"])
        tx_hash = Web3.to_hex(_as_bytes(raw["transactionHash"]))
        data = _as_bytes(raw["data"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEvent(f"Selection log missing fields: {e}") from e

    if block_number < 0 or log_index < 0:
        raise MalformedEvent("Selection log has negative position")
    if len(data) != 32:
        raise MalformedEvent(f"Selection log data must be one ABI word, got {len(data)} bytes")
    try:
        (selected,) = abi_decode(["address"], data)
    except (DecodingError, ValueError) as e:
        raise MalformedEvent(f"Undecodable selectedOperator: {e}") from e

    return SelectionEvent(
        epoch=Epoch(block_number=block_number, log_index=log_index, tx_hash=tx_hash),
        selected=Web3.to_checksum_address(selected),
    )


class RegistryEventSource:
    """Polling subscription to OperatorSelected logs on the registry."""

    def __init__(
        self,
        chain: ChainClient,
        poll_interval: float = 2.0,
        start_block: int | None = None,
        max_block_range: int = 2_000,
    ) -> None:
        self._chain = chain
        self._poll_interval = poll_interval
        self._next_block = start_block
        self._max_block_range = max_block_range

    @property
    def next_block(self) -> int | None:
        """First block the next poll will read (None until the first subscribe)."""
        return self._next_block

    async def subscribe(self) -> AsyncIterator[Mapping[str, Any]]:
        """Yield raw selection logs in chain order until an RPC error propagates."""
        if self._next_block is None:
            self._next_block = await self._chain.block_number()
            log.info("event_subscription_started", from_block=self._next_block)
        else:
            log.info("event_subscription_resumed", from_block=self._next_block)

        while True:
            head = await self._chain.block_number()
            while self._next_block <= head:
                to_block = min(head, self._next_block + self._max_block_range - 1)
                logs = await self._chain.get_selection_logs(self._next_block, to_block)
                # eth_getLogs returns logs in (block, log index) order
                for entry in logs:
                    yield entry
                self._next_block = to_block + 1
            await asyncio.sleep(self._poll_interval)
