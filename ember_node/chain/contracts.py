"""On-chain interaction layer for the Ember operator registry.

Provides typed wrappers around the registry calls the node consumes:
- getAllOperators() / getOperatorIP(): operator directory
- getLastSelectedOperator(): leader bootstrap on startup
- OperatorSelected logs: selection events (see chain.events)

Supports multiple RPC URLs with automatic failover on connection errors.
Unlike a best-effort status probe, these calls propagate failures so the
directory and event source can retry and classify them.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract

from ember_node.api.metrics import RPC_FAILOVERS
from ember_node.utils.circuit_breaker import CircuitBreaker

log = structlog.get_logger()

# Minimal ABIs, only what the node reads
DIRECTORY_ABI = [
    {
        "inputs": [],
        "name": "getAllOperators",
        "outputs": [{"name": "", "type": "address[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "operator", "type": "address"}],
        "name": "getOperatorIP",
        "outputs": [{"name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
]

REGISTRY_ABI = [
    {
        "inputs": [],
        "name": "getLastSelectedOperator",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": False, "name": "selectedOperator", "type": "address"}],
        "name": "OperatorSelected",
        "type": "event",
    },
]

OPERATOR_SELECTED_TOPIC = Web3.to_hex(Web3.keccak(text="OperatorSelected(address)"))

ZERO_ADDRESS = "0x" + "0" * 40

# Connection-type errors that indicate the RPC endpoint is unreachable
_FAILOVER_ERRORS = (ConnectionError, OSError, TimeoutError)


class ChainClient:
    """Async client for the registry and directory contracts.

    Pass a comma-separated string or a list of RPC URLs. On connection failure
    the client rotates to the next endpoint and retries the call.
    """

    def __init__(
        self,
        rpc_url: str | list[str],
        registry_address: str,
        directory_address: str = "",
        request_timeout: float = 30.0,
    ) -> None:
        if isinstance(rpc_url, str):
            self._rpc_urls = [u.strip() for u in rpc_url.split(",") if u.strip()]
        else:
            self._rpc_urls = list(rpc_url)
        if not self._rpc_urls:
            raise ValueError("At least one RPC URL is required")
        self._rpc_index = 0
        self._registry_address = registry_address
        self._directory_address = directory_address or registry_address
        self._request_timeout = request_timeout
        self._circuit_breaker = CircuitBreaker(
            name="rpc",
            failure_threshold=3,
            recovery_timeout=30.0,
        )
        self._w3 = self._create_provider(self._rpc_urls[0])
        self._setup_contracts()

    def _create_provider(self, url: str) -> AsyncWeb3:
        return AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                url,
                request_kwargs={"timeout": self._request_timeout},
            )
        )

    def _setup_contracts(self) -> None:
        self._registry: AsyncContract = self._w3.eth.contract(
            address=self._w3.to_checksum_address(self._registry_address),
            abi=REGISTRY_ABI,
        )
        self._directory: AsyncContract = self._w3.eth.contract(
            address=self._w3.to_checksum_address(self._directory_address),
            abi=DIRECTORY_ABI,
        )

    def _rotate_rpc(self) -> bool:
        """Switch to the next RPC URL. Returns True if a different URL was selected."""
        if len(self._rpc_urls) <= 1:
            return False
        old_index = self._rpc_index
        self._rpc_index = (self._rpc_index + 1) % len(self._rpc_urls)
        new_url = self._rpc_urls[self._rpc_index]
        log.warning("rpc_failover", new_url=new_url, old_index=old_index, new_index=self._rpc_index)
        self._w3 = self._create_provider(new_url)
        self._setup_contracts()
        return True

    async def _with_failover(self, make_call: Callable[[], Awaitable[Any]]) -> Any:
        """Execute a call with circuit breaker and RPC failover.

        make_call is re-invoked after each rotation so it picks up the
        freshly-created contract references.
        """
        if not self._circuit_breaker.allow_request():
            raise ConnectionError(
                f"RPC circuit breaker open, retry in {self._circuit_breaker.retry_after:.1f}s"
            )

        tried = 0
        total = len(self._rpc_urls)
        while True:
            try:
                result = await make_call()
                self._circuit_breaker.record_success()
                return result
            except _FAILOVER_ERRORS as e:
                tried += 1
                if tried < total and self._rotate_rpc():
                    RPC_FAILOVERS.inc()
                    log.warning("rpc_call_failed_retrying", err=str(e), tried=tried)
                    continue
                self._circuit_breaker.record_failure()
                raise

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    async def get_all_operators(self) -> list[str]:
        """All registered operator addresses, in registry order."""
        operators: list[str] = await self._with_failover(
            lambda: self._directory.functions.getAllOperators().call()
        )
        return [self._w3.to_checksum_address(op) for op in operators]

    async def get_operator_endpoint(self, operator: str) -> str:
        """The network endpoint an operator registered (may be empty)."""
        addr = self._w3.to_checksum_address(operator)
        endpoint: str = await self._with_failover(
            lambda: self._directory.functions.getOperatorIP(addr).call()
        )
        return endpoint.strip()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def get_last_selected_operator(self) -> str | None:
        """The most recently selected operator, or None if nobody was selected yet."""
        selected: str = await self._with_failover(
            lambda: self._registry.functions.getLastSelectedOperator().call()
        )
        if not selected or selected.lower() == ZERO_ADDRESS:
            return None
        return self._w3.to_checksum_address(selected)

    async def block_number(self) -> int:
        return await self._with_failover(lambda: self._w3.eth.block_number)

    async def chain_id(self) -> int:
        return await self._with_failover(lambda: self._w3.eth.chain_id)

    async def get_selection_logs(self, from_block: int, to_block: int) -> list[Any]:
        """Raw OperatorSelected logs emitted by the registry in [from_block, to_block]."""
        return await self._with_failover(
            lambda: self._w3.eth.get_logs(
                {
                    "address": self._registry.address,
                    "fromBlock": from_block,
                    "toBlock": to_block,
                    "topics": [OPERATOR_SELECTED_TOPIC],
                }
            )
        )

    async def is_connected(self) -> bool:
        """Check RPC connectivity (tries all endpoints)."""
        for _ in range(len(self._rpc_urls)):
            try:
                await self._w3.eth.block_number
                return True
            except _FAILOVER_ERRORS:
                if not self._rotate_rpc():
                    break
            except Exception as e:
                log.warning("rpc_connection_failed", err=str(e))
                return False
        return False

    async def close(self) -> None:
        """Close the underlying HTTP provider session."""
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is None:
            return
        try:
            await asyncio.wait_for(disconnect(), timeout=5.0)
        except TimeoutError:
            log.warning("chain_client_close_timeout")
        except Exception as e:
            log.warning("chain_client_close_error", err=str(e))

    @property
    def registry_address(self) -> str:
        return self._registry.address

    @property
    def directory_address(self) -> str:
        return self._directory.address

    @property
    def rpc_url(self) -> str:
        """Current active RPC URL."""
        return self._rpc_urls[self._rpc_index]

    @property
    def rpc_url_count(self) -> int:
        """Number of configured RPC endpoints."""
        return len(self._rpc_urls)
