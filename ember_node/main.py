"""Entry point for the Ember operator node.

Starts the FastAPI server and the selection monitor concurrently.
"""

from __future__ import annotations

import asyncio
import os
import signal
from pathlib import Path
from urllib.parse import urlparse

import structlog
import uvicorn

from ember_node import __version__
from ember_node.logging import configure_logging

configure_logging()

from ember_node.api.server import create_app
from ember_node.chain.contracts import ChainClient
from ember_node.chain.events import RegistryEventSource
from ember_node.config import Config
from ember_node.core.directory import PeerDirectory
from ember_node.core.distribution import DistributionOrchestrator
from ember_node.core.leadership import LeadershipTracker
from ember_node.core.monitor import SelectionMonitor
from ember_node.core.receiver import ShareReceiver
from ember_node.core.shares import ShareStore
from ember_node.core.signing import EnvelopeSigner
from ember_node.core.transport import HttpShareTransport
from ember_node.utils.sealing import ShareKey

log = structlog.get_logger()


def _sanitize_url(url: str) -> str:
    """Strip credentials and path from URL for safe logging."""
    try:
        parsed = urlparse(url)
        default_port = 443 if parsed.scheme == "https" else 80
        return f"{parsed.scheme}://{parsed.hostname}:{parsed.port or default_port}"
    except ValueError:
        return "<unparseable>"


async def _check_chain_id(chain: ChainClient, expected: int) -> None:
    try:
        actual = await chain.chain_id()
    except Exception as e:
        log.warning("chain_id_check_failed", error=str(e))
        return
    if actual != expected:
        log.error("chain_id_mismatch", expected=expected, actual=actual)


async def run_server(app: object, host: str, port: int) -> None:
    """Run uvicorn as an async task."""
    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        timeout_graceful_shutdown=10,
        timeout_keep_alive=65,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def async_main() -> None:
    """Start the node with concurrent API server and selection monitor."""
    config = Config()
    warnings = config.validate()
    for w in warnings:
        log.warning("config_warning", msg=w)

    signer = EnvelopeSigner(config.operator_private_key)
    identity = signer.address

    data_dir = Path(config.data_dir).resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    share_store = ShareStore(db_path=str(data_dir / "shares.db"))

    chain_client = ChainClient(
        rpc_url=config.rpc_url,
        registry_address=config.registry_address,
        directory_address=config.directory_address,
    )
    await _check_chain_id(chain_client, config.chain_id)

    source = RegistryEventSource(
        chain_client,
        poll_interval=config.event_poll_interval,
        start_block=config.event_start_block if config.event_start_block >= 0 else None,
    )
    directory = PeerDirectory(
        chain_client,
        retries=config.directory_retries,
        backoff=config.directory_backoff,
        default_port=config.default_peer_port,
        allow_private=config.allow_private_endpoints,
    )
    transport = HttpShareTransport(timeout=config.delivery_timeout)

    tracker = LeadershipTracker(identity)
    receiver = ShareReceiver(share_store, tracker, shares_total=config.shares_total)
    orchestrator = DistributionOrchestrator(
        directory=directory,
        transport=transport,
        signer=signer,
        receiver=receiver,
        shares_total=config.shares_total,
        threshold=config.shares_threshold,
        concurrency=config.delivery_concurrency,
        retries=config.delivery_retries,
        pending_retries=config.delivery_pending_retries,
        timeout=config.delivery_timeout,
    )
    monitor = SelectionMonitor(
        source,
        tracker,
        orchestrator,
        chain=chain_client,
        backoff_max=config.resubscribe_backoff_max,
    )

    app = create_app(
        receiver=receiver,
        tracker=tracker,
        share_key=ShareKey(config.operator_private_key),
        monitor=monitor,
        chain_client=chain_client,
        rate_limit_capacity=config.rate_limit_capacity,
        rate_limit_rate=config.rate_limit_rate,
    )

    log.info(
        "node_starting",
        version=__version__,
        identity=identity,
        network=config.network,
        host=config.api_host,
        port=config.api_port,
        rpc_url=_sanitize_url(chain_client.rpc_url),
        rpc_urls=chain_client.rpc_url_count,
        registry=chain_client.registry_address,
        directory=chain_client.directory_address,
        shares_total=config.shares_total,
        shares_threshold=config.shares_threshold,
        shares_held=share_store.count,
        log_format=os.getenv("LOG_FORMAT", "console"),
    )

    running_tasks = [
        asyncio.create_task(run_server(app, config.api_host, config.api_port)),
        asyncio.create_task(monitor.run()),
    ]

    shutdown_event = asyncio.Event()

    def _shutdown(sig: signal.Signals) -> None:
        log.info("shutdown_signal", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    await shutdown_event.wait()
    log.info("shutting_down")
    await monitor.stop(timeout=15.0)
    for t in running_tasks:
        t.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(*running_tasks, return_exceptions=True),
            timeout=15.0,
        )
    except TimeoutError:
        log.warning("shutdown_timeout", msg="Tasks did not finish within 15s")
    try:
        await transport.close()
    except Exception as e:
        log.warning("transport_close_error", error=str(e))
    try:
        await chain_client.close()
    except Exception as e:
        log.warning("chain_client_close_error", error=str(e))
    try:
        share_store.close()
    except Exception as e:
        log.warning("share_store_close_error", error=str(e))
    log.info("shutdown_complete")


def main() -> None:
    """Start the Ember node."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
