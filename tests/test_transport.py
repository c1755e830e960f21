"""Tests for the HTTP share transport."""

from __future__ import annotations

import json

import httpx
import pytest
import structlog
from pytest_httpx import HTTPXMock

from conftest import CUSTODY, FOLLOWER, FOLLOWER_KEY, OTHER_KEY
from ember_node.core.directory import PeerRecord
from ember_node.core.leadership import Epoch
from ember_node.core.signing import EnvelopeSigner, ShareEnvelope
from ember_node.core.transport import DeliveryOutcome, HttpShareTransport, is_final
from ember_node.errors import InvalidShare
from ember_node.utils.crypto import Share
from ember_node.utils.sealing import ShareKey

PEER = PeerRecord(identity=FOLLOWER, endpoint="http://93.184.216.10:8431", index=2)
URL = "http://93.184.216.10:8431/v1/share"
IDENTITY_URL = "http://93.184.216.10:8431/v1/identity"


def _identity(httpx_mock: HTTPXMock, key: str = FOLLOWER_KEY) -> None:
    public_key = "0x" + ShareKey(key).public_key.hex()
    httpx_mock.add_response(url=IDENTITY_URL, method="GET", json={"identity": FOLLOWER, "public_key": public_key})


def _posted(httpx_mock: HTTPXMock) -> list[dict]:
    return [json.loads(r.content) for r in httpx_mock.get_requests() if r.method == "POST"]


@pytest.fixture
def envelope(leader_signer: EnvelopeSigner, epoch: Epoch) -> ShareEnvelope:
    return leader_signer.seal(epoch, FOLLOWER, Share(x=2, y=0xABC), CUSTODY)


class TestIsFinal:
    def test_delivered_is_final(self) -> None:
        assert is_final(DeliveryOutcome.DELIVERED, 200)

    def test_pending_is_not_final(self) -> None:
        assert not is_final(DeliveryOutcome.PENDING, 202)

    def test_timeout_is_retryable(self) -> None:
        assert not is_final(DeliveryOutcome.TIMED_OUT, None)

    @pytest.mark.parametrize("status", [400, 401, 403, 409, 422])
    def test_client_rejections_are_final(self, status: int) -> None:
        assert is_final(DeliveryOutcome.REJECTED, status)

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_server_rejections_are_retryable(self, status: int) -> None:
        assert not is_final(DeliveryOutcome.REJECTED, status)


class TestHttpShareTransport:
    @pytest.mark.asyncio
    async def test_posts_sealed_payload_and_acks(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, method="POST", status_code=200, json={"stored": True})
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.DELIVERED, 200)

        (body,) = _posted(httpx_mock)
        assert "value" not in body
        assert body["index"] == 2
        assert body["signature"] == envelope.signature
        sealed = bytes.fromhex(body["sealed_value"][2:])
        assert ShareKey(FOLLOWER_KEY).open(sealed, envelope.context) == 0xABC

    @pytest.mark.asyncio
    async def test_sealed_value_unreadable_by_other_operators(
        self, httpx_mock: HTTPXMock, envelope: ShareEnvelope
    ) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, method="POST", status_code=200, json={"stored": True})
        transport = HttpShareTransport(timeout=1.0)
        try:
            await transport.send(PEER, envelope)
        finally:
            await transport.close()
        sealed = bytes.fromhex(_posted(httpx_mock)[0]["sealed_value"][2:])
        with pytest.raises(InvalidShare):
            ShareKey(OTHER_KEY).open(sealed, envelope.context)

    @pytest.mark.asyncio
    async def test_public_key_fetched_once(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, method="POST", status_code=200, json={})
        httpx_mock.add_response(url=URL, method="POST", status_code=200, json={})
        transport = HttpShareTransport(timeout=1.0)
        try:
            await transport.send(PEER, envelope)
            await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert [r.method for r in httpx_mock.get_requests()] == ["GET", "POST", "POST"]

    @pytest.mark.asyncio
    async def test_key_of_another_operator_refused(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        _identity(httpx_mock, key=OTHER_KEY)
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.REJECTED, 403)
        assert is_final(outcome, status)
        assert _posted(httpx_mock) == []

    @pytest.mark.asyncio
    async def test_garbage_public_key_refused(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        httpx_mock.add_response(url=IDENTITY_URL, method="GET", json={"identity": FOLLOWER, "public_key": "0x04ab"})
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, _ = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert outcome == DeliveryOutcome.REJECTED
        assert _posted(httpx_mock) == []

    @pytest.mark.asyncio
    async def test_identity_endpoint_error(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        httpx_mock.add_response(url=IDENTITY_URL, method="GET", status_code=503)
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.REJECTED, 503)
        assert not is_final(outcome, status)

    @pytest.mark.asyncio
    async def test_parked_share_is_pending_not_delivered(
        self, httpx_mock: HTTPXMock, envelope: ShareEnvelope
    ) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, method="POST", status_code=202, json={"pending": True})
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.PENDING, 202)
        assert not is_final(outcome, status)

    @pytest.mark.asyncio
    async def test_duplicate_matching_stored_is_delivered(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, status_code=409, json={"reason": "duplicate", "matches_stored": True})
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.DELIVERED, 409)

    @pytest.mark.asyncio
    async def test_conflicting_duplicate_is_rejected(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, status_code=409, json={"reason": "duplicate", "matches_stored": False})
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.REJECTED, 409)

    @pytest.mark.asyncio
    async def test_server_error_is_rejected(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, status_code=500, text="boom")
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.REJECTED, 500)

    @pytest.mark.asyncio
    async def test_timeout(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        httpx_mock.add_exception(httpx.ReadTimeout("slow peer"))
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, status = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert (outcome, status) == (DeliveryOutcome.TIMED_OUT, None)

    @pytest.mark.asyncio
    async def test_connection_error_is_timeout(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        transport = HttpShareTransport(timeout=1.0)
        try:
            outcome, _ = await transport.send(PEER, envelope)
        finally:
            await transport.close()
        assert outcome == DeliveryOutcome.TIMED_OUT

    @pytest.mark.asyncio
    async def test_breaker_stops_calling_dead_peer(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        for _ in range(3):
            httpx_mock.add_exception(httpx.ConnectError("refused"))
        transport = HttpShareTransport(timeout=1.0)
        try:
            for _ in range(4):
                outcome, _ = await transport.send(PEER, envelope)
                assert outcome == DeliveryOutcome.TIMED_OUT
        finally:
            await transport.close()
        assert len(httpx_mock.get_requests()) == 3

    @pytest.mark.asyncio
    async def test_request_id_forwarded(self, httpx_mock: HTTPXMock, envelope: ShareEnvelope) -> None:
        _identity(httpx_mock)
        httpx_mock.add_response(url=URL, status_code=200, json={})
        transport = HttpShareTransport(timeout=1.0)
        structlog.contextvars.bind_contextvars(request_id="trace-42")
        try:
            await transport.send(PEER, envelope)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
            await transport.close()
        assert all(r.headers["X-Request-ID"] == "trace-42" for r in httpx_mock.get_requests())
