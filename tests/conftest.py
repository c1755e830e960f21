"""Shared fixtures for the node test suite."""

from __future__ import annotations

import os

import pytest

# Tests must not depend on a developer's local .env
os.environ["NETWORK"] = "local"
os.environ["OPERATOR_PRIVATE_KEY"] = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
os.environ["REGISTRY_ADDRESS"] = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
os.environ.pop("DIRECTORY_ADDRESS", None)
os.environ.pop("ALLOW_PRIVATE_ENDPOINTS", None)

from eth_account import Account

from ember_node.core.leadership import Epoch, LeadershipTracker
from ember_node.core.receiver import ShareReceiver
from ember_node.core.shares import ShareStore
from ember_node.core.signing import EnvelopeSigner
from ember_node.utils.sealing import ShareKey

LEADER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
FOLLOWER_KEY = os.environ["OPERATOR_PRIVATE_KEY"]
OTHER_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"

LEADER = Account.from_key(LEADER_KEY).address
FOLLOWER = Account.from_key(FOLLOWER_KEY).address
OTHER = Account.from_key(OTHER_KEY).address

CUSTODY = "0x000000000000000000000000000000000000c0de"


@pytest.fixture
def epoch() -> Epoch:
    return Epoch(block_number=100, log_index=2, tx_hash="0x" + "ab" * 32)


@pytest.fixture
def leader_signer() -> EnvelopeSigner:
    return EnvelopeSigner(LEADER_KEY)


@pytest.fixture
def other_signer() -> EnvelopeSigner:
    return EnvelopeSigner(OTHER_KEY)


@pytest.fixture
def share_key() -> ShareKey:
    """The local follower's key for opening sealed shares."""
    return ShareKey(FOLLOWER_KEY)


@pytest.fixture
def share_store() -> ShareStore:
    return ShareStore()


@pytest.fixture
def tracker() -> LeadershipTracker:
    """Tracker for the local follower identity."""
    return LeadershipTracker(FOLLOWER)


@pytest.fixture
def receiver(share_store: ShareStore, tracker: LeadershipTracker) -> ShareReceiver:
    return ShareReceiver(share_store, tracker, shares_total=5)
