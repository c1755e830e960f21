"""Signed share envelopes.

The leader signs every share it sends with its operator key (EIP-191 personal
message). Followers recover the signer and compare it to the claimed sender,
so a share can only be attributed to the operator that actually produced it.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from ember_node.core.leadership import Epoch
from ember_node.utils.crypto import Share

log = structlog.get_logger()


def create_share_message(
    epoch: Epoch,
    recipient: str,
    share: Share,
    custody_address: str,
) -> str:
    """Canonical text signed for a share.

    Format: "ember-share:{epoch}:{recipient}:{x}:{y_hex}:{custody_address}"
    with addresses lowercased.
    """
    return f"ember-share:{epoch.id}:{recipient.lower()}:{share.x}:{share.y:064x}:{custody_address.lower()}"


def share_context(epoch: Epoch, recipient: str, index: int, custody_address: str) -> bytes:
    """Associated data binding a sealed share value to its envelope header."""
    return f"ember-share-seal:{epoch.id}:{recipient.lower()}:{index}:{custody_address.lower()}".encode()


@dataclass(frozen=True)
class ShareEnvelope:
    """One share addressed to one operator, as sent over the wire."""

    epoch: Epoch
    sender: str
    recipient: str
    share: Share
    custody_address: str
    signature: str = ""

    @property
    def message(self) -> str:
        return create_share_message(self.epoch, self.recipient, self.share, self.custody_address)

    @property
    def context(self) -> bytes:
        return share_context(self.epoch, self.recipient, self.share.x, self.custody_address)

    def to_payload(self, sealed_value: bytes) -> dict:
        """Wire form; the share value travels only as `sealed_value`, encrypted to the recipient."""
        return {
            "epoch": self.epoch.id,
            "tx_hash": self.epoch.tx_hash,
            "sender": self.sender,
            "recipient": self.recipient,
            "index": self.share.x,
            "sealed_value": Web3.to_hex(sealed_value),
            "custody_address": self.custody_address,
            "signature": self.signature,
        }

    def __repr__(self) -> str:
        # Share values stay out of logs and tracebacks
        return (
            f"ShareEnvelope(epoch={self.epoch.id}, sender={self.sender}, "
            f"recipient={self.recipient}, index={self.share.x})"
        )


class EnvelopeSigner:
    """Signs envelopes with the local operator key."""

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def seal(
        self,
        epoch: Epoch,
        recipient: str,
        share: Share,
        custody_address: str,
    ) -> ShareEnvelope:
        message = create_share_message(epoch, recipient, share, custody_address)
        signed = self._account.sign_message(encode_defunct(text=message))
        return ShareEnvelope(
            epoch=epoch,
            sender=self.address,
            recipient=recipient,
            share=share,
            custody_address=custody_address,
            signature=Web3.to_hex(signed.signature),
        )


def verify_envelope(envelope: ShareEnvelope) -> bool:
    """True if the envelope signature recovers to its claimed sender."""
    if not envelope.signature:
        return False
    try:
        signer = Account.recover_message(
            encode_defunct(text=envelope.message),
            signature=envelope.signature,
        )
    except Exception as e:
        log.warning("share_signature_unrecoverable", epoch=envelope.epoch.id, error=str(e))
        return False
    return signer.lower() == envelope.sender.lower()
