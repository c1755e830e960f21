"""Share value encryption to the recipient operator's key.

ECIES over secp256k1: an ephemeral key pair per share, ECDH with the
recipient's operator public key, HKDF-SHA256 down to a 32-byte AES-256-GCM
key. The share header (epoch, recipient, index, custody address) is bound as
associated data so a ciphertext cannot be replayed under another header.

Wire format: ephemeral public key (65 bytes, uncompressed) || nonce (12
bytes) || ciphertext + GCM tag.
"""

from __future__ import annotations

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from web3 import Web3

from ember_node.errors import InvalidShare

HKDF_INFO_SHARE_ENCRYPTION = b"ember-share-encryption"

_PUBLIC_KEY_SIZE = 65
_AES_GCM_NONCE_SIZE = 12
_GCM_TAG_SIZE = 16
_VALUE_SIZE = 32

SEALED_SIZE = _PUBLIC_KEY_SIZE + _AES_GCM_NONCE_SIZE + _VALUE_SIZE + _GCM_TAG_SIZE


def _public_bytes(key: ec.EllipticCurvePublicKey) -> bytes:
    return key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)


def _load_public_key(raw: bytes) -> ec.EllipticCurvePublicKey:
    if len(raw) != _PUBLIC_KEY_SIZE:
        raise ValueError(f"Expected a {_PUBLIC_KEY_SIZE}-byte uncompressed public key, got {len(raw)} bytes")
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)


def _derive_key(private_key: ec.EllipticCurvePrivateKey, peer_public: ec.EllipticCurvePublicKey) -> bytes:
    raw_shared = private_key.exchange(ec.ECDH(), peer_public)
    return HKDF(
        algorithm=SHA256(),
        length=32,
        salt=None,
        info=HKDF_INFO_SHARE_ENCRYPTION,
    ).derive(raw_shared)


def address_from_public_key(public_key: bytes) -> str:
    """Ethereum address for an uncompressed secp256k1 public key."""
    _load_public_key(public_key)
    return Web3.to_checksum_address(Web3.keccak(public_key[1:])[-20:])


def seal_value(value: int, recipient_public_key: bytes, associated_data: bytes) -> bytes:
    """Encrypt a 32-byte share value so only the holder of the recipient key can read it."""
    peer_public = _load_public_key(recipient_public_key)
    ephemeral = ec.generate_private_key(ec.SECP256K1())
    key = _derive_key(ephemeral, peer_public)
    nonce = os.urandom(_AES_GCM_NONCE_SIZE)
    ct_with_tag = AESGCM(key).encrypt(nonce, value.to_bytes(_VALUE_SIZE, "big"), associated_data)
    return _public_bytes(ephemeral.public_key()) + nonce + ct_with_tag


class ShareKey:
    """The local operator key, used to open share values sealed to it."""

    def __init__(self, private_key: str) -> None:
        scalar = int(private_key.removeprefix("0x"), 16)
        self._key = ec.derive_private_key(scalar, ec.SECP256K1())
        self.public_key = _public_bytes(self._key.public_key())
        self.address = address_from_public_key(self.public_key)

    def open(self, sealed: bytes, associated_data: bytes) -> int:
        """Decrypt a sealed share value. Raises InvalidShare if it was not sealed to this key."""
        if len(sealed) != SEALED_SIZE:
            raise InvalidShare(f"Sealed value must be {SEALED_SIZE} bytes, got {len(sealed)}")
        ephemeral_raw = sealed[:_PUBLIC_KEY_SIZE]
        nonce = sealed[_PUBLIC_KEY_SIZE : _PUBLIC_KEY_SIZE + _AES_GCM_NONCE_SIZE]
        ct_with_tag = sealed[_PUBLIC_KEY_SIZE + _AES_GCM_NONCE_SIZE :]
        try:
            key = _derive_key(self._key, _load_public_key(ephemeral_raw))
            plaintext = AESGCM(key).decrypt(nonce, ct_with_tag, associated_data)
        except (InvalidTag, ValueError) as e:
            raise InvalidShare("Sealed value could not be opened with this operator's key") from e
        return int.from_bytes(plaintext, "big")

    def __repr__(self) -> str:
        return f"ShareKey(address={self.address})"
