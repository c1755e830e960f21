"""Pydantic request/response models for the node REST API."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field, ValidationInfo, field_validator

_ETH_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HEX_RE = re.compile(r"^0x[0-9a-fA-F]+$")


def _validate_address(v: str, field_name: str) -> str:
    if not _ETH_ADDRESS_RE.match(v):
        raise ValueError(f"{field_name} must be a valid Ethereum address (0x + 40 hex chars)")
    return v


class ShareSubmission(BaseModel):
    """POST /v1/share: one signed share from the epoch's leader."""

    epoch: str = Field(max_length=64, pattern=r"^[0-9]+:[0-9]+$")
    tx_hash: str = Field(default="", max_length=66)
    sender: str
    recipient: str
    index: int = Field(ge=1, le=255)
    sealed_value: str = Field(max_length=256)  # share value encrypted to the recipient
    custody_address: str
    signature: str = Field(max_length=200)

    @field_validator("sender", "recipient", "custody_address")
    @classmethod
    def validate_addresses(cls, v: str, info: ValidationInfo) -> str:
        return _validate_address(v, info.field_name)

    @field_validator("sealed_value", "signature")
    @classmethod
    def validate_hex(cls, v: str, info: ValidationInfo) -> str:
        if not _HEX_RE.match(v):
            raise ValueError(f"{info.field_name} must be a 0x-prefixed hex string")
        return v

    @field_validator("tx_hash")
    @classmethod
    def validate_tx_hash(cls, v: str) -> str:
        if v and not _HEX_RE.match(v):
            raise ValueError("tx_hash must be a 0x-prefixed hex string")
        return v


class IdentityResponse(BaseModel):
    """GET /v1/identity: the key leaders seal shares to."""

    identity: str
    public_key: str


class ShareResponse(BaseModel):
    epoch: str
    stored: bool
    pending: bool = False
    index: int | None = None


class ShareRejectedResponse(BaseModel):
    detail: str
    reason: str
    matches_stored: bool = False


class HealthResponse(BaseModel):
    status: str
    version: str
    identity: str
    monitor_state: str
    chain_connected: bool = False
    shares_held: int = 0


class LeadershipInfo(BaseModel):
    epoch: str | None = None
    leader: str | None = None
    role: str | None = None


class DistributionSummary(BaseModel):
    epoch: str
    status: str
    delivered: int
    threshold: int
    total_shares: int
    threshold_met: bool
    superseded: bool
    custody_address: str = ""
    duration_s: float = 0.0


class StatusResponse(BaseModel):
    """GET /v1/status: leadership and distribution summary; never share values."""

    identity: str
    monitor_state: str
    current_leader: str | None = None
    leadership: LeadershipInfo
    last_distribution: DistributionSummary | None = None
    held_share_epoch: str | None = None
    held_share_index: int | None = None
    pending_shares: int = 0
