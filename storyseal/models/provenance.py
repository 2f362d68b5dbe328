"""
Pydantic models for the provenance pipeline data structures.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistrationStatus(str, Enum):
    """Lifecycle of a single registration attempt."""
    PREPARING = "preparing"
    SIMULATED = "simulated"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Failure classification recorded on a failed attempt."""
    TRANSIENT = "transient"
    NOT_YET_ACCESSIBLE = "not_yet_accessible"
    HASH_MISMATCH = "hash_mismatch"
    CONTRACT_VALIDATION = "contract_validation"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    USER_REJECTED = "user_rejected"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    UNKNOWN = "unknown"


class ContentDigest(BaseModel):
    """SHA-256 digest bound to one canonical byte string."""
    model_config = ConfigDict(frozen=True)

    hex: str = Field(..., description="0x-prefixed lowercase hex digest")

    @field_validator("hex")
    @classmethod
    def validate_hex(cls, v: str) -> str:
        v = v.lower()
        if not v.startswith("0x") or len(v) != 66:
            raise ValueError("Digest must be 0x followed by 64 hex characters")
        int(v[2:], 16)
        return v

    def as_bytes32(self) -> bytes:
        return bytes.fromhex(self.hex[2:])

    def __str__(self) -> str:
        return self.hex


class CanonicalMetadata(BaseModel):
    """Canonical metadata document, its serialized bytes and their digest."""
    model_config = ConfigDict(frozen=True)

    document: Dict[str, Any] = Field(..., description="Logical metadata document")
    payload: bytes = Field(..., description="Canonical UTF-8 JSON serialization")
    digest: ContentDigest


class PublicationRecord(BaseModel):
    """A published payload: where it lives and what it must hash to."""
    model_config = ConfigDict(frozen=True)

    content_uri: str = Field(..., description="ipfs:// locator returned by the publisher")
    digest: ContentDigest
    gateway_used: Optional[str] = Field(None, description="Gateway that served byte-identical content")

    @property
    def cid(self) -> str:
        return self.content_uri.replace("ipfs://", "", 1)


class RegistrationRequest(BaseModel):
    """Arguments for one logical registration."""
    model_config = ConfigDict(frozen=True)

    recipient: str
    ip_metadata: PublicationRecord
    nft_metadata: PublicationRecord
    ip_metadata_uri: str = Field(..., description="Gateway URI written on-chain for the IP metadata")
    nft_metadata_uri: str = Field(..., description="Gateway URI written on-chain for the NFT metadata")
    allow_duplicates: bool = True


class RegistrationAttempt(BaseModel):
    """One try at getting a registration onto the ledger."""
    number: int = Field(..., ge=1)
    status: RegistrationStatus = RegistrationStatus.PREPARING
    tx_hash: Optional[str] = None
    asset_id: Optional[str] = None
    token_ref: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    started_at: datetime = Field(default_factory=_utcnow)

    def advance(self, status: RegistrationStatus) -> None:
        if self.status in (RegistrationStatus.CONFIRMED, RegistrationStatus.FAILED):
            raise ValueError(f"Attempt {self.number} already finished as {self.status.value}")
        self.status = status

    def fail(self, kind: ErrorKind, message: str) -> None:
        # A confirmed attempt stays confirmed; the error says why it is incomplete
        if self.status != RegistrationStatus.CONFIRMED:
            self.status = RegistrationStatus.FAILED
        self.error_kind = kind
        self.error_message = message


class RegistrationResult(BaseModel):
    """Outcome of a confirmed and resolved registration."""
    asset_id: str
    token_ref: Optional[int] = None
    tx_hash: str
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    attempts: List[RegistrationAttempt] = Field(default_factory=list)


class LogEntry(BaseModel):
    """Raw log as returned by the ledger."""
    address: str
    topics: List[str] = Field(default_factory=list)
    data: str = "0x"
    block_number: int = 0
    log_index: int = 0
    tx_hash: Optional[str] = None


class TransactionReceipt(BaseModel):
    tx_hash: str
    status: int = 1
    block_number: int
    gas_used: Optional[int] = None
    logs: List[LogEntry] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class RegistrationEvent(BaseModel):
    """Decoded IPRegistered event."""
    asset_id: str
    token_ref: int
    metadata_uri: str = ""
    tx_hash: Optional[str] = None
    block_number: int = 0
    log_index: int = 0


class TransferEvent(BaseModel):
    """Decoded ERC-721 Transfer event."""
    sender: str
    recipient: str
    token_ref: int
    block_number: int
    log_index: int
    tx_hash: Optional[str] = None

    @property
    def position(self) -> tuple:
        return (self.block_number, self.log_index)


class OwnershipSnapshot(BaseModel):
    """Assets held by an address, rebuilt from ledger history on every call."""
    address: str
    asset_ids: Set[str] = Field(default_factory=set)
    token_refs: Dict[str, int] = Field(default_factory=dict, description="asset id -> token reference")
    balance_hint: int = 0
    strategy: Optional[str] = Field(None, description="Discovery strategy that produced the result")
    taken_at: datetime = Field(default_factory=_utcnow)


class SealedArtifact(BaseModel):
    """A registered artifact with the asset identifier embedded in its pixels."""
    asset_id: str
    tx_hash: str
    token_ref: Optional[int] = None
    artifact_uri: str
    ip_metadata_uri: str
    nft_metadata_uri: str
    ip_metadata_digest: str
    image: bytes = Field(..., description="Watermarked artifact bytes (PNG, or SVG text)")
