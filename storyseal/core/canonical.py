"""
Deterministic metadata canonicalization and content hashing.

The registry contract fetches the published metadata and hashes it itself,
so the bytes hashed here must be exactly the bytes uploaded.
"""

import hashlib
import json
import secrets
import time
from typing import Any, Dict, Optional

import structlog

from storyseal.models.provenance import CanonicalMetadata, ContentDigest

logger = structlog.get_logger()

DEFAULT_IP_DESCRIPTION = "AI-generated artwork with invisible watermark protection"
DEFAULT_NFT_DESCRIPTION = "Ownership NFT for StorySeal IP Asset"


def _normalize(value: Any) -> Any:
    """Recursively normalize line endings and container types."""
    if isinstance(value, str):
        return value.replace("\r\n", "\n").replace("\r", "\n")
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def canonicalize(doc: Dict[str, Any]) -> bytes:
    """Serialize a document to canonical UTF-8 JSON bytes.

    Keys are sorted at every level, separators carry no whitespace and line
    endings inside strings are normalized to ``\\n``.
    """
    return json.dumps(
        _normalize(doc),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def digest(payload: bytes) -> ContentDigest:
    """SHA-256 of the payload as a bytes32-compatible digest."""
    return ContentDigest(hex="0x" + hashlib.sha256(payload).hexdigest())


def make_uniqueness_salt(wallet_address: str) -> str:
    """Salt that keeps otherwise identical registrations from colliding."""
    return f"{wallet_address.lower()}-{time.time_ns()}-{secrets.token_hex(8)}"


def prepare(doc: Dict[str, Any]) -> CanonicalMetadata:
    """Canonicalize a document and bind it to its digest."""
    payload = canonicalize(doc)
    content_digest = digest(payload)
    logger.debug("Prepared canonical metadata", digest=content_digest.hex, size=len(payload))
    return CanonicalMetadata(document=_normalize(doc), payload=payload, digest=content_digest)


def media_type_for(media_url: str, content_type: Optional[str] = None) -> str:
    if content_type:
        return content_type
    return "image/svg+xml" if "svg" in media_url.lower() else "image/png"


def build_ip_metadata(
    title: str,
    media_url: str,
    salt: str,
    description: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
    content_type: Optional[str] = None,
) -> CanonicalMetadata:
    """IP metadata document with the uniqueness salt injected."""
    doc = {
        "title": title,
        "description": description or DEFAULT_IP_DESCRIPTION,
        "image": media_url,
        "mediaUrl": media_url,
        "mediaType": media_type_for(media_url, content_type),
        "attributes": dict(attributes or {}),
        "salt": salt,
    }
    return prepare(doc)


def build_nft_metadata(
    name: str,
    media_url: str,
    salt: str,
    description: Optional[str] = None,
) -> CanonicalMetadata:
    """ERC-721 style metadata for the ownership token."""
    doc = {
        "name": name,
        "description": description or DEFAULT_NFT_DESCRIPTION,
        "image": media_url,
        "salt": salt,
    }
    return prepare(doc)
