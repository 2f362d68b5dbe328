"""
Pydantic models for API request and response bodies.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Stable error code")
    message: str = Field(..., description="User-facing error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Stage, context and retry hints")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Overall service status")
    version: str = Field(..., description="API version")
    components: Dict[str, Any] = Field(..., description="Component health status")


class WatermarkExtractResponse(BaseModel):
    found: bool = Field(..., description="Whether a valid watermark was present")
    asset_id: Optional[str] = Field(None, description="Embedded asset identifier")


class OwnershipResponse(BaseModel):
    address: str
    asset_ids: List[str] = Field(default=[], description="Asset identifiers currently held, sorted")
    count: int
    balance_hint: int = Field(..., description="Token balance reported by the asset contract")
    strategy: Optional[str] = Field(None, description="Discovery strategy that produced the result")


class RegistrationLookupResponse(BaseModel):
    tx_hash: str
    asset_id: str
    token_ref: Optional[int] = None
    strategy: str = Field(..., description="How the identifier was resolved")
    explorer_url: str


class SealResponse(BaseModel):
    """Response model for a sealed artifact."""
    asset_id: str = Field(..., description="Registered asset identifier embedded in the artifact")
    tx_hash: str = Field(..., description="Registration transaction hash")
    token_ref: Optional[int] = None
    artifact_uri: str = Field(..., description="ipfs:// locator of the original artifact")
    ip_metadata_uri: str
    nft_metadata_uri: str
    ip_metadata_digest: str
    watermarked_image: str = Field(..., description="Base64 encoded watermarked artifact")
    explorer_url: str
    message: str = Field(..., description="Human-readable message")
