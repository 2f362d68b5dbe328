import base64
import logging
import mimetypes
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
import uvicorn

# Load environment variables
from dotenv import load_dotenv
load_dotenv()

from storyseal import __version__, config
from storyseal.core.errors import ProvenanceError, classify_error, retry_delay_hint
from storyseal.core.gateway import GatewayVerifier
from storyseal.core.ledger import LocalAccountSigner, Web3Ledger
from storyseal.core.storage import IPFSPublisher, PinataCredentials
from storyseal.core.utils import is_address, new_session_id
from storyseal.models.responses import (
    ErrorResponse, HealthResponse, OwnershipResponse, RegistrationLookupResponse,
    SealResponse, WatermarkExtractResponse,
)
from storyseal.services import watermark
from storyseal.services.ownership import OwnershipDiscoverer
from storyseal.services.pipeline import SealPipeline
from storyseal.services.registration import RegistrationEngine
from storyseal.services.resolver import IdentifierResolver

# Configure structured logging
logging.basicConfig(format="%(message)s", level=config.LOG_LEVEL)
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Global clients, built in lifespan
ledger = None
publisher = None
verifier = None
identifier_resolver = None
ownership_discoverer = None
seal_pipeline = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    global ledger, publisher, verifier, identifier_resolver, ownership_discoverer, seal_pipeline

    # Startup
    logger.info("Starting StorySeal API")
    try:
        ledger = Web3Ledger()
        verifier = GatewayVerifier(client=httpx.AsyncClient(follow_redirects=True))
        identifier_resolver = IdentifierResolver(ledger)
        ownership_discoverer = OwnershipDiscoverer(ledger)

        credentials = PinataCredentials.from_config()
        if credentials.kind is None:
            logger.warning("Pinata credentials not configured; sealing disabled")
        elif not config.WALLET_PRIVATE_KEY:
            logger.warning("WALLET_PRIVATE_KEY not set; sealing disabled")
        else:
            publisher = IPFSPublisher(credentials)
            signer = LocalAccountSigner(config.WALLET_PRIVATE_KEY)
            engine = RegistrationEngine(ledger, signer, verifier, resolver=identifier_resolver)
            seal_pipeline = SealPipeline(publisher, verifier, engine)
            logger.info("Sealing enabled", signer=signer.address, credentials=credentials.kind)

    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise

    yield

    # Shutdown
    logger.info("Shutting down StorySeal API")
    if verifier is not None:
        await verifier.aclose()
    if publisher is not None:
        await publisher.aclose()


# Create FastAPI application
app = FastAPI(
    title="StorySeal API",
    description="Register artwork provenance on Story Protocol and embed the asset ID as an invisible watermark",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        422: {"model": ErrorResponse, "description": "Validation Error"},
        500: {"model": ErrorResponse, "description": "Internal Server Error"},
    }
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE", 20 * 1024 * 1024))  # 20MB default
SUPPORTED_RASTER_TYPES = {"image/png", "image/jpeg", "image/webp", "image/gif"}
SUPPORTED_TYPES = SUPPORTED_RASTER_TYPES | {watermark.SVG_CONTENT_TYPE}

ERROR_STATUS = {
    "USER_REJECTED": status.HTTP_403_FORBIDDEN,
    "INSUFFICIENT_FUNDS": status.HTTP_402_PAYMENT_REQUIRED,
    "DUPLICATE_REGISTRATION": status.HTTP_409_CONFLICT,
    "HASH_MISMATCH": status.HTTP_409_CONFLICT,
    "CONTRACT_VALIDATION": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "METADATA_NOT_ACCESSIBLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "IPFS_ERROR": status.HTTP_502_BAD_GATEWAY,
    "UNRESOLVED_IDENTIFIER": status.HTTP_404_NOT_FOUND,
    "CONFIRMATION_TIMEOUT": status.HTTP_504_GATEWAY_TIMEOUT,
    "REGISTRATION_FAILED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "NETWORK_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
    "WATERMARK_CAPACITY": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "WATERMARK_VERIFICATION": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
}


async def read_upload(file: UploadFile) -> tuple[bytes, str]:
    """Validate an uploaded artifact and return its bytes and content type."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required"
        )

    content_type = file.content_type or mimetypes.guess_type(file.filename)[0]
    if content_type not in SUPPORTED_TYPES:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported media type: {content_type}. Supported types: {', '.join(sorted(SUPPORTED_TYPES))}"
        )

    data = await file.read()
    if len(data) > MAX_FILE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds maximum allowed size of {MAX_FILE_SIZE} bytes"
        )
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")
    return data, content_type


def explorer_tx_url(tx_hash: str) -> str:
    return f"{config.EXPLORER_URL}/tx/{tx_hash}"


def require(component, name: str):
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not configured"
        )
    return component


@app.get("/", response_model=dict)
async def root():
    """Root endpoint with API information."""
    return {
        "name": "StorySeal API",
        "version": __version__,
        "description": "Provenance registration and invisible watermarking for artwork",
        "docs_url": "/docs",
        "health_url": "/health",
        "chain_id": config.STORY_CHAIN_ID,
    }


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint with component status."""
    components = {
        "ledger": "unavailable",
        "publisher": "healthy" if publisher is not None else "disabled",
        "signer": "healthy" if seal_pipeline is not None else "disabled",
        "gateways": config.IPFS_GATEWAYS,
    }
    try:
        if ledger is not None:
            components["block_number"] = await ledger.get_block_number()
            components["ledger"] = "healthy"
    except ProvenanceError as e:
        logger.error("Health check failed", error=str(e))
        components["ledger"] = "unhealthy"
        components["error"] = str(e)

    overall_status = "healthy" if components["ledger"] == "healthy" else "degraded"
    return HealthResponse(status=overall_status, version=__version__, components=components)


@app.post("/watermark/embed")
async def embed_watermark(
    file: UploadFile = File(..., description="Image to watermark"),
    asset_id: str = Form(..., description="Asset identifier to embed")
):
    """Embed an asset identifier into an image (PNG out) or SVG (comment marker)."""
    data, content_type = await read_upload(file)
    logger.info("Embedding watermark", filename=file.filename, content_type=content_type, asset_id=asset_id)

    try:
        if content_type == watermark.SVG_CONTENT_TYPE:
            svg = watermark.embed_watermark_in_svg(data.decode("utf-8"), asset_id)
            return Response(content=svg.encode("utf-8"), media_type=watermark.SVG_CONTENT_TYPE)
        marked = watermark.embed_watermark_in_image(data, asset_id)
    except ProvenanceError:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return Response(content=marked, media_type="image/png")


@app.post("/watermark/extract", response_model=WatermarkExtractResponse)
async def extract_watermark(file: UploadFile = File(..., description="Image to inspect")):
    """Read an embedded asset identifier back out of an image or SVG."""
    data, content_type = await read_upload(file)

    try:
        if content_type == watermark.SVG_CONTENT_TYPE:
            asset_id = watermark.extract_watermark_from_svg(data.decode("utf-8"))
        else:
            asset_id = watermark.extract_watermark_from_image(data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("Watermark extraction completed", filename=file.filename, found=asset_id is not None)
    return WatermarkExtractResponse(found=asset_id is not None, asset_id=asset_id)


@app.get("/assets/{address}", response_model=OwnershipResponse)
async def get_owned_assets(address: str):
    """List the asset identifiers currently held by an address."""
    if not is_address(address):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid address: {address}")
    discoverer = require(ownership_discoverer, "Ownership discovery")

    snapshot = await discoverer.assets_owned_by(address)
    asset_ids = sorted(snapshot.asset_ids)
    return OwnershipResponse(
        address=address,
        asset_ids=asset_ids,
        count=len(asset_ids),
        balance_hint=snapshot.balance_hint,
        strategy=snapshot.strategy,
    )


@app.get("/registrations/{tx_hash}", response_model=RegistrationLookupResponse)
async def get_registration(tx_hash: str):
    """Resolve the asset identifier created by a registration transaction."""
    resolver = require(identifier_resolver, "Identifier resolution")
    resolution = await resolver.resolve_transaction(tx_hash)
    return RegistrationLookupResponse(
        tx_hash=tx_hash,
        asset_id=resolution.asset_id,
        token_ref=resolution.token_ref,
        strategy=resolution.strategy,
        explorer_url=explorer_tx_url(tx_hash),
    )


@app.post("/seal", response_model=SealResponse)
async def seal_artifact(
    file: UploadFile = File(..., description="Artwork to register and watermark"),
    title: str = Form(..., description="Artwork title"),
    description: Optional[str] = Form(None, description="Artwork description"),
    recipient: Optional[str] = Form(None, description="Address receiving the ownership token")
):
    """
    Register an artwork on Story Protocol and return it with the new asset ID embedded.

    Publishes the artwork and its IP/NFT metadata to IPFS, verifies the
    metadata through the gateways, registers it on-chain and watermarks the
    artwork with the resulting asset ID.
    """
    pipeline = require(seal_pipeline, "Sealing")
    session_id = new_session_id()
    start_time = time.time()
    data, content_type = await read_upload(file)
    if recipient is not None and not is_address(recipient):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid recipient: {recipient}")

    with structlog.contextvars.bound_contextvars(session_id=session_id):
        logger.info("Processing seal request", filename=file.filename, content_type=content_type, title=title)
        try:
            sealed = await pipeline.seal(
                data,
                title=title,
                description=description,
                content_type=content_type,
                recipient=recipient,
            )
        except ProvenanceError:
            raise
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        logger.info("Seal request completed", asset_id=sealed.asset_id,
                    processing_time_seconds=round(time.time() - start_time, 2))

    return SealResponse(
        asset_id=sealed.asset_id,
        tx_hash=sealed.tx_hash,
        token_ref=sealed.token_ref,
        artifact_uri=sealed.artifact_uri,
        ip_metadata_uri=sealed.ip_metadata_uri,
        nft_metadata_uri=sealed.nft_metadata_uri,
        ip_metadata_digest=sealed.ip_metadata_digest,
        watermarked_image=base64.b64encode(sealed.image).decode("ascii"),
        explorer_url=explorer_tx_url(sealed.tx_hash),
        message=f"Registered as {sealed.asset_id} and watermarked",
    )


@app.exception_handler(ProvenanceError)
async def provenance_exception_handler(request: Request, exc: ProvenanceError):
    info = classify_error(exc)
    logger.error("Pipeline error",
                 url=str(request.url), method=request.method, code=info.code, stage=exc.stage, error=str(exc))
    details = {
        "stage": exc.stage,
        "detail": info.message,
        "retryable": info.retryable,
        "retry_after_seconds": retry_delay_hint(info),
        "suggestion": info.suggestion,
    }
    tx_hash = exc.context.get("tx_hash")
    if tx_hash:
        details["tx_hash"] = tx_hash
        details["explorer_url"] = explorer_tx_url(tx_hash)
    return JSONResponse(
        status_code=ERROR_STATUS.get(info.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=ErrorResponse(error=info.code, message=info.user_message, details=details).model_dump()
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error("Unhandled exception",
                 url=str(request.url), method=request.method, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_server_error", "message": "An unexpected error occurred"}
    )


if __name__ == "__main__":
    uvicorn.run(
        "storyseal.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=config.DEBUG,
        log_config=None,  # We handle logging with structlog
    )
