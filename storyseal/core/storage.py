import asyncio
import json
import mimetypes
import time
from typing import Dict, Optional

import httpx
import structlog

from storyseal import config
from storyseal.core.errors import PublicationError
from storyseal.core.utils import format_file_size, sanitize_filename

logger = structlog.get_logger()


class PinataCredentials:
    """Either a JWT or an API key + secret pair; the pair wins when both are set."""

    def __init__(self, jwt_token: str = "", api_key: str = "", secret_key: str = ""):
        self.jwt_token = (jwt_token or "").strip()
        self.api_key = (api_key or "").strip()
        self.secret_key = (secret_key or "").strip()

    @classmethod
    def from_config(cls) -> "PinataCredentials":
        return cls(config.PINATA_JWT_TOKEN, config.PINATA_API_KEY, config.PINATA_SECRET_KEY)

    @property
    def kind(self) -> Optional[str]:
        if self.api_key and self.secret_key:
            return "apikey"
        if self.jwt_token:
            return "jwt"
        return None

    def headers(self) -> Dict[str, str]:
        kind = self.kind
        if kind == "apikey":
            return {"pinata_api_key": self.api_key, "pinata_secret_api_key": self.secret_key}
        if kind == "jwt":
            return {"Authorization": f"Bearer {self.jwt_token}"}
        if self.api_key and not self.secret_key:
            raise PublicationError("Pinata secret key is missing; the API key alone is not enough",
                                   stage="publish")
        if self.secret_key and not self.api_key:
            raise PublicationError("Pinata API key is missing; the secret key alone is not enough",
                                   stage="publish")
        raise PublicationError(
            "Pinata credentials not configured. Set PINATA_JWT_TOKEN or PINATA_API_KEY and PINATA_SECRET_KEY",
            stage="publish",
        )


class IPFSPublisher:
    """Pins payloads on IPFS through the Pinata pinning API."""

    def __init__(self,
                 credentials: Optional[PinataCredentials] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 endpoint: str = config.PINATA_ENDPOINT,
                 min_interval: float = config.PINATA_MIN_INTERVAL_SECONDS):
        self.credentials = credentials or PinataCredentials.from_config()
        self.client = client or httpx.AsyncClient(timeout=config.PINATA_TIMEOUT_SECONDS)
        self.endpoint = endpoint
        self.min_interval = min_interval
        self._last_request = 0.0
        self._throttle_lock = asyncio.Lock()

        logger.info("IPFS publisher initialized", endpoint=endpoint, credentials=self.credentials.kind)

    async def _throttle(self):
        # Pinata rate-limits bursts; space requests out
        async with self._throttle_lock:
            wait = self.min_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def publish(self, payload: bytes, content_type: str, filename: Optional[str] = None) -> str:
        """
        Upload a payload and return its ``ipfs://`` locator.

        Args:
            payload: Bytes to pin
            content_type: MIME type of the payload
            filename: Optional name recorded in the pin metadata

        Returns:
            ``ipfs://<cid>`` URI
        """
        headers = self.credentials.headers()
        filename = sanitize_filename(filename or f"file{mimetypes.guess_extension(content_type) or ''}")

        logger.info("Starting IPFS upload",
                    filename=filename,
                    content_type=content_type,
                    file_size_human=format_file_size(len(payload)))

        files = {"file": (filename, payload, content_type)}
        data = {
            "pinataMetadata": json.dumps({"name": filename}),
            "pinataOptions": json.dumps({"cidVersion": 0}),
        }

        await self._throttle()
        start_time = time.time()
        try:
            response = await self.client.post(self.endpoint, headers=headers, files=files, data=data)
        except httpx.HTTPError as e:
            logger.error("IPFS upload request failed", filename=filename, error=str(e))
            raise PublicationError(f"Failed to upload to IPFS: {e}", stage="publish", filename=filename) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            error = body.get("error")
            detail = (error.get("details") if isinstance(error, dict) else error) or body.get("message")
            detail = detail or response.reason_phrase
            logger.error("Pinata API error", filename=filename, status_code=response.status_code, detail=detail)
            raise PublicationError(f"Pinata API error: {detail}", stage="publish",
                                   filename=filename, status_code=response.status_code)

        cid = response.json().get("IpfsHash")
        if not cid:
            raise PublicationError("No IPFS hash returned from Pinata", stage="publish", filename=filename)

        content_uri = f"ipfs://{cid}"
        logger.info("IPFS upload completed successfully",
                    filename=filename,
                    content_uri=content_uri,
                    upload_time_seconds=round(time.time() - start_time, 2))
        return content_uri

    async def publish_json(self, payload: bytes, filename: str = "metadata.json") -> str:
        """Publish already-canonicalized JSON bytes without re-serializing them."""
        return await self.publish(payload, "application/json", filename)

    async def aclose(self):
        await self.client.aclose()


def gateway_url(content_uri: str, gateway: str) -> str:
    """Resolve an ``ipfs://`` URI against an HTTP gateway prefix."""
    cid = content_uri
    for prefix in ("ipfs://", "https://ipfs.io/ipfs/", "https://gateway.pinata.cloud/ipfs/"):
        if cid.startswith(prefix):
            cid = cid[len(prefix):]
            break
    if not gateway.endswith("/"):
        gateway += "/"
    return f"{gateway}{cid}"
