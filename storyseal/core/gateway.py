"""
Gateway verification of published payloads.

Before anything is written to the ledger the payload is fetched back through
the configured IPFS gateways and its digest recomputed. The registry contract
performs the same fetch-and-compare during execution and reverts on a
mismatch, so a mismatch here is fatal.
"""

import time
from typing import List, Optional

import httpx
import structlog

from storyseal import config
from storyseal.core.canonical import digest as compute_digest
from storyseal.core.errors import HashMismatchError, NotYetAccessibleError
from storyseal.core.storage import gateway_url
from storyseal.models.provenance import ContentDigest, PublicationRecord

logger = structlog.get_logger()


class GatewayVerifier:
    """Refetch a payload through an ordered gateway list and compare digests."""

    def __init__(self,
                 gateways: Optional[List[str]] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = config.GATEWAY_TIMEOUT_SECONDS):
        self.gateways = list(config.IPFS_GATEWAYS if gateways is None else gateways)
        if not self.gateways:
            raise ValueError("At least one IPFS gateway is required")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(follow_redirects=True)

    @property
    def primary_gateway(self) -> str:
        return self.gateways[0]

    async def _fetch(self, url: str) -> bytes:
        response = await self.client.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    async def verify(self, content_uri: str, expected_digest: ContentDigest) -> PublicationRecord:
        """
        Confirm a gateway serves bytes hashing to ``expected_digest``.

        Returns:
            PublicationRecord with ``gateway_used`` set

        Raises:
            HashMismatchError: a gateway served different bytes
            NotYetAccessibleError: no gateway served the content
        """
        failures = []
        for gateway in self.gateways:
            url = gateway_url(content_uri, gateway)
            start_time = time.time()
            try:
                payload = await self._fetch(url)
            except httpx.HTTPError as e:
                # Fall through to the next gateway
                logger.warning("Gateway fetch failed", gateway=gateway, url=url, error=str(e))
                failures.append(f"{gateway}: {e}")
                continue

            actual = compute_digest(payload)
            if actual != expected_digest:
                logger.error("Gateway served mismatching content",
                             gateway=gateway, expected=expected_digest.hex, actual=actual.hex)
                raise HashMismatchError(
                    f"Metadata hash mismatch: expected {expected_digest.hex} but got {actual.hex}",
                    stage="verify",
                    content_uri=content_uri,
                    gateway=gateway,
                    expected=expected_digest.hex,
                    actual=actual.hex,
                )

            logger.info("Gateway content verified",
                        gateway=gateway,
                        content_uri=content_uri,
                        digest=expected_digest.hex,
                        fetch_time_seconds=round(time.time() - start_time, 2))
            return PublicationRecord(content_uri=content_uri, digest=expected_digest, gateway_used=gateway)

        raise NotYetAccessibleError(
            f"Content not accessible through any of {len(self.gateways)} gateways",
            stage="verify",
            content_uri=content_uri,
            failures="; ".join(failures),
        )

    async def aclose(self):
        await self.client.aclose()
