"""
End-to-end sealing: publish, register, watermark.
"""

import asyncio
import time
from typing import Any, Dict, Optional

import structlog

from storyseal import config
from storyseal.core.canonical import build_ip_metadata, build_nft_metadata, make_uniqueness_salt
from storyseal.core.errors import CapacityError, ProvenanceError, VerificationFailedError
from storyseal.core.gateway import GatewayVerifier
from storyseal.core.retry import Sleep
from storyseal.core.storage import IPFSPublisher, gateway_url
from storyseal.models.provenance import PublicationRecord, RegistrationRequest, SealedArtifact
from storyseal.services import watermark
from storyseal.services.registration import RegistrationEngine

logger = structlog.get_logger()


class SealPipeline:
    """Publishes an artifact with its metadata, registers it and embeds the new asset identifier."""

    def __init__(self,
                 publisher: IPFSPublisher,
                 verifier: GatewayVerifier,
                 engine: RegistrationEngine,
                 propagation_delay: float = config.PROPAGATION_DELAY_SECONDS,
                 allow_duplicates: bool = config.ALLOW_DUPLICATES,
                 sleep: Sleep = asyncio.sleep):
        self.publisher = publisher
        self.verifier = verifier
        self.engine = engine
        self.propagation_delay = propagation_delay
        self.allow_duplicates = allow_duplicates
        self.sleep = sleep

    async def seal(self,
                   artifact: bytes,
                   title: str,
                   description: Optional[str] = None,
                   attributes: Optional[Dict[str, Any]] = None,
                   content_type: str = "image/png",
                   recipient: Optional[str] = None) -> SealedArtifact:
        """
        Seal an artifact.

        A fresh uniqueness salt is generated on every call, so sealing again
        after a ``DuplicateRegistrationError`` produces a new digest.
        """
        start_time = time.time()
        signer_address = self.engine.signer.address
        recipient = recipient or signer_address
        is_svg = content_type == watermark.SVG_CONTENT_TYPE

        # Fail on unusable artifacts before anything is published or paid for
        if is_svg:
            if not watermark.SVG_OPEN_TAG.search(artifact.decode("utf-8")):
                raise ValueError("Document has no <svg> element")
        else:
            pixels = watermark.load_rgba(artifact)
            needed = watermark.required_samples("0x" + "0" * 40)
            if pixels.size < needed:
                raise CapacityError(
                    f"Image too small for watermark: {pixels.size} channel samples, {needed} required",
                    stage="watermark", available=pixels.size, required=needed,
                )

        artifact_uri = await self.publisher.publish(artifact, content_type, "artifact.svg" if is_svg else "artifact.png")
        media_url = gateway_url(artifact_uri, self.verifier.primary_gateway)

        salt = make_uniqueness_salt(signer_address)
        ip_metadata = build_ip_metadata(title, media_url, salt, description, attributes, content_type)
        nft_metadata = build_nft_metadata(title, media_url, salt, description)

        ip_uri = await self.publisher.publish_json(ip_metadata.payload, "ip-metadata.json")
        nft_uri = await self.publisher.publish_json(nft_metadata.payload, "nft-metadata.json")
        logger.info("Metadata published", ip_metadata_uri=ip_uri, nft_metadata_uri=nft_uri,
                    ip_metadata_hash=ip_metadata.digest.hex)

        if self.propagation_delay > 0:
            logger.debug("Waiting for IPFS propagation", delay_seconds=self.propagation_delay)
            await self.sleep(self.propagation_delay)

        request = RegistrationRequest(
            recipient=recipient,
            ip_metadata=PublicationRecord(content_uri=ip_uri, digest=ip_metadata.digest),
            nft_metadata=PublicationRecord(content_uri=nft_uri, digest=nft_metadata.digest),
            ip_metadata_uri=gateway_url(ip_uri, self.verifier.primary_gateway),
            nft_metadata_uri=gateway_url(nft_uri, self.verifier.primary_gateway),
            allow_duplicates=self.allow_duplicates,
        )
        result = await self.engine.register(request)

        try:
            if is_svg:
                sealed = watermark.embed_watermark_in_svg(artifact.decode("utf-8"), result.asset_id).encode("utf-8")
            else:
                sealed = watermark.embed_watermark_in_image(artifact, result.asset_id)
        except ProvenanceError as e:
            # The registration is already on-chain; keep its references on the error
            e.context.update(tx_hash=result.tx_hash, asset_id=result.asset_id)
            logger.error("Watermarking failed after registration", error=str(e),
                         tx_hash=result.tx_hash, asset_id=result.asset_id)
            raise
        except ValueError as e:
            logger.error("Watermarking failed after registration", error=str(e),
                         tx_hash=result.tx_hash, asset_id=result.asset_id)
            raise VerificationFailedError(
                f"Registered as {result.asset_id} but the watermark could not be embedded: {e}",
                stage="watermark", tx_hash=result.tx_hash, asset_id=result.asset_id,
            ) from e

        logger.info("Artifact sealed",
                    asset_id=result.asset_id,
                    tx_hash=result.tx_hash,
                    processing_time_seconds=round(time.time() - start_time, 2))
        return SealedArtifact(
            asset_id=result.asset_id,
            tx_hash=result.tx_hash,
            token_ref=result.token_ref,
            artifact_uri=artifact_uri,
            ip_metadata_uri=request.ip_metadata_uri,
            nft_metadata_uri=request.nft_metadata_uri,
            ip_metadata_digest=ip_metadata.digest.hex,
            image=sealed,
        )
