"""
Invisible LSB watermark carrying an asset identifier.

Layout, one bit per channel sample in raster order (RGBA, alpha included):

    [32-bit big-endian bit count][identifier bytes, MSB first][0x00 terminator]

Each touched sample changes by at most 1. Every embed is followed by an
extract of the produced buffer and fails loudly if the identifier does not
come back.
"""

import io
import re
from typing import Optional

import numpy as np
import structlog
from PIL import Image, UnidentifiedImageError

from storyseal import config
from storyseal.core.errors import CapacityError, InvalidIdentifierError, VerificationFailedError

logger = structlog.get_logger()

IDENTIFIER_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
LENGTH_PREFIX_BITS = 32
SVG_CONTENT_TYPE = "image/svg+xml"
SVG_MARKER = "SEAL-IP"
SVG_COMMENT_PATTERN = re.compile(r"<!--\s*SEAL-IP:(0x[0-9a-fA-F]{40})\s*-->")
SVG_OPEN_TAG = re.compile(r"<svg\b[^>]*>", re.IGNORECASE)


def validate_identifier(identifier: str) -> str:
    if not isinstance(identifier, str) or not IDENTIFIER_PATTERN.match(identifier):
        raise InvalidIdentifierError(
            f"Invalid asset identifier: {identifier!r}",
            stage="watermark",
            identifier=identifier,
        )
    return identifier


def required_samples(identifier: str) -> int:
    """Channel samples needed to carry ``identifier``."""
    return LENGTH_PREFIX_BITS + 8 * (len(identifier.encode("utf-8")) + 1)


def encode_bits(identifier: str) -> np.ndarray:
    """Length prefix followed by payload and terminator, as a 0/1 array."""
    payload = identifier.encode("utf-8") + b"\x00"
    payload_bits = np.unpackbits(np.frombuffer(payload, dtype=np.uint8))
    prefix = np.unpackbits(np.frombuffer(len(payload_bits).to_bytes(4, "big"), dtype=np.uint8))
    return np.concatenate([prefix, payload_bits])


def embed(pixels: np.ndarray, identifier: str) -> np.ndarray:
    """
    Write ``identifier`` into the LSBs of a copy of ``pixels``.

    Args:
        pixels: uint8 array, typically H x W x 4
        identifier: ``0x`` followed by 40 hex characters

    Returns:
        New array carrying the watermark; the input is never modified

    Raises:
        CapacityError: fewer samples than the encoded watermark needs
        VerificationFailedError: the written watermark did not read back
    """
    validate_identifier(identifier)
    pixels = np.asarray(pixels)
    if pixels.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixel data, got {pixels.dtype}")

    bits = encode_bits(identifier)
    if pixels.size < len(bits):
        raise CapacityError(
            f"Image too small for watermark: {pixels.size} channel samples, {len(bits)} required",
            stage="watermark",
            available=pixels.size,
            required=len(bits),
        )

    marked = pixels.copy()
    flat = marked.reshape(-1)
    flat[:len(bits)] = (flat[:len(bits)] & 0xFE) | bits

    recovered = extract(marked)
    if recovered is None or recovered.lower() != identifier.lower():
        logger.error("Watermark round-trip failed", expected=identifier, recovered=recovered)
        raise VerificationFailedError(
            "Watermark verification failed after embedding",
            stage="watermark",
            expected=identifier,
            recovered=recovered,
        )

    logger.debug("Watermark embedded", identifier=identifier, bits=len(bits), samples=pixels.size)
    return marked


def extract(pixels: np.ndarray, max_bits: int = config.WATERMARK_MAX_BITS) -> Optional[str]:
    """Read an identifier back out of ``pixels``; None when there is no valid watermark."""
    flat = np.asarray(pixels).reshape(-1)
    if flat.size < LENGTH_PREFIX_BITS:
        return None

    prefix = (flat[:LENGTH_PREFIX_BITS] & 1).astype(np.uint8)
    length = int.from_bytes(np.packbits(prefix).tobytes(), "big")
    if length <= 0 or length > max_bits:
        return None
    if flat.size < LENGTH_PREFIX_BITS + length:
        return None

    bits = (flat[LENGTH_PREFIX_BITS:LENGTH_PREFIX_BITS + length] & 1).astype(np.uint8)
    data = np.packbits(bits).tobytes()
    terminator = data.find(b"\x00")
    if terminator != -1:
        data = data[:terminator]

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return None
    return text if IDENTIFIER_PATTERN.match(text) else None


# Image helpers

def load_rgba(image_bytes: bytes) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            return np.array(image.convert("RGBA"))
    except UnidentifiedImageError as e:
        raise ValueError("Unsupported or corrupt image data") from e


def embed_watermark_in_image(image_bytes: bytes, identifier: str) -> bytes:
    """Watermark an encoded image and return lossless PNG bytes."""
    pixels = load_rgba(image_bytes)
    marked = embed(pixels, identifier)
    output = io.BytesIO()
    Image.fromarray(marked).save(output, format="PNG")
    logger.info("Watermark embedded in image", identifier=identifier,
                width=pixels.shape[1], height=pixels.shape[0])
    return output.getvalue()


def extract_watermark_from_image(image_bytes: bytes) -> Optional[str]:
    return extract(load_rgba(image_bytes))


def has_watermark(image_bytes: bytes) -> bool:
    try:
        return extract_watermark_from_image(image_bytes) is not None
    except ValueError:
        return False


# SVG helpers

def embed_watermark_in_svg(svg: str, identifier: str) -> str:
    """Place a ``<!-- SEAL-IP:... -->`` comment right after the opening svg tag."""
    validate_identifier(identifier)
    # Replace any earlier marker instead of stacking a second one
    cleaned = SVG_COMMENT_PATTERN.sub("", svg)
    match = SVG_OPEN_TAG.search(cleaned)
    if match is None:
        raise ValueError("Document has no <svg> element")
    comment = f"<!-- {SVG_MARKER}:{identifier} -->"
    return cleaned[:match.end()] + comment + cleaned[match.end():]


def extract_watermark_from_svg(svg: str) -> Optional[str]:
    match = SVG_COMMENT_PATTERN.search(svg)
    return match.group(1) if match else None
