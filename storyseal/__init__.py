"""
StorySeal - Provenance registration for AI-generated artwork

Publishes artwork metadata to IPFS, registers it as an IP asset on Story
Protocol and embeds the resulting asset ID into the artwork as an invisible
watermark.
"""

__version__ = "1.0.0"
__author__ = "StorySeal Team"
__description__ = "Provenance Registration and Invisible Watermarking"
