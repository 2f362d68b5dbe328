"""
Provenance services for registration, resolution, ownership discovery and watermarking.
"""

from .registration import *
from .resolver import *
from .ownership import *
from .watermark import *
