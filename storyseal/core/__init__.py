"""
Core infrastructure modules for canonical hashing, storage, gateways and the ledger.
"""

from .errors import *
from .canonical import *
from .storage import *
from .gateway import *
from .utils import *
