import os

# Ledger (Story Aeneid testnet)
STORY_RPC_URL = os.getenv("STORY_RPC_URL", "https://aeneid.storyrpc.io").strip()
STORY_CHAIN_ID = int(os.getenv("STORY_CHAIN_ID", 1315))

REGISTRATION_WORKFLOWS_ADDRESS = os.getenv(
    "REGISTRATION_WORKFLOWS_ADDRESS", "0xbe39E1C756e921BD25DF86e7AAa31106d1eb0424"
)
IP_ASSET_REGISTRY_ADDRESS = os.getenv(
    "IP_ASSET_REGISTRY_ADDRESS", "0x77319B4031e6eF1250907aa00018B8B1c67a244b"
)
SPG_NFT_CONTRACT = os.getenv("SPG_NFT_CONTRACT", "0xc32A8a0FF3beDDDa58393d022aF433e78739FAbc")

ALLOW_DUPLICATES = os.getenv("ALLOW_DUPLICATES", "true").lower() == "true"

# Signing
WALLET_PRIVATE_KEY = os.getenv("WALLET_PRIVATE_KEY", "")

# Pinata / IPFS
PINATA_ENDPOINT = os.getenv("PINATA_ENDPOINT", "https://api.pinata.cloud/pinning/pinFileToIPFS")
PINATA_JWT_TOKEN = os.getenv("PINATA_JWT_TOKEN", "")
PINATA_API_KEY = os.getenv("PINATA_API_KEY", "")
PINATA_SECRET_KEY = os.getenv("PINATA_SECRET_KEY", "")
PINATA_MIN_INTERVAL_SECONDS = float(os.getenv("PINATA_MIN_INTERVAL_SECONDS", 0.5))
PINATA_TIMEOUT_SECONDS = float(os.getenv("PINATA_TIMEOUT_SECONDS", 60))

# First gateway is the one written into on-ledger URIs
IPFS_GATEWAYS = [
    g.strip()
    for g in os.getenv("IPFS_GATEWAYS", "https://ipfs.io/ipfs/,https://gateway.pinata.cloud/ipfs/").split(",")
    if g.strip()
]
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", 30))
PROPAGATION_DELAY_SECONDS = float(os.getenv("PROPAGATION_DELAY_SECONDS", 10))

# Registration
REGISTRATION_MAX_ATTEMPTS = int(os.getenv("REGISTRATION_MAX_ATTEMPTS", 3))
RETRY_BASE_DELAY_SECONDS = float(os.getenv("RETRY_BASE_DELAY_SECONDS", 5))
RETRY_MAX_DELAY_SECONDS = float(os.getenv("RETRY_MAX_DELAY_SECONDS", 30))
GAS_MARGIN = float(os.getenv("GAS_MARGIN", 1.2))
RECEIPT_TIMEOUT_SECONDS = float(os.getenv("RECEIPT_TIMEOUT_SECONDS", 180))

# Resolution / discovery
RESOLVER_BLOCK_RANGE = int(os.getenv("RESOLVER_BLOCK_RANGE", 1000))
OWNERSHIP_BLOCK_WINDOW = int(os.getenv("OWNERSHIP_BLOCK_WINDOW", 50000))
REGISTRY_SCAN_WINDOW = int(os.getenv("REGISTRY_SCAN_WINDOW", 20000))
OWNERSHIP_BATCH_SIZE = int(os.getenv("OWNERSHIP_BATCH_SIZE", 10))
METADATA_CACHE_TTL_SECONDS = float(os.getenv("METADATA_CACHE_TTL_SECONDS", 60))
METADATA_CACHE_MAX_ENTRIES = int(os.getenv("METADATA_CACHE_MAX_ENTRIES", 1024))

# Watermark
WATERMARK_MAX_BITS = int(os.getenv("WATERMARK_MAX_BITS", 1000))

# Explorer link used in log lines
EXPLORER_URL = os.getenv("EXPLORER_URL", "https://aeneid.explorer.story.foundation")

# API
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", 8000))
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
