#!/usr/bin/env python3
"""
Development server runner for StorySeal API
Includes auto-reload, logging, and environment checking
"""

import asyncio
import os
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

def check_environment():
    """Check environment configuration; sealing needs a wallet and Pinata credentials."""
    sealing_vars = [
        "WALLET_PRIVATE_KEY",
    ]

    optional_vars = [
        "API_HOST",
        "API_PORT",
        "DEBUG",
        "STORY_RPC_URL",
        "SPG_NFT_CONTRACT",
        "IPFS_GATEWAYS",
        "PINATA_JWT_TOKEN",
        "PINATA_API_KEY",
    ]

    missing_vars = [var for var in sealing_vars if not os.getenv(var)]
    if not (os.getenv("PINATA_JWT_TOKEN") or (os.getenv("PINATA_API_KEY") and os.getenv("PINATA_SECRET_KEY"))):
        missing_vars.append("PINATA_JWT_TOKEN or PINATA_API_KEY/PINATA_SECRET_KEY")

    if missing_vars:
        print(f"⚠️  Sealing disabled, missing: {', '.join(missing_vars)}")
        print("Watermark and lookup endpoints remain available.")
    else:
        print("✅ Sealing configuration found")

    # Show optional vars status
    print("\n📋 Optional configurations:")
    for var in optional_vars:
        value = os.getenv(var, "Not set")
        if var in ["PINATA_JWT_TOKEN", "PINATA_API_KEY"] and value != "Not set":
            # Don't show credentials
            value = f"{value[:6]}..."
        print(f"  {var}: {value}")

    return True

def check_dependencies():
    """Check if all required dependencies are available."""
    required_modules = [
        "fastapi",
        "uvicorn",
        "httpx",
        "web3",
        "eth_account",
        "PIL",  # Pillow imports as PIL
        "numpy",
        "structlog"
    ]

    missing_modules = []
    for module in required_modules:
        try:
            __import__(module)
        except ImportError:
            missing_modules.append(module)

    if missing_modules:
        print(f"❌ Missing required Python modules: {', '.join(missing_modules)}")
        print("Please run: pip install -e .")
        return False

    print("✅ All required dependencies found")
    return True

def main():
    """Main entry point for development server."""
    print("🔏 StorySeal - Development Server")
    print("=" * 50)

    # Check environment
    if not check_environment():
        sys.exit(1)

    # Check dependencies
    if not check_dependencies():
        sys.exit(1)

    # Test ledger connection
    try:
        from storyseal.core.errors import ProvenanceError
        from storyseal.core.ledger import Web3Ledger
        block = asyncio.run(Web3Ledger().get_block_number())
        print(f"✅ Ledger connection successful (block {block})")
    except ProvenanceError as e:
        print(f"❌ Ledger connection error: {str(e)}")
        print("Please check STORY_RPC_URL")
        sys.exit(1)

    # Get configuration
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", 8000))
    debug = os.getenv("DEBUG", "true").lower() == "true"

    print(f"\n🚀 Starting development server...")
    print(f"   Host: {host}")
    print(f"   Port: {port}")
    print(f"   Debug: {debug}")
    print(f"   Docs: http://{host}:{port}/docs")
    print(f"   API: http://{host}:{port}")
    print("\n⏹️  Press Ctrl+C to stop the server")
    print("=" * 50)

    # Start the server
    try:
        uvicorn.run(
            "storyseal.main:app",
            host=host,
            port=port,
            reload=debug,
            log_level="debug" if debug else "info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n🛑 Server stopped by user")

if __name__ == "__main__":
    main()
