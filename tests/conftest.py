import asyncio
from typing import Dict, List, Optional

import httpx
import numpy as np
import pytest
from eth_abi import encode as abi_encode

from storyseal.core.canonical import digest
from storyseal.core.errors import ContractValidationError, UserRejectedError
from storyseal.core.gateway import GatewayVerifier
from storyseal.core.ledger import IP_REGISTERED_TOPIC, LedgerClient, Signer, address_to_topic
from storyseal.models.provenance import (
    LogEntry,
    PublicationRecord,
    RegistrationEvent,
    RegistrationRequest,
    TransactionReceipt,
    TransferEvent,
)

WALLET = "0x" + "11" * 20
OTHER = "0x" + "22" * 20
REGISTRY = "0x" + "33" * 20
ASSET_ID = "0x" + "ab" * 20
TX_HASH = "0x" + "cd" * 32
GATEWAY = "https://gateway.test/ipfs/"
BACKUP_GATEWAY = "https://backup.test/ipfs/"


def asset_for(token_ref: int) -> str:
    return "0x" + format(token_ref, "040x")


def ip_registered_log(asset_id: str, token_ref: int, tx_hash: str = TX_HASH,
                      block_number: int = 100, log_index: int = 0) -> LogEntry:
    data = abi_encode(["uint256", "string"], [token_ref, "https://gateway.test/ipfs/QmMeta"])
    return LogEntry(
        address=REGISTRY,
        topics=[IP_REGISTERED_TOPIC, address_to_topic(WALLET), address_to_topic(asset_id), address_to_topic(REGISTRY)],
        data="0x" + data.hex(),
        block_number=block_number,
        log_index=log_index,
        tx_hash=tx_hash,
    )


class FakeLedger(LedgerClient):
    """In-memory ledger recording every call it receives."""

    chain_id = 1315

    def __init__(self):
        self.calls: List[str] = []
        self.balance = 10 ** 18
        self.block_number = 100
        self.code = True
        self.simulate_errors: List[Optional[Exception]] = []
        self.send_errors: List[Optional[Exception]] = []
        self.receipt_error: Optional[BaseException] = None
        self.gas_estimate = 100_000
        self.max_fee = 10
        self.receipt = TransactionReceipt(tx_hash=TX_HASH, block_number=100, gas_used=90_000,
                                          logs=[ip_registered_log(ASSET_ID, 7)])
        self.receipts: Dict[str, TransactionReceipt] = {}
        self.registry_events: List[RegistrationEvent] = []
        self.supply = 0
        self.owners: Dict[int, str] = {}
        self.balances: Dict[str, int] = {}
        self.transfers: List[TransferEvent] = []
        self.log_queries: List[tuple] = []

    async def get_balance(self, address):
        self.calls.append("get_balance")
        return self.balance

    async def get_block_number(self):
        return self.block_number

    async def has_code(self, address):
        self.calls.append("has_code")
        return self.code

    async def simulate_registration(self, request, sender):
        self.calls.append("simulate")
        if self.simulate_errors:
            error = self.simulate_errors.pop(0)
            if error is not None:
                raise error

    async def build_registration_transaction(self, request, sender):
        self.calls.append("build")
        return {"from": sender, "to": REGISTRY, "data": "0x", "value": 0, "nonce": 0,
                "chainId": self.chain_id, "maxFeePerGas": self.max_fee, "maxPriorityFeePerGas": 1}

    async def estimate_gas(self, tx):
        self.calls.append("estimate_gas")
        return self.gas_estimate

    async def send_raw_transaction(self, raw):
        self.calls.append("send")
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        return self.receipt.tx_hash

    async def wait_for_receipt(self, tx_hash, timeout):
        self.calls.append("wait")
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipt

    async def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    async def get_registration_events(self, from_block, to_block):
        self.log_queries.append((from_block, to_block))
        return [e for e in self.registry_events if from_block <= e.block_number <= to_block]

    async def total_supply(self):
        return self.supply

    async def derive_asset_id(self, token_ref):
        self.calls.append("derive")
        return asset_for(token_ref)

    async def owner_of(self, token_ref):
        self.calls.append("owner_of")
        if token_ref not in self.owners:
            raise ContractValidationError("ERC721NonexistentToken", stage="read", token_ref=token_ref)
        return self.owners[token_ref]

    async def balance_of(self, owner):
        return self.balances.get(owner.lower(), 0)

    async def get_transfer_events(self, from_block, to_block, sender=None, recipient=None):
        events = [e for e in self.transfers if from_block <= e.block_number <= to_block]
        if sender:
            events = [e for e in events if e.sender.lower() == sender.lower()]
        if recipient:
            events = [e for e in events if e.recipient.lower() == recipient.lower()]
        return events


class FakeSigner(Signer):
    def __init__(self, address: str = WALLET, reject: bool = False):
        self._address = address
        self.reject = reject
        self.signed: List[dict] = []

    @property
    def address(self):
        return self._address

    async def sign_transaction(self, tx):
        if self.reject:
            raise UserRejectedError("User rejected the request", stage="sign")
        self.signed.append(tx)
        return b"signed"


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def gateway_client(content: Dict[str, bytes], failing: tuple = (), requests: Optional[list] = None) -> httpx.AsyncClient:
    """AsyncClient answering gateway URLs from ``content``; hosts in ``failing`` refuse connections."""
    requests = requests if requests is not None else []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        if request.url.host in failing:
            raise httpx.ConnectError("connection refused", request=request)
        cid = request.url.path.rsplit("/", 1)[-1]
        if cid not in content:
            return httpx.Response(404, request=request)
        return httpx.Response(200, content=content[cid], request=request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_request(ip_payload: bytes = b'{"title":"sunset"}', nft_payload: bytes = b'{"name":"sunset"}') -> RegistrationRequest:
    return RegistrationRequest(
        recipient=WALLET,
        ip_metadata=PublicationRecord(content_uri="ipfs://QmIp", digest=digest(ip_payload)),
        nft_metadata=PublicationRecord(content_uri="ipfs://QmNft", digest=digest(nft_payload)),
        ip_metadata_uri=GATEWAY + "QmIp",
        nft_metadata_uri=GATEWAY + "QmNft",
    )


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def verifier():
    client = gateway_client({"QmIp": b'{"title":"sunset"}', "QmNft": b'{"name":"sunset"}'})
    return GatewayVerifier(gateways=[GATEWAY, BACKUP_GATEWAY], client=client, timeout=1)


@pytest.fixture
def opaque_image():
    rng = np.random.default_rng(42)
    pixels = rng.integers(0, 256, size=(64, 64, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    return pixels
