"""
Ledger and signing boundary.

The pipeline talks to the ledger only through ``LedgerClient`` and to the
wallet only through ``Signer``. ``Web3Ledger`` is the JSON-RPC implementation
for the Story registry contracts. Every failure coming out of web3 is turned
into one typed error here, with the raw revert bytes and decoded reason
attached, so nothing downstream has to dig through exception chains.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import aiohttp
import structlog
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3RPCError

from storyseal import config
from storyseal.core.errors import (
    ContractValidationError,
    DuplicateRegistrationError,
    InsufficientFundsError,
    ProvenanceError,
    TransientNetworkError,
    UserRejectedError,
)
from storyseal.models.provenance import (
    LogEntry,
    RegistrationEvent,
    RegistrationRequest,
    TransactionReceipt,
    TransferEvent,
)

logger = structlog.get_logger()


# Contract surface --------------------------------------------------------

REGISTRATION_WORKFLOWS_ABI = [
    {
        "name": "mintAndRegisterIp",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spgNftContract", "type": "address"},
            {"name": "recipient", "type": "address"},
            {
                "name": "ipMetadata",
                "type": "tuple",
                "components": [
                    {"name": "ipMetadataURI", "type": "string"},
                    {"name": "ipMetadataHash", "type": "bytes32"},
                    {"name": "nftMetadataURI", "type": "string"},
                    {"name": "nftMetadataHash", "type": "bytes32"},
                ],
            },
            {"name": "allowDuplicates", "type": "bool"},
        ],
        "outputs": [
            {"name": "ipId", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
        ],
    },
]

IP_ASSET_REGISTRY_ABI = [
    {
        "name": "ipId",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "chainId", "type": "uint256"},
            {"name": "tokenContract", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
        ],
        "outputs": [{"name": "ipId", "type": "address"}],
    },
]

SPG_NFT_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "balance", "type": "uint256"}],
    },
    {
        "name": "ownerOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "owner", "type": "address"}],
    },
    {
        "name": "totalSupply",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "totalSupply", "type": "uint256"}],
    },
]

# IPRegistered(address indexed caller, address indexed ipId, address indexed ipAssetRegistry,
#              uint256 tokenId, string ipMetadataURI)
IP_REGISTERED_TOPIC = Web3.to_hex(Web3.keccak(text="IPRegistered(address,address,address,uint256,string)"))
# Transfer(address indexed from, address indexed to, uint256 indexed tokenId)
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))

# Custom errors the registration workflow can revert with
CONTRACT_ERRORS: Dict[str, List[str]] = {
    "TransactionFailed": [],
    "MetadataHashMismatch": ["bytes32", "bytes32"],
    "MetadataNotAccessible": ["string"],
    "InvalidSPGContract": ["address"],
    "InvalidRecipient": ["address"],
    "InsufficientFunds": [],
    "SPGNFT__DuplicatedNFTMetadataHash": ["address", "bytes32"],
    "Error": ["string"],
    "Panic": ["uint256"],
}

# Selectors seen in the wild that do not match a declared signature
KNOWN_SELECTORS = {
    "0x3bdad64c": "TransactionFailed",
}


def error_selector(name: str, types: List[str]) -> bytes:
    return bytes(Web3.keccak(text=f"{name}({','.join(types)})")[:4])


_SELECTOR_TABLE = {error_selector(name, types): (name, types) for name, types in CONTRACT_ERRORS.items()}


def decode_revert(data: Optional[bytes]) -> Tuple[Optional[str], tuple]:
    """Decode revert bytes into ``(error_name, args)``; ``(None, ())`` when unknown."""
    if not data or len(data) < 4:
        return None, ()
    selector, body = data[:4], data[4:]
    entry = _SELECTOR_TABLE.get(selector)
    if entry is None:
        return KNOWN_SELECTORS.get("0x" + selector.hex()), ()
    name, types = entry
    if not types:
        return name, ()
    try:
        return name, tuple(abi_decode(types, body))
    except DecodingError:
        logger.warning("Could not decode revert arguments", error_name=name, data=Web3.to_hex(data))
        return name, ()


def revert_error(data: Optional[bytes], message: str, stage: str = "simulate", **context: Any) -> ProvenanceError:
    """Build the typed error for a contract revert."""
    name, args = decode_revert(data)
    reason = name
    if name == "Error" and args:
        reason = str(args[0])
    lowered = (reason or message or "").lower()

    if name == "SPGNFT__DuplicatedNFTMetadataHash" or "duplicate" in lowered or "already registered" in lowered:
        return DuplicateRegistrationError(
            "Metadata hash already registered; generate a new uniqueness salt and retry",
            stage=stage, error_name=name, **context)
    if name == "InsufficientFunds" or "insufficient funds" in lowered:
        return InsufficientFundsError("Insufficient funds for registration", stage=stage, **context)

    if name == "MetadataHashMismatch" and len(args) == 2:
        detail = f"expected hash 0x{args[0].hex()}, actual hash 0x{args[1].hex()}"
    elif name == "MetadataNotAccessible" and args:
        detail = f"metadata URI not accessible: {args[0]}"
    elif name in ("InvalidSPGContract", "InvalidRecipient") and args:
        detail = f"rejected address {args[0]}"
    elif name == "Error" and args:
        detail = str(args[0])
    elif name == "Panic" and args:
        detail = f"panic code {args[0]}"
    else:
        detail = message or "execution reverted"

    return ContractValidationError(
        f"Contract rejected the registration: {name or 'unknown error'} ({detail})",
        stage=stage,
        error_name=name,
        raw_data=data,
        decoded_args=args,
        **context,
    )


def address_to_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower().replace("0x", "", 1)


def topic_to_address(topic: str) -> str:
    return Web3.to_checksum_address("0x" + topic[-40:])


def _hex_bytes(value: str) -> bytes:
    value = value[2:] if value.startswith("0x") else value
    return bytes.fromhex(value)


def decode_ip_registered(log: LogEntry) -> Optional[RegistrationEvent]:
    """Decode an IPRegistered log; None for any other log."""
    if len(log.topics) != 4 or log.topics[0].lower() != IP_REGISTERED_TOPIC.lower():
        return None
    try:
        token_ref, metadata_uri = abi_decode(["uint256", "string"], _hex_bytes(log.data))
    except (DecodingError, ValueError):
        return None
    return RegistrationEvent(
        asset_id=topic_to_address(log.topics[2]),
        token_ref=token_ref,
        metadata_uri=metadata_uri,
        tx_hash=log.tx_hash,
        block_number=log.block_number,
        log_index=log.log_index,
    )


def decode_transfer(log: LogEntry) -> Optional[TransferEvent]:
    if len(log.topics) != 4 or log.topics[0].lower() != TRANSFER_TOPIC.lower():
        return None
    return TransferEvent(
        sender=topic_to_address(log.topics[1]),
        recipient=topic_to_address(log.topics[2]),
        token_ref=int(log.topics[3], 16),
        block_number=log.block_number,
        log_index=log.log_index,
        tx_hash=log.tx_hash,
    )


# Interfaces --------------------------------------------------------------

class Signer(ABC):
    """Signing capability: an address plus transaction signing."""

    @property
    @abstractmethod
    def address(self) -> str:
        raise NotImplementedError

    @abstractmethod
    async def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        """Return the raw signed transaction; raise UserRejectedError on refusal."""
        raise NotImplementedError


class LedgerClient(ABC):
    """The registry/asset contract surface the pipeline consumes."""

    chain_id: int
    nft_contract: str = config.SPG_NFT_CONTRACT

    @abstractmethod
    async def get_balance(self, address: str) -> int: ...

    @abstractmethod
    async def get_block_number(self) -> int: ...

    @abstractmethod
    async def has_code(self, address: str) -> bool: ...

    @abstractmethod
    async def simulate_registration(self, request: RegistrationRequest, sender: str) -> None:
        """Dry-run the registration; raise the typed error for any revert."""

    @abstractmethod
    async def build_registration_transaction(self, request: RegistrationRequest, sender: str) -> Dict[str, Any]:
        """Unsigned transaction without ``gas``."""

    @abstractmethod
    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    @abstractmethod
    async def send_raw_transaction(self, raw: bytes) -> str: ...

    @abstractmethod
    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt: ...

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]: ...

    def parse_registration_events(self, receipt: TransactionReceipt) -> List[RegistrationEvent]:
        events = []
        for log in receipt.logs:
            event = decode_ip_registered(log)
            if event is not None:
                events.append(event)
        return events

    @abstractmethod
    async def get_registration_events(self, from_block: int, to_block: int) -> List[RegistrationEvent]: ...

    @abstractmethod
    async def total_supply(self) -> int: ...

    @abstractmethod
    async def derive_asset_id(self, token_ref: int) -> str: ...

    @abstractmethod
    async def owner_of(self, token_ref: int) -> str: ...

    @abstractmethod
    async def balance_of(self, owner: str) -> int: ...

    @abstractmethod
    async def get_transfer_events(self, from_block: int, to_block: int,
                                  sender: Optional[str] = None,
                                  recipient: Optional[str] = None) -> List[TransferEvent]: ...


# Implementations ---------------------------------------------------------

Approval = Callable[[Dict[str, Any]], Union[bool, Awaitable[bool]]]


class LocalAccountSigner(Signer):
    """Signs with a local private key, optionally gated by an approval callback."""

    def __init__(self, private_key: str, approve: Optional[Approval] = None):
        self._account = Account.from_key(private_key)
        self.approve = approve

    @property
    def address(self) -> str:
        return self._account.address

    async def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        if self.approve is not None:
            approved = self.approve(tx)
            if inspect.isawaitable(approved):
                approved = await approved
            if not approved:
                raise UserRejectedError("Transaction was rejected by user", stage="sign", address=self.address)
        unsigned = {k: v for k, v in tx.items() if k != "from"}
        signed = self._account.sign_transaction(unsigned)
        return bytes(signed.raw_transaction)


_NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)
_NONCE_MARKERS = ("nonce too low", "replacement transaction underpriced", "already known", "nonce")


def _revert_bytes(data: Any) -> Optional[bytes]:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str) and data.startswith("0x"):
        try:
            return _hex_bytes(data)
        except ValueError:
            return None
    return None


class Web3Ledger(LedgerClient):
    """LedgerClient over JSON-RPC using web3.py's async API."""

    def __init__(self,
                 rpc_url: str = config.STORY_RPC_URL,
                 chain_id: int = config.STORY_CHAIN_ID,
                 workflows_address: str = config.REGISTRATION_WORKFLOWS_ADDRESS,
                 registry_address: str = config.IP_ASSET_REGISTRY_ADDRESS,
                 nft_contract: str = config.SPG_NFT_CONTRACT,
                 w3: Optional[AsyncWeb3] = None):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.workflows_address = Web3.to_checksum_address(workflows_address)
        self.registry_address = Web3.to_checksum_address(registry_address)
        self.nft_contract = Web3.to_checksum_address(nft_contract)
        self.workflows = self.w3.eth.contract(address=self.workflows_address, abi=REGISTRATION_WORKFLOWS_ABI)
        self.registry = self.w3.eth.contract(address=self.registry_address, abi=IP_ASSET_REGISTRY_ABI)
        self.nft = self.w3.eth.contract(address=self.nft_contract, abi=SPG_NFT_ABI)

        logger.info("Ledger client initialized", rpc_url=rpc_url, chain_id=chain_id,
                    is_tenderly="tenderly.co" in rpc_url)

    async def _rpc(self, stage: str, awaitable, **context):
        try:
            return await awaitable
        except TransactionNotFound:
            # Callers decide whether a missing transaction is an error
            raise
        except ContractLogicError as e:
            raise revert_error(_revert_bytes(e.data), getattr(e, "message", None) or str(e),
                               stage=stage, **context) from e
        except Web3RPCError as e:
            message = str(e)
            if "insufficient funds" in message.lower():
                raise InsufficientFundsError("Insufficient funds for transaction", stage=stage, **context) from e
            if any(marker in message.lower() for marker in _NONCE_MARKERS):
                raise TransientNetworkError(f"Nonce contention: {message}", stage=stage, **context) from e
            raise TransientNetworkError(f"RPC error: {message}", stage=stage, **context) from e
        except _NETWORK_ERRORS as e:
            raise TransientNetworkError(f"Ledger RPC unreachable: {e}", stage=stage,
                                        rpc_url=self.rpc_url, **context) from e

    def _registration_args(self, request: RegistrationRequest) -> list:
        return [
            self.nft_contract,
            Web3.to_checksum_address(request.recipient),
            (
                request.ip_metadata_uri,
                request.ip_metadata.digest.as_bytes32(),
                request.nft_metadata_uri,
                request.nft_metadata.digest.as_bytes32(),
            ),
            request.allow_duplicates,
        ]

    async def get_balance(self, address: str) -> int:
        return await self._rpc("preflight", self.w3.eth.get_balance(Web3.to_checksum_address(address)),
                               address=address)

    async def get_block_number(self) -> int:
        return await self._rpc("read", self.w3.eth.block_number)

    async def has_code(self, address: str) -> bool:
        code = await self._rpc("preflight", self.w3.eth.get_code(Web3.to_checksum_address(address)),
                               address=address)
        return len(code) > 0

    async def simulate_registration(self, request: RegistrationRequest, sender: str) -> None:
        fn = self.workflows.functions.mintAndRegisterIp(*self._registration_args(request))
        await self._rpc("simulate", fn.call({"from": Web3.to_checksum_address(sender)}),
                        ip_metadata_uri=request.ip_metadata_uri,
                        ip_metadata_hash=request.ip_metadata.digest.hex)

    async def build_registration_transaction(self, request: RegistrationRequest, sender: str) -> Dict[str, Any]:
        sender = Web3.to_checksum_address(sender)
        data = self.workflows.encode_abi("mintAndRegisterIp", args=self._registration_args(request))
        nonce = await self._rpc("build", self.w3.eth.get_transaction_count(sender, "pending"), address=sender)
        block = await self._rpc("build", self.w3.eth.get_block("latest"))
        priority_fee = await self._rpc("build", self.w3.eth.max_priority_fee)
        base_fee = block.get("baseFeePerGas", 0)
        return {
            "from": sender,
            "to": self.workflows_address,
            "data": data,
            "value": 0,
            "nonce": nonce,
            "chainId": self.chain_id,
            "maxPriorityFeePerGas": priority_fee,
            "maxFeePerGas": base_fee * 2 + priority_fee,
        }

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return await self._rpc("estimate", self.w3.eth.estimate_gas(tx))

    async def send_raw_transaction(self, raw: bytes) -> str:
        tx_hash = await self._rpc("submit", self.w3.eth.send_raw_transaction(raw))
        return Web3.to_hex(tx_hash)

    def _to_receipt(self, raw) -> TransactionReceipt:
        return TransactionReceipt(
            tx_hash=Web3.to_hex(raw["transactionHash"]),
            status=raw.get("status", 1),
            block_number=raw["blockNumber"],
            gas_used=raw.get("gasUsed"),
            logs=[self._to_log(log) for log in raw.get("logs", [])],
        )

    @staticmethod
    def _to_log(raw) -> LogEntry:
        return LogEntry(
            address=raw["address"],
            topics=[Web3.to_hex(t) for t in raw["topics"]],
            data=Web3.to_hex(raw["data"]),
            block_number=raw["blockNumber"],
            log_index=raw["logIndex"],
            tx_hash=Web3.to_hex(raw["transactionHash"]) if raw.get("transactionHash") else None,
        )

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> TransactionReceipt:
        try:
            raw = await self._rpc("confirm", self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout),
                                  tx_hash=tx_hash)
        except TimeExhausted as e:
            raise asyncio.TimeoutError(f"Transaction {tx_hash} not confirmed after {timeout}s") from e
        return self._to_receipt(raw)

    async def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        try:
            raw = await self._rpc("read", self.w3.eth.get_transaction_receipt(tx_hash), tx_hash=tx_hash)
        except TransactionNotFound:
            return None
        return self._to_receipt(raw)

    async def _get_logs(self, address: str, topics: list, from_block: int, to_block: int) -> List[LogEntry]:
        raw_logs = await self._rpc("logs", self.w3.eth.get_logs({
            "address": address,
            "topics": topics,
            "fromBlock": from_block,
            "toBlock": to_block,
        }), from_block=from_block, to_block=to_block)
        return [self._to_log(log) for log in raw_logs]

    async def get_registration_events(self, from_block: int, to_block: int) -> List[RegistrationEvent]:
        logs = await self._get_logs(self.registry_address, [IP_REGISTERED_TOPIC], from_block, to_block)
        events = [decode_ip_registered(log) for log in logs]
        return [e for e in events if e is not None]

    async def total_supply(self) -> int:
        return await self._rpc("read", self.nft.functions.totalSupply().call())

    async def derive_asset_id(self, token_ref: int) -> str:
        return await self._rpc(
            "read",
            self.registry.functions.ipId(self.chain_id, self.nft_contract, token_ref).call(),
            token_ref=token_ref,
        )

    async def owner_of(self, token_ref: int) -> str:
        return await self._rpc("read", self.nft.functions.ownerOf(token_ref).call(), token_ref=token_ref)

    async def balance_of(self, owner: str) -> int:
        return await self._rpc("read", self.nft.functions.balanceOf(Web3.to_checksum_address(owner)).call(),
                               address=owner)

    async def get_transfer_events(self, from_block: int, to_block: int,
                                  sender: Optional[str] = None,
                                  recipient: Optional[str] = None) -> List[TransferEvent]:
        topics = [
            TRANSFER_TOPIC,
            address_to_topic(sender) if sender else None,
            address_to_topic(recipient) if recipient else None,
        ]
        logs = await self._get_logs(self.nft_contract, topics, from_block, to_block)
        events = [decode_transfer(log) for log in logs]
        return [e for e in events if e is not None]
