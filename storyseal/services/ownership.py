"""
Ownership discovery.

The asset contract has no per-owner enumeration, so the set of assets an
address holds is rebuilt from ledger history on every call and confirmed
with point-ownership reads. Nothing is kept between calls.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from storyseal import config
from storyseal.core.cache import TTLCache
from storyseal.core.errors import ProvenanceError
from storyseal.core.ledger import LedgerClient
from storyseal.core.utils import chunked, is_address, same_address
from storyseal.models.provenance import OwnershipSnapshot, TransferEvent

logger = structlog.get_logger()


@dataclass
class DiscoveryContext:
    """State shared by the strategies of one discovery call."""
    address: str
    latest_block: int
    balance_hint: int
    cache: TTLCache


Strategy = Callable[[DiscoveryContext], Awaitable[Dict[str, int]]]


def replay_transfers(events: Iterable[TransferEvent]) -> Dict[int, str]:
    """Replay transfers in chain order and return ``token_ref -> current holder``.

    Events seen twice (an address can be both sender and recipient) are
    counted once.
    """
    unique = {}
    for event in events:
        unique[event.position] = event
    holders = {}
    for position in sorted(unique):
        event = unique[position]
        holders[event.token_ref] = event.recipient
    return holders


class OwnershipDiscoverer:
    """Answers "which assets does this address hold right now"."""

    def __init__(self,
                 ledger: LedgerClient,
                 block_window: int = config.OWNERSHIP_BLOCK_WINDOW,
                 scan_window: int = config.REGISTRY_SCAN_WINDOW,
                 batch_size: int = config.OWNERSHIP_BATCH_SIZE,
                 cache_ttl: float = config.METADATA_CACHE_TTL_SECONDS,
                 cache_max_entries: int = config.METADATA_CACHE_MAX_ENTRIES):
        self.ledger = ledger
        self.block_window = block_window
        self.scan_window = scan_window
        self.batch_size = batch_size
        self.cache_ttl = cache_ttl
        self.cache_max_entries = cache_max_entries

    def strategies(self) -> List[Tuple[str, Strategy]]:
        return [
            ("transfer_replay", self._transfer_replay),
            ("registry_scan", self._registry_scan),
        ]

    async def assets_owned_by(self, address: str) -> OwnershipSnapshot:
        """
        Reconstruct the set of asset identifiers currently held by ``address``.

        Returns:
            OwnershipSnapshot whose ``asset_ids`` never repeats an identifier
        """
        if not is_address(address):
            raise ValueError(f"Invalid address: {address}")

        log = logger.bind(address=address)
        balance = await self.ledger.balance_of(address)
        if balance == 0:
            log.info("Address holds no assets")
            return OwnershipSnapshot(address=address, balance_hint=0, strategy="balance")

        context = DiscoveryContext(
            address=address,
            latest_block=await self.ledger.get_block_number(),
            balance_hint=balance,
            cache=TTLCache(ttl=self.cache_ttl, max_entries=self.cache_max_entries),
        )

        for name, strategy in self.strategies():
            try:
                owned = await strategy(context)
            except ProvenanceError as e:
                log.warning("Ownership strategy failed", strategy=name, error=str(e))
                continue
            if not owned:
                log.info("Ownership strategy found nothing", strategy=name)
                continue

            if len(owned) != balance:
                log.warning("Discovered asset count differs from balance",
                            strategy=name, discovered=len(owned), balance=balance)
            log.info("Ownership discovered", strategy=name, count=len(owned),
                     cache_hits=context.cache.hits)
            return OwnershipSnapshot(
                address=address,
                asset_ids=set(owned),
                token_refs=owned,
                balance_hint=balance,
                strategy=name,
            )

        log.warning("No ownership strategy found assets despite positive balance", balance=balance)
        return OwnershipSnapshot(address=address, balance_hint=balance)

    async def _transfer_replay(self, context: DiscoveryContext) -> Dict[str, int]:
        from_block = max(context.latest_block - self.block_window, 0)
        incoming = await self.ledger.get_transfer_events(from_block, context.latest_block,
                                                         recipient=context.address)
        outgoing = await self.ledger.get_transfer_events(from_block, context.latest_block,
                                                         sender=context.address)
        logger.debug("Transfer events fetched", incoming=len(incoming), outgoing=len(outgoing),
                     from_block=from_block, to_block=context.latest_block)

        holders = replay_transfers(incoming + outgoing)
        candidates = [token_ref for token_ref, holder in holders.items() if same_address(holder, context.address)]
        return await self._verify(context, candidates)

    async def _registry_scan(self, context: DiscoveryContext) -> Dict[str, int]:
        from_block = max(context.latest_block - self.scan_window, 0)
        events = await self.ledger.get_registration_events(from_block, context.latest_block)
        candidates = list(dict.fromkeys(event.token_ref for event in events))
        logger.debug("Registry events scanned", events=len(events), candidates=len(candidates),
                     from_block=from_block, to_block=context.latest_block)
        return await self._verify(context, candidates)

    async def _verify(self, context: DiscoveryContext, candidates: List[int]) -> Dict[str, int]:
        """Keep only candidates a point-ownership read confirms, keyed by asset id."""
        owned: Dict[str, int] = {}
        seen = set()
        for batch in chunked(sorted(set(candidates)), self.batch_size):
            results = await asyncio.gather(*(self._check(context, token_ref) for token_ref in batch))
            for token_ref, asset_id in results:
                if asset_id is None or asset_id.lower() in seen:
                    continue
                seen.add(asset_id.lower())
                owned[asset_id] = token_ref
        return owned

    async def _check(self, context: DiscoveryContext, token_ref: int) -> Tuple[int, Optional[str]]:
        cache = context.cache
        try:
            owner = await cache.get_or_load(("owner", token_ref), lambda: self.ledger.owner_of(token_ref))
            if not same_address(owner, context.address):
                logger.debug("Candidate failed ownership check", token_ref=token_ref, owner=owner)
                return token_ref, None
            asset_id = await cache.get_or_load(("asset", token_ref),
                                               lambda: self.ledger.derive_asset_id(token_ref))
        except ProvenanceError as e:
            # Burned tokens revert on ownerOf; a failed read is not proof of ownership
            logger.debug("Ownership read failed", token_ref=token_ref, error=str(e))
            return token_ref, None
        return token_ref, asset_id
