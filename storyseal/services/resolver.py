"""
Asset identifier resolution for confirmed registration transactions.

Strategies are tried in order until one yields an identifier:

1. decode the registration event from the receipt's own logs
2. query the registry event log over a recent block range, filtered by
   transaction hash (covers indexing lag)
3. derive the identifier from the asset contract's current item count;
   this assumes nothing was minted between submission and the read
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

import structlog

from storyseal import config
from storyseal.core.errors import IdentifierResolutionError, ProvenanceError
from storyseal.core.ledger import LedgerClient
from storyseal.models.provenance import TransactionReceipt

logger = structlog.get_logger()

ZERO_ADDRESS = "0x" + "0" * 40


@dataclass
class Resolution:
    asset_id: str
    token_ref: Optional[int]
    strategy: str


Strategy = Callable[[TransactionReceipt], Awaitable[Optional[Resolution]]]


class IdentifierResolver:
    """Turns a confirmed receipt into the asset identifier it created."""

    def __init__(self, ledger: LedgerClient, block_range: int = config.RESOLVER_BLOCK_RANGE):
        self.ledger = ledger
        self.block_range = block_range

    def strategies(self, allow_derivation: bool = True) -> List[Tuple[str, Strategy]]:
        strategies = [
            ("receipt_events", self._from_receipt),
            ("log_query", self._from_log_query),
        ]
        if allow_derivation:
            strategies.append(("item_count", self._from_item_count))
        return strategies

    async def resolve(self, receipt: TransactionReceipt, allow_derivation: bool = True) -> Resolution:
        """
        Resolve the asset identifier created by ``receipt``.

        Raises:
            IdentifierResolutionError: no strategy produced an identifier;
                the transaction hash is attached for manual lookup
        """
        for name, strategy in self.strategies(allow_derivation):
            try:
                resolution = await strategy(receipt)
            except ProvenanceError as e:
                logger.warning("Identifier resolution strategy failed",
                               strategy=name, tx_hash=receipt.tx_hash, error=str(e))
                continue
            if resolution is not None:
                logger.info("Asset identifier resolved",
                            strategy=name,
                            tx_hash=receipt.tx_hash,
                            asset_id=resolution.asset_id,
                            token_ref=resolution.token_ref)
                return resolution
            logger.debug("Identifier resolution strategy found nothing", strategy=name, tx_hash=receipt.tx_hash)

        logger.error("Could not resolve asset identifier", tx_hash=receipt.tx_hash,
                     explorer=f"{config.EXPLORER_URL}/tx/{receipt.tx_hash}")
        raise IdentifierResolutionError(
            f"Transaction {receipt.tx_hash} confirmed but the asset identifier could not be resolved",
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
        )

    async def resolve_transaction(self, tx_hash: str) -> Resolution:
        """Re-resolve a transaction after the fact, e.g. after an abandoned wait.

        The item-count derivation is skipped here since later mints make it
        unreliable.
        """
        receipt = await self.ledger.get_receipt(tx_hash)
        if receipt is None:
            raise IdentifierResolutionError(f"Transaction {tx_hash} not found or not yet confirmed",
                                            tx_hash=tx_hash)
        if not receipt.succeeded:
            raise IdentifierResolutionError(f"Transaction {tx_hash} reverted on-chain", tx_hash=tx_hash,
                                            block_number=receipt.block_number)
        return await self.resolve(receipt, allow_derivation=False)

    async def _from_receipt(self, receipt: TransactionReceipt) -> Optional[Resolution]:
        for event in self.ledger.parse_registration_events(receipt):
            return Resolution(asset_id=event.asset_id, token_ref=event.token_ref, strategy="receipt_events")
        return None

    async def _from_log_query(self, receipt: TransactionReceipt) -> Optional[Resolution]:
        latest = await self.ledger.get_block_number()
        from_block = max(receipt.block_number - self.block_range, 0)
        events = await self.ledger.get_registration_events(from_block, latest)
        for event in events:
            if event.tx_hash and event.tx_hash.lower() == receipt.tx_hash.lower():
                return Resolution(asset_id=event.asset_id, token_ref=event.token_ref, strategy="log_query")
        return None

    async def _from_item_count(self, receipt: TransactionReceipt) -> Optional[Resolution]:
        # Token ids start at 1, so the supply is the id of the newest token
        token_ref = await self.ledger.total_supply()
        if token_ref <= 0:
            return None
        asset_id = await self.ledger.derive_asset_id(token_ref)
        if not asset_id or asset_id.lower() == ZERO_ADDRESS:
            return None
        logger.warning("Asset identifier derived from item count", tx_hash=receipt.tx_hash, token_ref=token_ref)
        return Resolution(asset_id=asset_id, token_ref=token_ref, strategy="item_count")
