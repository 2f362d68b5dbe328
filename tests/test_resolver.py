import pytest

from conftest import ASSET_ID, TX_HASH, asset_for, ip_registered_log, run
from storyseal.core.errors import IdentifierResolutionError, TransientNetworkError
from storyseal.models.provenance import LogEntry, RegistrationEvent, TransactionReceipt
from storyseal.services.resolver import IdentifierResolver


def bare_receipt(tx_hash=TX_HASH, block_number=5000, status=1):
    unrelated = LogEntry(address="0x" + "44" * 20, topics=["0x" + "00" * 32], data="0x")
    return TransactionReceipt(tx_hash=tx_hash, block_number=block_number, status=status, logs=[unrelated])


def test_resolves_from_receipt_events(ledger):
    resolution = run(IdentifierResolver(ledger).resolve(ledger.receipt))
    assert resolution.strategy == "receipt_events"
    assert resolution.asset_id.lower() == ASSET_ID
    assert resolution.token_ref == 7
    assert ledger.log_queries == []


def test_falls_back_to_log_query_filtered_by_tx_hash(ledger):
    ledger.block_number = 5100
    ledger.registry_events = [
        RegistrationEvent(asset_id=asset_for(1), token_ref=1, tx_hash="0x" + "ee" * 32, block_number=4500),
        RegistrationEvent(asset_id=asset_for(2), token_ref=2, tx_hash=TX_HASH.upper().replace("0X", "0x"),
                          block_number=5000),
    ]
    resolution = run(IdentifierResolver(ledger, block_range=1000).resolve(bare_receipt()))
    assert resolution.strategy == "log_query"
    assert resolution.asset_id == asset_for(2)
    assert ledger.log_queries == [(4000, 5100)]


def test_falls_back_to_item_count_derivation(ledger):
    ledger.supply = 42
    resolution = run(IdentifierResolver(ledger).resolve(bare_receipt()))
    assert resolution.strategy == "item_count"
    assert resolution.token_ref == 42
    assert resolution.asset_id == asset_for(42)


def test_failed_strategy_falls_through(ledger):
    async def broken(from_block, to_block):
        raise TransientNetworkError("query returned more than 10000 results", stage="logs")

    ledger.get_registration_events = broken
    ledger.supply = 3
    resolution = run(IdentifierResolver(ledger).resolve(bare_receipt()))
    assert resolution.strategy == "item_count"


def test_unresolvable_reports_tx_hash(ledger):
    with pytest.raises(IdentifierResolutionError) as excinfo:
        run(IdentifierResolver(ledger).resolve(bare_receipt()))
    assert excinfo.value.tx_hash == TX_HASH
    assert TX_HASH in str(excinfo.value)


def test_resolve_transaction_uses_stored_receipt(ledger):
    ledger.receipts[TX_HASH] = TransactionReceipt(tx_hash=TX_HASH, block_number=10,
                                                  logs=[ip_registered_log(ASSET_ID, 9)])
    resolution = run(IdentifierResolver(ledger).resolve_transaction(TX_HASH))
    assert resolution.token_ref == 9


def test_resolve_transaction_skips_derivation(ledger):
    ledger.supply = 42
    ledger.receipts[TX_HASH] = bare_receipt()
    with pytest.raises(IdentifierResolutionError):
        run(IdentifierResolver(ledger).resolve_transaction(TX_HASH))
    assert "derive" not in ledger.calls


def test_resolve_transaction_unknown_or_reverted(ledger):
    with pytest.raises(IdentifierResolutionError, match="not found"):
        run(IdentifierResolver(ledger).resolve_transaction(TX_HASH))
    ledger.receipts[TX_HASH] = bare_receipt(status=0)
    with pytest.raises(IdentifierResolutionError, match="reverted"):
        run(IdentifierResolver(ledger).resolve_transaction(TX_HASH))
