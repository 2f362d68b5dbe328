import asyncio

import aiohttp
import pytest

from conftest import (
    ASSET_ID, BACKUP_GATEWAY, GATEWAY, TX_HASH, FakeSigner, RecordingSleep, gateway_client, make_request, run,
)
from storyseal.core.errors import (
    ConfirmationTimeoutError,
    ContractValidationError,
    DuplicateRegistrationError,
    HashMismatchError,
    InsufficientFundsError,
    RegistrationFailedError,
    TransientNetworkError,
    UserRejectedError,
)
from storyseal.core.gateway import GatewayVerifier
from storyseal.core.retry import RetryPolicy
from storyseal.models.provenance import ErrorKind, RegistrationStatus
from storyseal.services.registration import RegistrationEngine


def make_engine(ledger, signer, verifier, sleep=None, **kwargs):
    return RegistrationEngine(ledger, signer, verifier, sleep=sleep or RecordingSleep(),
                              policy=RetryPolicy(max_attempts=3, base_delay=5, max_delay=30), **kwargs)


def test_successful_registration(ledger, signer, verifier):
    result = run(make_engine(ledger, signer, verifier).register(make_request()))

    assert result.asset_id.lower() == ASSET_ID
    assert result.token_ref == 7
    assert result.tx_hash == TX_HASH
    assert [a.status for a in result.attempts] == [RegistrationStatus.CONFIRMED]
    assert ledger.calls == ["get_balance", "has_code", "simulate", "build", "estimate_gas", "send", "wait"]


def test_gas_limit_includes_margin(ledger, signer, verifier):
    run(make_engine(ledger, signer, verifier).register(make_request()))
    assert signer.signed[0]["gas"] == 120_000


def test_corrupted_gateway_content_never_reaches_signer(ledger, signer):
    # Scenario D
    client = gateway_client({"QmIp": b'{"title":"sunset"}tampered', "QmNft": b'{"name":"sunset"}'})
    verifier = GatewayVerifier([GATEWAY, BACKUP_GATEWAY], client=client)
    with pytest.raises(HashMismatchError):
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert signer.signed == []
    assert "simulate" not in ledger.calls
    assert "send" not in ledger.calls


def test_zero_balance_fails_before_simulation(ledger, signer, verifier):
    # Scenario E
    ledger.balance = 0
    with pytest.raises(InsufficientFundsError) as excinfo:
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert excinfo.value.stage == "preflight"
    assert "simulate" not in ledger.calls
    assert signer.signed == []


def test_balance_below_gas_cost_fails_before_signing(ledger, signer, verifier):
    ledger.balance = 1000
    with pytest.raises(InsufficientFundsError):
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert "simulate" in ledger.calls
    assert signer.signed == []


def test_missing_asset_contract_code(ledger, signer, verifier):
    ledger.code = False
    with pytest.raises(ContractValidationError) as excinfo:
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert excinfo.value.error_name == "InvalidSPGContract"
    assert "simulate" not in ledger.calls


def test_simulation_rejection_spends_nothing(ledger, signer, verifier):
    ledger.simulate_errors = [ContractValidationError("MetadataNotAccessible", error_name="MetadataNotAccessible")]
    sleep = RecordingSleep()
    with pytest.raises(ContractValidationError):
        run(make_engine(ledger, signer, verifier, sleep=sleep).register(make_request()))
    assert "send" not in ledger.calls
    assert sleep.delays == []


def test_duplicate_is_not_retried(ledger, signer, verifier):
    ledger.simulate_errors = [DuplicateRegistrationError("already registered", stage="simulate")]
    with pytest.raises(DuplicateRegistrationError):
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert ledger.calls.count("simulate") == 1


def test_user_rejection_is_not_retried(ledger, verifier):
    signer = FakeSigner(reject=True)
    sleep = RecordingSleep()
    with pytest.raises(UserRejectedError):
        run(make_engine(ledger, signer, verifier, sleep=sleep).register(make_request()))
    assert ledger.calls.count("simulate") == 1
    assert "send" not in ledger.calls
    assert sleep.delays == []


def test_transient_broadcast_failure_is_retried_with_reverification(ledger, signer):
    requests = []
    client = gateway_client({"QmIp": b'{"title":"sunset"}', "QmNft": b'{"name":"sunset"}'}, requests=requests)
    verifier = GatewayVerifier([GATEWAY], client=client)
    ledger.send_errors = [TransientNetworkError("nonce too low", stage="submit")]
    sleep = RecordingSleep()

    result = run(make_engine(ledger, signer, verifier, sleep=sleep).register(make_request()))

    assert result.asset_id.lower() == ASSET_ID
    assert sleep.delays == [5]
    assert ledger.calls.count("simulate") == 2
    assert len(requests) == 4  # both documents verified on each attempt
    first, second = result.attempts
    assert first.status == RegistrationStatus.FAILED
    assert first.error_kind == ErrorKind.TRANSIENT
    assert second.status == RegistrationStatus.CONFIRMED
    assert second.retry_count == 1


def test_not_yet_accessible_metadata_is_retried(ledger, signer):
    client = gateway_client({"QmNft": b'{"name":"sunset"}'})
    verifier = GatewayVerifier([GATEWAY], client=client)
    sleep = RecordingSleep()

    with pytest.raises(RegistrationFailedError) as excinfo:
        run(make_engine(ledger, signer, verifier, sleep=sleep).register(make_request()))

    assert excinfo.value.attempts == 3
    assert sleep.delays == [5, 10]
    assert "simulate" not in ledger.calls
    assert excinfo.value.context["attempts"] == 3


def test_retries_exhausted_after_three_attempts(ledger, signer, verifier):
    ledger.simulate_errors = [TransientNetworkError("timeout", stage="simulate")] * 3
    sleep = RecordingSleep()
    with pytest.raises(RegistrationFailedError) as excinfo:
        run(make_engine(ledger, signer, verifier, sleep=sleep).register(make_request()))
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, TransientNetworkError)
    assert ledger.calls.count("simulate") == 3
    assert signer.signed == []


def test_confirmation_timeout_is_not_resubmitted(ledger, signer, verifier):
    ledger.receipt_error = asyncio.TimeoutError()
    with pytest.raises(ConfirmationTimeoutError) as excinfo:
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert excinfo.value.tx_hash == TX_HASH
    assert ledger.calls.count("send") == 1


@pytest.mark.parametrize("error", [
    aiohttp.ClientConnectionError("connection reset"),
    TransientNetworkError("Ledger RPC unreachable", stage="confirm"),
])
def test_network_failure_while_waiting_keeps_tx_hash(ledger, signer, verifier, error):
    ledger.receipt_error = error
    with pytest.raises(ConfirmationTimeoutError) as excinfo:
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert excinfo.value.context["tx_hash"] == TX_HASH
    assert ledger.calls.count("send") == 1


def test_fatal_error_while_waiting_keeps_tx_hash(ledger, signer, verifier):
    ledger.receipt_error = ContractValidationError("execution reverted", stage="confirm")
    with pytest.raises(ContractValidationError) as excinfo:
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert excinfo.value.context["tx_hash"] == TX_HASH


def test_asset_contract_defaults_to_ledger_contract(ledger, signer, verifier):
    ledger.nft_contract = "0x" + "99" * 20
    assert make_engine(ledger, signer, verifier).asset_contract == ledger.nft_contract
    explicit = "0x" + "77" * 20
    assert make_engine(ledger, signer, verifier, asset_contract=explicit).asset_contract == explicit


def test_reverted_receipt_is_contract_validation_error(ledger, signer, verifier):
    ledger.receipt = ledger.receipt.model_copy(update={"status": 0})
    with pytest.raises(ContractValidationError) as excinfo:
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert excinfo.value.stage == "confirm"
    assert ledger.calls.count("send") == 1


def test_cancellation_after_submission_propagates(ledger, signer, verifier):
    ledger.receipt_error = asyncio.CancelledError()
    with pytest.raises(asyncio.CancelledError):
        run(make_engine(ledger, signer, verifier).register(make_request()))
    assert ledger.calls.count("send") == 1


def test_retry_policy_delays():
    policy = RetryPolicy(max_attempts=5, base_delay=5, max_delay=30)
    assert [policy.delay_before(n) for n in range(1, 6)] == [0, 5, 10, 20, 30]
    assert policy.should_retry(TransientNetworkError("x"), 1)
    assert not policy.should_retry(TransientNetworkError("x"), 5)
    assert not policy.should_retry(HashMismatchError("x"), 1)
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
