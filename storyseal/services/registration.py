"""
Registration engine.

Drives one logical registration through

    Preparing -> Simulated -> Submitted -> Confirmed

with ``Failed`` reachable from every state. Each attempt runs strictly in
sequence: balance pre-flight, gateway verification of both metadata
documents, simulation, gas estimation, signing, broadcast, confirmation and
identifier resolution. Transient failures before broadcast are retried under
``RetryPolicy``, re-verifying and re-simulating every time. Once a
transaction hash exists it is never resubmitted.
"""

import asyncio
import math
import time
from typing import Optional

import structlog

from storyseal import config
from storyseal.core.errors import (
    ConfirmationTimeoutError,
    ContractValidationError,
    DuplicateRegistrationError,
    HashMismatchError,
    IdentifierResolutionError,
    InsufficientFundsError,
    NotYetAccessibleError,
    ProvenanceError,
    RegistrationFailedError,
    TransientNetworkError,
    UserRejectedError,
)
from storyseal.core.gateway import GatewayVerifier
from storyseal.core.ledger import LedgerClient, Signer
from storyseal.core.retry import RetryPolicy, Sleep
from storyseal.models.provenance import (
    ErrorKind,
    RegistrationAttempt,
    RegistrationRequest,
    RegistrationResult,
    RegistrationStatus,
    TransactionReceipt,
)
from storyseal.services.resolver import IdentifierResolver

logger = structlog.get_logger()

_ERROR_KINDS = [
    (NotYetAccessibleError, ErrorKind.NOT_YET_ACCESSIBLE),
    (TransientNetworkError, ErrorKind.TRANSIENT),
    (HashMismatchError, ErrorKind.HASH_MISMATCH),
    (DuplicateRegistrationError, ErrorKind.DUPLICATE),
    (ContractValidationError, ErrorKind.CONTRACT_VALIDATION),
    (InsufficientFundsError, ErrorKind.INSUFFICIENT_FUNDS),
    (UserRejectedError, ErrorKind.USER_REJECTED),
    (IdentifierResolutionError, ErrorKind.UNRESOLVED),
    (ConfirmationTimeoutError, ErrorKind.UNRESOLVED),
]


def error_kind_for(error: BaseException) -> ErrorKind:
    for error_type, kind in _ERROR_KINDS:
        if isinstance(error, error_type):
            return kind
    return ErrorKind.UNKNOWN


class RegistrationEngine:
    """Registers verified metadata on the ledger and resolves the new asset identifier."""

    def __init__(self,
                 ledger: LedgerClient,
                 signer: Signer,
                 verifier: GatewayVerifier,
                 resolver: Optional[IdentifierResolver] = None,
                 policy: Optional[RetryPolicy] = None,
                 gas_margin: float = config.GAS_MARGIN,
                 receipt_timeout: float = config.RECEIPT_TIMEOUT_SECONDS,
                 asset_contract: Optional[str] = None,
                 sleep: Sleep = asyncio.sleep):
        self.ledger = ledger
        self.signer = signer
        self.verifier = verifier
        self.resolver = resolver or IdentifierResolver(ledger)
        self.policy = policy or RetryPolicy()
        self.gas_margin = gas_margin
        self.receipt_timeout = receipt_timeout
        self.asset_contract = asset_contract or ledger.nft_contract
        self.sleep = sleep

    async def register(self, request: RegistrationRequest) -> RegistrationResult:
        """
        Register ``request`` on the ledger.

        Returns:
            RegistrationResult with the resolved asset identifier and every attempt made

        Raises:
            RegistrationFailedError: transient failures outlasted the retry policy
            ProvenanceError: any fatal error, surfaced on the attempt that hit it
        """
        attempts = []
        sender = self.signer.address

        for number in range(1, self.policy.max_attempts + 1):
            delay = self.policy.delay_before(number)
            if delay > 0:
                logger.warning("Retrying registration", attempt=number, delay_seconds=delay,
                               last_error=attempts[-1].error_message)
                await self.sleep(delay)

            attempt = RegistrationAttempt(number=number, retry_count=number - 1)
            attempts.append(attempt)
            log = logger.bind(attempt=number, sender=sender, ip_metadata_hash=request.ip_metadata.digest.hex)

            try:
                result = await self._run_attempt(request, attempt, sender, log)
            except ProvenanceError as e:
                attempt.fail(error_kind_for(e), str(e))
                if self.policy.should_retry(e, number):
                    log.warning("Registration attempt failed", error=str(e), stage=e.stage)
                    continue
                if self.policy.is_retryable(e):
                    log.error("Registration retries exhausted", attempts=number, error=str(e))
                    raise RegistrationFailedError(
                        f"Registration failed after {number} attempts: {e}",
                        attempts=number,
                        last_error=e,
                        stage=e.stage,
                    ) from e
                log.error("Registration failed", error=str(e), stage=e.stage, error_type=type(e).__name__)
                raise
            except asyncio.CancelledError:
                if attempt.tx_hash:
                    # The transaction stays valid on-chain; only our wait is abandoned
                    log.warning("Registration wait abandoned after submission",
                                tx_hash=attempt.tx_hash,
                                explorer=f"{config.EXPLORER_URL}/tx/{attempt.tx_hash}")
                raise

            result.attempts = attempts
            return result

        # max_attempts >= 1 so the loop always returns or raises
        raise RuntimeError("unreachable")

    async def _run_attempt(self, request: RegistrationRequest, attempt: RegistrationAttempt,
                           sender: str, log) -> RegistrationResult:
        start_time = time.time()

        balance = await self._preflight(sender, log)

        # Nothing is signed until both digests have been confirmed through a gateway
        await self.verifier.verify(request.ip_metadata.content_uri, request.ip_metadata.digest)
        await self.verifier.verify(request.nft_metadata.content_uri, request.nft_metadata.digest)

        await self.ledger.simulate_registration(request, sender)
        attempt.advance(RegistrationStatus.SIMULATED)
        log.info("Registration simulated")

        tx = await self.ledger.build_registration_transaction(request, sender)
        estimate = await self.ledger.estimate_gas(tx)
        tx["gas"] = math.ceil(estimate * self.gas_margin)
        fee_per_gas = tx.get("maxFeePerGas", tx.get("gasPrice", 0))
        required = tx["gas"] * fee_per_gas
        if balance < required:
            raise InsufficientFundsError(
                "Insufficient funds to cover gas for registration",
                stage="preflight", address=sender, balance=balance, required=required,
            )
        log.debug("Gas estimated", estimate=estimate, gas_limit=tx["gas"], fee_per_gas=fee_per_gas)

        raw = await self.signer.sign_transaction(tx)
        tx_hash = await self.ledger.send_raw_transaction(raw)
        attempt.tx_hash = tx_hash
        attempt.advance(RegistrationStatus.SUBMITTED)
        log.info("Registration submitted", tx_hash=tx_hash)

        receipt = await self._confirm(tx_hash, log)
        attempt.advance(RegistrationStatus.CONFIRMED)
        log.info("Registration confirmed", tx_hash=tx_hash, block_number=receipt.block_number,
                 gas_used=receipt.gas_used)

        resolution = await self.resolver.resolve(receipt)
        attempt.asset_id = resolution.asset_id
        attempt.token_ref = resolution.token_ref

        log.info("Registration completed",
                 tx_hash=tx_hash,
                 asset_id=resolution.asset_id,
                 processing_time_seconds=round(time.time() - start_time, 2))
        return RegistrationResult(
            asset_id=resolution.asset_id,
            token_ref=resolution.token_ref,
            tx_hash=tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )

    async def _preflight(self, sender: str, log) -> int:
        balance = await self.ledger.get_balance(sender)
        if balance <= 0:
            raise InsufficientFundsError("Wallet has no balance to pay for registration",
                                         stage="preflight", address=sender, balance=balance)
        if not await self.ledger.has_code(self.asset_contract):
            raise ContractValidationError(
                f"No contract deployed at asset contract address {self.asset_contract}",
                stage="preflight", error_name="InvalidSPGContract", address=self.asset_contract,
            )
        log.debug("Pre-flight checks passed", balance=balance)
        return balance

    async def _confirm(self, tx_hash: str, log) -> TransactionReceipt:
        try:
            receipt = await self.ledger.wait_for_receipt(tx_hash, self.receipt_timeout)
        except ProvenanceError as e:
            if not e.retryable:
                e.context.setdefault("tx_hash", tx_hash)
                raise
            raise self._unconfirmed(tx_hash, e, log) from e
        except Exception as e:
            # Includes timeouts and untyped client failures; the tx hash must survive either way
            raise self._unconfirmed(tx_hash, e, log) from e

        if not receipt.succeeded:
            raise ContractValidationError(
                f"Transaction {tx_hash} reverted on-chain",
                stage="confirm", tx_hash=tx_hash, block_number=receipt.block_number,
            )
        return receipt

    @staticmethod
    def _unconfirmed(tx_hash: str, error: Exception, log) -> ConfirmationTimeoutError:
        # Resubmitting could register twice, so this is not retried
        log.error("Confirmation wait failed", tx_hash=tx_hash, error=str(error))
        return ConfirmationTimeoutError(
            f"Transaction {tx_hash} was broadcast but not confirmed: {error}",
            tx_hash=tx_hash,
        )
