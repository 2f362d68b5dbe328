"""
Error taxonomy for the provenance pipeline.

Every error carries the pipeline ``stage`` it was raised from and a small
``context`` dict (hash, URI, address, transaction hash) so callers can act
on it without parsing messages.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


class ProvenanceError(Exception):
    """Base class for all pipeline errors."""

    retryable = False

    def __init__(self, message: str, stage: str = "unknown", **context: Any):
        super().__init__(message)
        self.stage = stage
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        base = super().__str__()
        if not self.context:
            return base
        details = ", ".join(f"{k}={v}" for k, v in self.context.items() if v is not None)
        return f"{base} [{self.stage}: {details}]" if details else base


class TransientNetworkError(ProvenanceError):
    """Network, RPC or nonce failure that a later attempt may not hit."""

    retryable = True


class NotYetAccessibleError(TransientNetworkError):
    """No configured gateway served the content yet."""


class HashMismatchError(ProvenanceError):
    """A gateway served bytes whose digest differs from the expected one."""


class ContractValidationError(ProvenanceError):
    """The contract rejected the call during simulation."""

    def __init__(self, message: str, stage: str = "simulate", error_name: Optional[str] = None,
                 raw_data: Optional[bytes] = None, decoded_args: Optional[tuple] = None, **context: Any):
        super().__init__(message, stage=stage, **context)
        self.error_name = error_name
        self.raw_data = raw_data
        self.decoded_args = decoded_args


class InsufficientFundsError(ProvenanceError):
    """The signing wallet cannot pay for the transaction."""


class UserRejectedError(ProvenanceError):
    """The signing capability refused to sign."""


class DuplicateRegistrationError(ProvenanceError):
    """The same metadata digest is already registered; a new salt is required."""


class PublicationError(ProvenanceError):
    """The storage network refused the upload."""


class IdentifierResolutionError(ProvenanceError):
    """The transaction confirmed but no asset identifier could be recovered."""

    def __init__(self, message: str, tx_hash: str, stage: str = "resolve", **context: Any):
        super().__init__(message, stage=stage, tx_hash=tx_hash, **context)
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(ProvenanceError):
    """The transaction was broadcast but no receipt arrived in time; it may still confirm."""

    def __init__(self, message: str, tx_hash: str, stage: str = "confirm", **context: Any):
        super().__init__(message, stage=stage, tx_hash=tx_hash, **context)
        self.tx_hash = tx_hash


class RegistrationFailedError(ProvenanceError):
    """Transient failures persisted past the retry bound."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None,
                 stage: str = "submit", **context: Any):
        super().__init__(message, stage=stage, attempts=attempts, **context)
        self.attempts = attempts
        self.last_error = last_error


class InvalidIdentifierError(ProvenanceError, ValueError):
    """The identifier does not have the ``0x`` + 40 hex shape."""


class CapacityError(ProvenanceError):
    """The pixel buffer is too small to hold the watermark."""


class VerificationFailedError(ProvenanceError):
    """The watermark did not survive its own round-trip check."""


@dataclass
class ErrorInfo:
    code: str
    message: str
    user_message: str
    retryable: bool
    suggestion: Optional[str] = None


_ERROR_TABLE = [
    (UserRejectedError, "USER_REJECTED", "Transaction was rejected in the wallet.",
     "Approve the signature request to continue."),
    (InsufficientFundsError, "INSUFFICIENT_FUNDS", "Insufficient funds for registration.",
     "Fund the wallet with IP tokens from the faucet: https://docs.story.foundation/aeneid"),
    (DuplicateRegistrationError, "DUPLICATE_REGISTRATION", "This metadata is already registered.",
     "Seal again; a fresh uniqueness salt is generated for every attempt."),
    (HashMismatchError, "HASH_MISMATCH", "Metadata hash mismatch between upload and gateway.",
     "The published bytes changed in transit. Republish the metadata."),
    (ContractValidationError, "CONTRACT_VALIDATION", "The registry contract rejected the registration.",
     "Check metadata accessibility, hash values and the asset contract address."),
    (NotYetAccessibleError, "METADATA_NOT_ACCESSIBLE", "Metadata is not reachable through any gateway yet.",
     "Wait 10-30 seconds for IPFS propagation and try again."),
    (PublicationError, "IPFS_ERROR", "Uploading to IPFS failed.",
     "Check the Pinata credentials and service status."),
    (IdentifierResolutionError, "UNRESOLVED_IDENTIFIER", "Transaction confirmed but the asset ID is unknown.",
     "Look the transaction up on the explorer or call GET /registrations/{tx_hash}."),
    (ConfirmationTimeoutError, "CONFIRMATION_TIMEOUT", "Transaction was sent but not confirmed in time.",
     "Do not resubmit; check the transaction on the explorer first."),
    (RegistrationFailedError, "REGISTRATION_FAILED", "Registration failed after retrying.",
     "Check the RPC endpoint and try again later."),
    (TransientNetworkError, "NETWORK_ERROR", "Network error while talking to the ledger or IPFS.",
     "Check your internet connection and RPC endpoint settings."),
    (CapacityError, "WATERMARK_CAPACITY", "Image is too small to embed the watermark.", None),
    (VerificationFailedError, "WATERMARK_VERIFICATION", "Watermark verification failed.",
     "Embed again from the original image."),
    (InvalidIdentifierError, "VALIDATION_ERROR", "Invalid asset identifier.",
     "Asset identifiers are 0x followed by 40 hex characters."),
]


def classify_error(error: BaseException) -> ErrorInfo:
    """Map an exception to a stable code and a user-facing message."""
    for error_type, code, user_message, suggestion in _ERROR_TABLE:
        if isinstance(error, error_type):
            retryable = getattr(error, "retryable", False)
            return ErrorInfo(code=code, message=str(error), user_message=user_message,
                             retryable=retryable, suggestion=suggestion)

    if isinstance(error, ValueError):
        return ErrorInfo(code="VALIDATION_ERROR", message=str(error), user_message=str(error), retryable=False)

    return ErrorInfo(
        code="UNKNOWN_ERROR",
        message=str(error),
        user_message="An unexpected error occurred. Please try again.",
        retryable=True,
        suggestion="If the problem persists, check your settings and try again.",
    )


def retry_delay_hint(info: ErrorInfo) -> float:
    """Seconds a caller should wait before retrying, 0 when it should not."""
    if not info.retryable:
        return 0.0
    if info.code == "METADATA_NOT_ACCESSIBLE":
        return 10.0
    if info.code == "NETWORK_ERROR":
        return 2.0
    return 3.0
