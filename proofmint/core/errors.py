"""
Error taxonomy shared by the mint pipeline and the purchase/download handlers.

Every error carries the HTTP status it maps to and a user-visible message that
is safe to return to clients.
"""

from typing import Optional


class ProofMintError(Exception):
    """Base class for all expected failures."""

    status_code = 500
    message = "Internal server error"
    retryable = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class ValidationError(ProofMintError):
    status_code = 400
    message = "Invalid request"


class NotFoundError(ProofMintError):
    status_code = 404
    message = "Not found"


class ExpiredError(ProofMintError):
    status_code = 410
    message = "Expired"


class RateLimitedError(ProofMintError):
    status_code = 429
    message = "Rate limited"


class ConflictError(ProofMintError):
    status_code = 409
    message = "Conflict"


class UnauthorizedError(ProofMintError):
    status_code = 403
    message = "Unauthorized"


class ExternalDependencyError(ProofMintError):
    """Transient failure of a collaborator; the job pipeline retries these."""

    status_code = 500
    message = "External dependency failure"
    retryable = True


class FatalError(ProofMintError):
    """Malformed input or configuration; never retried."""

    status_code = 400
    message = "Malformed input"


# Ledger / storage

class LedgerError(ExternalDependencyError):
    message = "Ledger request failed"


class ConfirmationTimeoutError(LedgerError):
    message = "Timed out waiting for transaction confirmation"


class StorageError(ExternalDependencyError):
    message = "Storage operation failed"


class MalformedAddressError(FatalError):
    message = "Malformed ledger address"


class MalformedKeyError(FatalError):
    message = "Malformed signing key"


class MalformedRecordError(FatalError):
    message = "Malformed proof record"


# Jobs

class JobNotFoundError(NotFoundError):
    message = "Job not found"


class InvalidJobPayloadError(ValidationError):
    message = "Invalid mint job payload"


# Purchases

class MissingFieldsError(ValidationError):
    message = "Missing required fields"


class ProofNotFoundError(NotFoundError):
    message = "Media proof not found"


class SentinelMismatchError(ValidationError):
    message = "Free signature does not match content price"


class TransactionNotFoundError(ValidationError):
    message = "Transaction not found"


class TransactionFailedError(ValidationError):
    message = "Transaction failed on-chain"


class SignerMismatchError(UnauthorizedError):
    message = "Transaction signer does not match buyer wallet"


class InsufficientTransferError(ValidationError):
    message = "Insufficient transfer to seller"


class FeeTooHighError(ValidationError):
    message = "Self-purchase fee too high"


class DuplicateTransactionError(ConflictError):
    message = "Transaction already recorded"


# Downloads

class TokenNotFoundError(NotFoundError):
    message = "Invalid or unknown download token"


class TokenExpiredError(ExpiredError):
    message = "Download link has expired"


class DownloadLimitError(RateLimitedError):
    message = "Download limit reached"
