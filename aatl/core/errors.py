"""
Error Classification

Defines the error taxonomy of the account-abstraction transaction layer.
Errors are classified as recoverable (the caller may act again, e.g. poll)
or unrecoverable (a precondition or invariant was violated, or the chain
rejected the operation).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Categories of errors for caller decisions."""

    VALIDATION = "validation"           # Caller-supplied draft is malformed
    AUTHENTICATION = "authentication"   # Signer does not match the sender
    SIGNATURE = "signature"             # Signature failed an internal invariant
    PROVIDER = "provider"               # Relayer / chain RPC rejected a request
    DUPLICATE = "duplicate"             # Relayer already holds the operation
    NETWORK = "network"                 # Transport failure
    TIMEOUT = "timeout"                 # Inclusion status unknown
    TRANSACTION_REVERTED = "transaction_reverted"  # On-chain execution failed
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True
    suggested_action: Optional[str] = None
    provider: Optional[str] = None
    user_op_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """
    Base class for errors the caller can act on without fixing its input.

    - The relayer already knows the operation (poll for it)
    - The receipt did not appear before the deadline (status unknown)
    - Transport failures talking to the relayer or chain
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=True)


class UnrecoverableError(Exception):
    """
    Base class for errors that must not be retried as-is.

    - Malformed drafts and sender mismatches
    - Signature invariant violations
    - Relayer rejections and on-chain reverts
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=False)


# Caller precondition and internal invariant errors
class MalformedDraftError(UnrecoverableError):
    """A UserOperation draft violates a builder precondition."""

    def __init__(self, message: str = "Malformed UserOperation draft", field_name: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            context=ErrorContext(
                category=ErrorCategory.VALIDATION,
                recoverable=False,
                suggested_action="Fix the draft before submitting",
                details={"field": field_name} if field_name else {},
            ),
        )
        self.field_name = field_name


class UnexpectedSenderError(UnrecoverableError):
    """The signing account is not the operation sender."""

    def __init__(self, signer: str, sender: str):
        super().__init__(
            f"EIP-7702 authorization must be signed by the sender. signer={signer} sender={sender}",
            category=ErrorCategory.AUTHENTICATION,
            context=ErrorContext(
                category=ErrorCategory.AUTHENTICATION,
                recoverable=False,
                suggested_action="Sign with the sender's own key",
                details={"signer": signer, "sender": sender},
            ),
        )
        self.signer = signer
        self.sender = sender


class InvalidSignatureLengthError(UnrecoverableError):
    """A serialized signature is not exactly 65 bytes."""

    def __init__(self, length: int):
        super().__init__(
            f"Invalid signature length: {length} bytes, expected 65",
            category=ErrorCategory.SIGNATURE,
            context=ErrorContext(
                category=ErrorCategory.SIGNATURE,
                recoverable=False,
                details={"length": length},
            ),
        )
        self.length = length


class InvalidSignatureEncodingError(UnrecoverableError):
    """A signature is not hex or carries an unusable recovery byte."""

    def __init__(self, message: str = "Invalid signature encoding"):
        super().__init__(message, category=ErrorCategory.SIGNATURE)


# Relayer and chain errors
class RelayerError(Exception):
    """Marker base for every failure reported by the relayer client."""


class RelayerRejectedError(RelayerError, UnrecoverableError):
    """The relayer answered with a JSON-RPC error object."""

    def __init__(self, code: Optional[int], message: str, data: Any = None, method: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            context=ErrorContext(
                category=ErrorCategory.PROVIDER,
                recoverable=False,
                provider="bundler",
                details={"code": code, "data": data, "method": method},
            ),
        )
        self.code = code
        self.data = data
        self.method = method

    def __str__(self) -> str:
        suffix = f" (data: {self.data})" if self.data is not None else ""
        return f"{self.message}{suffix}"


class AlreadyKnownError(RelayerError, RecoverableError):
    """
    The relayer already holds this operation in its pending set.

    A previous submission went through; poll for the receipt instead of
    resubmitting.
    """

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(
            message,
            category=ErrorCategory.DUPLICATE,
            context=ErrorContext(
                category=ErrorCategory.DUPLICATE,
                recoverable=True,
                provider="bundler",
                suggested_action="Poll eth_getUserOperationReceipt instead of resubmitting",
                details={"code": code, "data": data},
            ),
        )
        self.code = code
        self.data = data


class RelayerTransportError(RelayerError, RecoverableError):
    """HTTP-level failure talking to the relayer."""

    def __init__(self, message: str = "Relayer transport error", status_code: Optional[int] = None):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            context=ErrorContext(
                category=ErrorCategory.NETWORK,
                recoverable=True,
                provider="bundler",
                details={"status_code": status_code} if status_code else {},
            ),
        )
        self.status_code = status_code


class ChainRpcError(UnrecoverableError):
    """The chain RPC endpoint failed or returned an error object."""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            context=ErrorContext(
                category=ErrorCategory.PROVIDER,
                recoverable=False,
                provider="chain",
                details={"method": method} if method else {},
            ),
        )
        self.method = method


# Inclusion outcomes
class UserOpRevertedError(UnrecoverableError):
    """The operation was included but its execution reverted."""

    def __init__(self, user_op_hash: str, reason: Optional[str] = None, hint: Optional[str] = None):
        message = hint or "UserOperation reverted"
        if reason:
            message = f"{message} (reason: {reason})"
        super().__init__(
            message,
            category=ErrorCategory.TRANSACTION_REVERTED,
            context=ErrorContext(
                category=ErrorCategory.TRANSACTION_REVERTED,
                recoverable=False,
                user_op_hash=user_op_hash,
                suggested_action="Review call data and contract state",
                details={"reason": reason, "hint": hint},
            ),
        )
        self.user_op_hash = user_op_hash
        self.reason = reason
        self.hint = hint


class ReceiptTimeoutError(RecoverableError):
    """No receipt before the deadline; the operation may still be included."""

    def __init__(self, user_op_hash: str, timeout_seconds: float):
        super().__init__(
            f"UserOperation {user_op_hash} not included within {timeout_seconds}s",
            category=ErrorCategory.TIMEOUT,
            context=ErrorContext(
                category=ErrorCategory.TIMEOUT,
                recoverable=True,
                user_op_hash=user_op_hash,
                suggested_action="Keep polling; the operation may still be included",
                details={"timeout_seconds": timeout_seconds},
            ),
        )
        self.user_op_hash = user_op_hash
        self.timeout_seconds = timeout_seconds


ALREADY_KNOWN_PATTERNS = (
    "already known",
)


def classify_relayer_error(
    code: Optional[int],
    message: Optional[str],
    data: Any = None,
    method: Optional[str] = None,
) -> RelayerError:
    """
    Map a relayer JSON-RPC error object onto the error taxonomy.

    Match rules:
    - the message contains "already known" in any letter case (the phrasing
      bundlers use when the operation already sits in their pending set)
      -> AlreadyKnownError
    - anything else -> RelayerRejectedError carrying code, message and data
      verbatim; unmatched messages are never guessed at.
    """
    text = message or "Bundler rejected request"
    lowered = text.lower()
    if any(pattern in lowered for pattern in ALREADY_KNOWN_PATTERNS):
        return AlreadyKnownError(text, code=code, data=data)
    return RelayerRejectedError(code, text, data=data, method=method)
