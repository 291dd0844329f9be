"""
Receipt polling and revert classification for submitted UserOperations.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import is_hex, to_bytes

from aatl.config import settings
from aatl.core.errors import ReceiptTimeoutError, UserOpRevertedError
from aatl.core.execution.userop import BundlerReceipt

if TYPE_CHECKING:
    from aatl.providers.bundler import BundlerProvider


logger = logging.getLogger(__name__)


TRANSACTION_REVERTED_SELECTOR = "0x9167c27a"
ERROR_STRING_SELECTOR = "0x08c379a0"
PANIC_SELECTOR = "0x4e487b71"

REVERT_HINTS: Dict[str, str] = {
    TRANSACTION_REVERTED_SELECTOR: (
        "TransactionReverted: the internal call to the target contract failed "
        "(failed proof or state check, or invalid call data)"
    ),
}

PANIC_CODES: Dict[int, str] = {
    0x01: "assertion failed",
    0x11: "arithmetic overflow or underflow",
    0x12: "division or modulo by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array encoding",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to zero-initialized function",
}


class ReceiptStatus(str, Enum):
    SUCCESS = "success"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"


@dataclass
class ReceiptOutcome:
    """
    Terminal state of a receipt wait.

    SUCCESS and REVERTED carry the relayer receipt. TIMED_OUT means the
    status is unknown: the operation may still be included later.
    """
    status: ReceiptStatus
    user_op_hash: str
    receipt: Optional[BundlerReceipt] = None
    reason: Optional[str] = None
    hint: Optional[str] = None
    timeout_seconds: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ReceiptStatus.SUCCESS

    def raise_for_status(self) -> "ReceiptOutcome":
        if self.status is ReceiptStatus.REVERTED:
            raise UserOpRevertedError(self.user_op_hash, reason=self.reason, hint=self.hint)
        if self.status is ReceiptStatus.TIMED_OUT:
            raise ReceiptTimeoutError(self.user_op_hash, self.timeout_seconds or 0)
        return self


def revert_selector(reason: Optional[str]) -> Optional[str]:
    if not reason or not reason.startswith("0x") or len(reason) < 10:
        return None
    return reason[:10].lower()


def describe_revert_reason(reason: Optional[str]) -> Optional[str]:
    """
    Turn a relayer revert ``reason`` into a human readable hint.

    Known selectors map to a fixed description; Error(string) and
    Panic(uint256) payloads are ABI-decoded. Anything else falls back to the
    raw selector.
    """
    selector = revert_selector(reason)
    if selector is None:
        return reason or None

    if selector in REVERT_HINTS:
        return REVERT_HINTS[selector]

    payload = reason[10:]
    if selector in (ERROR_STRING_SELECTOR, PANIC_SELECTOR) and is_hex(payload) and len(payload) % 2 == 0:
        try:
            if selector == ERROR_STRING_SELECTOR:
                (message,) = decode(["string"], to_bytes(hexstr=payload))
                return f"Error: {message}"
            (code,) = decode(["uint256"], to_bytes(hexstr=payload))
            return f"Panic(0x{code:02x}): {PANIC_CODES.get(code, 'unknown panic code')}"
        except DecodingError:
            logger.debug("Could not decode revert payload for selector %s", selector)

    return f"Reverted with selector {selector}"


def outcome_from_receipt(receipt: BundlerReceipt) -> ReceiptOutcome:
    if receipt.success:
        return ReceiptOutcome(status=ReceiptStatus.SUCCESS, user_op_hash=receipt.user_op_hash, receipt=receipt)
    return ReceiptOutcome(
        status=ReceiptStatus.REVERTED,
        user_op_hash=receipt.user_op_hash,
        receipt=receipt,
        reason=receipt.reason,
        hint=describe_revert_reason(receipt.reason),
    )


class ReceiptPoller:
    """
    Polls eth_getUserOperationReceipt until a receipt shows up or the
    deadline passes.

    The deadline bounds the whole wait, including an in-flight request.
    Relayer errors while polling propagate to the caller.
    """

    def __init__(
        self,
        bundler: "BundlerProvider",
        timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> None:
        self.bundler = bundler
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.receipt_timeout_seconds
        self.poll_interval_seconds = (
            poll_interval_seconds if poll_interval_seconds is not None else settings.receipt_poll_interval_seconds
        )
        if self.timeout_seconds <= 0 or self.poll_interval_seconds <= 0:
            raise ValueError("Receipt timeout and poll interval must be positive")

    async def _poll(self, user_op_hash: str) -> BundlerReceipt:
        attempt = 0
        while True:
            attempt += 1
            receipt = await self.bundler.get_user_operation_receipt(user_op_hash)
            if receipt is not None:
                logger.debug("Receipt for %s found after %d poll(s)", user_op_hash, attempt)
                return receipt
            await asyncio.sleep(self.poll_interval_seconds)

    async def wait(self, user_op_hash: str) -> ReceiptOutcome:
        try:
            receipt = await asyncio.wait_for(self._poll(user_op_hash), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("No receipt for %s within %ss", user_op_hash, self.timeout_seconds)
            return ReceiptOutcome(
                status=ReceiptStatus.TIMED_OUT,
                user_op_hash=user_op_hash,
                timeout_seconds=self.timeout_seconds,
            )

        outcome = outcome_from_receipt(receipt)
        if outcome.status is ReceiptStatus.REVERTED:
            logger.warning("UserOperation %s reverted: %s", user_op_hash, outcome.hint)
        return outcome
