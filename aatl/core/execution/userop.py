"""
ERC-4337 UserOperation models and helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from eth_utils import encode_hex, is_hex, is_hex_address, to_bytes, to_canonical_address, to_checksum_address

from aatl.core.errors import MalformedDraftError
from aatl.core.execution.gas import GasParameters
from aatl.core.execution.versions import EntryPointVersion


# Bundlers take factory "0x7702" to mean "sender is a 7702-delegated EOA"
EIP7702_FACTORY_SENTINEL = "0x7702"
EIP7702_INIT_CODE_MARKER = bytes.fromhex("7702") + bytes(18)

UINT128_MAX = 2**128 - 1

HexLike = Union[bytes, bytearray, str, None]


def _to_hex(value: int) -> str:
    return hex(value)


def to_data_bytes(value: HexLike, field_name: str = "data") -> bytes:
    """Accept raw bytes or a 0x-prefixed hex string; None and "" mean empty."""
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value if value.startswith(("0x", "0X")) else f"0x{value}"
    if len(text) % 2 != 0 or not is_hex(text):
        raise MalformedDraftError(f"{field_name} is not an even-length hex string", field_name=field_name)
    return to_bytes(hexstr=text)


def normalize_address(address: Optional[str], field_name: str) -> str:
    if not address or not is_hex_address(address):
        raise MalformedDraftError(f"{field_name} is not a 20-byte address: {address!r}", field_name=field_name)
    return to_checksum_address(address)


def _word(value: int, size: int = 32) -> str:
    return "0x" + value.to_bytes(size, "big").hex()


@dataclass
class PaymasterSpec:
    """
    Paymaster sponsoring an operation.

    Gas limits may both be left unset to take the GasParameters defaults;
    setting only one of them is a partial specification.
    """
    address: str
    verification_gas_limit: Optional[int] = None
    post_op_gas_limit: Optional[int] = None
    data: bytes = b""


@dataclass(frozen=True)
class Eip7702Authorization:
    """Signed EIP-7702 authorization tuple delegating an EOA's code."""
    chain_id: int
    address: str
    nonce: int
    y_parity: int
    r: int
    s: int

    def to_rpc_dict(self) -> Dict[str, str]:
        return {
            "address": self.address,
            "chainId": _to_hex(self.chain_id),
            "nonce": _to_hex(self.nonce),
            "r": _word(self.r),
            "s": _word(self.s),
            "yParity": _to_hex(self.y_parity),
        }

    def to_rlp_fields(self) -> List[Any]:
        return [
            self.chain_id,
            to_canonical_address(self.address),
            self.nonce,
            self.y_parity,
            self.r,
            self.s,
        ]


def parse_init_code(init_code: HexLike) -> Tuple[Optional[str], bytes]:
    """Split a packed initCode blob into (factory, factoryData)."""
    blob = to_data_bytes(init_code, "initCode")
    if not blob:
        return None, b""
    if len(blob) < 20:
        raise MalformedDraftError("initCode is too short to contain a factory address", field_name="initCode")
    return to_checksum_address(blob[:20]), blob[20:]


def parse_paymaster_and_data(paymaster_and_data: HexLike) -> Optional[PaymasterSpec]:
    """
    Split a packed paymasterAndData blob
    (paymaster || uint128 verificationGas || uint128 postOpGas || data).
    """
    blob = to_data_bytes(paymaster_and_data, "paymasterAndData")
    if not blob:
        return None
    if len(blob) < 52:
        raise MalformedDraftError(
            "paymasterAndData is too short (needs paymaster + gas limits)",
            field_name="paymasterAndData",
        )
    return PaymasterSpec(
        address=to_checksum_address(blob[:20]),
        verification_gas_limit=int.from_bytes(blob[20:36], "big"),
        post_op_gas_limit=int.from_bytes(blob[36:52], "big"),
        data=blob[52:],
    )


@dataclass
class UserOperationDraft:
    """
    Caller-owned skeleton of a UserOperation.

    ``nonce`` left as None is read from the EntryPoint before signing.
    ``gas_overrides`` maps GasParameters field names to values.
    A creation ``factory`` and an EIP-7702 ``authorization`` are mutually
    exclusive; the authorization implies the 0x7702 sentinel factory.
    """
    sender: str
    call_data: bytes = b""
    nonce: Optional[int] = None
    gas_overrides: Dict[str, int] = field(default_factory=dict)
    factory: Optional[str] = None
    factory_data: bytes = b""
    paymaster: Optional[PaymasterSpec] = None
    authorization: Optional[Eip7702Authorization] = None
    signature: bytes = b""

    @classmethod
    def from_packed(
        cls,
        sender: str,
        call_data: HexLike = None,
        init_code: HexLike = None,
        paymaster_and_data: HexLike = None,
        **kwargs: Any,
    ) -> "UserOperationDraft":
        factory, factory_data = parse_init_code(init_code)
        return cls(
            sender=sender,
            call_data=to_data_bytes(call_data, "callData"),
            factory=factory,
            factory_data=factory_data,
            paymaster=parse_paymaster_and_data(paymaster_and_data),
            **kwargs,
        )


@dataclass
class UserOperation:
    """
    ERC-4337 UserOperation resolved for one EntryPoint revision.

    Values are raw units (wei / gas units) and encoded as hex for RPC calls.
    The packed views (init_code, paymaster_and_data, account_gas_limits,
    gas_fees) follow the revision in ``version``.
    """
    version: EntryPointVersion
    sender: str
    nonce: int
    call_data: bytes
    gas: GasParameters
    factory: Optional[str] = None
    factory_data: bytes = b""
    paymaster: Optional[PaymasterSpec] = None
    authorization: Optional[Eip7702Authorization] = None
    signature: bytes = b""

    @property
    def is_delegated(self) -> bool:
        return self.factory == EIP7702_FACTORY_SENTINEL

    @property
    def init_code(self) -> bytes:
        if self.factory is None:
            return b""
        if self.is_delegated:
            # Delegated accounts hash initCode as delegate || factoryData
            if self.authorization is None:
                return EIP7702_INIT_CODE_MARKER
            return to_canonical_address(self.authorization.address) + self.factory_data
        return to_canonical_address(self.factory) + self.factory_data

    @property
    def paymaster_and_data(self) -> bytes:
        pm = self.paymaster
        if pm is None:
            return b""
        if not self.version.is_packed:
            return to_canonical_address(pm.address) + pm.data
        return (
            to_canonical_address(pm.address)
            + (pm.verification_gas_limit or 0).to_bytes(16, "big")
            + (pm.post_op_gas_limit or 0).to_bytes(16, "big")
            + pm.data
        )

    @property
    def account_gas_limits(self) -> bytes:
        return (
            self.gas.verification_gas_limit.to_bytes(16, "big")
            + self.gas.call_gas_limit.to_bytes(16, "big")
        )

    @property
    def gas_fees(self) -> bytes:
        return (
            self.gas.max_priority_fee_per_gas.to_bytes(16, "big")
            + self.gas.max_fee_per_gas.to_bytes(16, "big")
        )

    def to_rpc_dict(self) -> Dict[str, Any]:
        """Serialize to the relayer dialect of this revision."""
        payload: Dict[str, Any] = {
            "sender": self.sender.lower(),
            "nonce": _to_hex(self.nonce),
        }
        if self.version.is_packed:
            payload.update(self._packed_rpc_fields())
        else:
            payload["initCode"] = encode_hex(self.init_code)
        payload.update(
            {
                "callData": encode_hex(self.call_data),
                "callGasLimit": _to_hex(self.gas.call_gas_limit),
                "verificationGasLimit": _to_hex(self.gas.verification_gas_limit),
                "preVerificationGas": _to_hex(self.gas.pre_verification_gas),
                "maxFeePerGas": _to_hex(self.gas.max_fee_per_gas),
                "maxPriorityFeePerGas": _to_hex(self.gas.max_priority_fee_per_gas),
            }
        )
        if self.version.is_packed:
            payload.update(self._packed_paymaster_fields())
        else:
            payload["paymasterAndData"] = encode_hex(self.paymaster_and_data)
        payload["signature"] = encode_hex(self.signature)
        if self.version.is_packed and self.authorization is not None:
            payload["eip7702Auth"] = self.authorization.to_rpc_dict()
        return payload

    def _packed_rpc_fields(self) -> Dict[str, Any]:
        # Absent factory fields are omitted, never sent as null
        if self.factory is None:
            return {}
        return {
            "factory": self.factory,
            "factoryData": encode_hex(self.factory_data),
        }

    def _packed_paymaster_fields(self) -> Dict[str, Any]:
        pm = self.paymaster
        if pm is None:
            return {}
        return {
            "paymaster": pm.address,
            "paymasterVerificationGasLimit": _to_hex(pm.verification_gas_limit or 0),
            "paymasterPostOpGasLimit": _to_hex(pm.post_op_gas_limit or 0),
            "paymasterData": encode_hex(pm.data),
        }


@dataclass
class SignedUserOperation:
    """A UserOperation with its signature and the hash it was signed over."""
    operation: UserOperation
    user_op_hash: str
    entry_point: str
    chain_id: int

    @property
    def signature(self) -> bytes:
        return self.operation.signature

    def to_rpc_dict(self) -> Dict[str, Any]:
        return self.operation.to_rpc_dict()


@dataclass
class BundlerReceipt:
    """Receipt returned by eth_getUserOperationReceipt."""
    user_op_hash: str
    success: bool
    reason: Optional[str] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    actual_gas_used: Optional[int] = None
    actual_gas_cost: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rpc(cls, user_op_hash: str, data: Dict[str, Any]) -> "BundlerReceipt":
        def parse_int(value: Any) -> Optional[int]:
            if value is None:
                return None
            if isinstance(value, int):
                return value
            return int(value, 16) if str(value).startswith("0x") else int(value)

        receipt = data.get("receipt") or {}
        success = data.get("success")
        if isinstance(success, str):
            success = success.lower() in ("true", "0x1", "1")
        return cls(
            user_op_hash=data.get("userOpHash") or user_op_hash,
            success=bool(success),
            reason=data.get("reason") or None,
            transaction_hash=receipt.get("transactionHash"),
            block_number=parse_int(receipt.get("blockNumber")),
            actual_gas_used=parse_int(data.get("actualGasUsed")),
            actual_gas_cost=parse_int(data.get("actualGasCost")),
            raw=data,
        )
