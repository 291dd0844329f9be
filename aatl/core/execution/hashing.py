"""
UserOperation hashing, one strategy per EntryPoint revision.

Each revision defines its own pre-image; a strategy is picked once from the
operation's version and never mixed with another during a call.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict

from eth_abi import encode
from eth_utils import keccak, to_canonical_address

from aatl.core.execution.userop import UserOperation
from aatl.core.execution.versions import EntryPointVersion


PACKED_USEROP_TYPEHASH = keccak(
    text=(
        "PackedUserOperation(address sender,uint256 nonce,bytes initCode,bytes callData,"
        "bytes32 accountGasLimits,uint256 preVerificationGas,bytes32 gasFees,bytes paymasterAndData)"
    )
)
EIP712_DOMAIN_TYPEHASH = keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
EIP712_DOMAIN_NAME = "ERC4337"
EIP712_DOMAIN_VERSION = "1"


class UserOpHasher(ABC):
    """Computes the EntryPoint's getUserOpHash for one revision."""

    version: EntryPointVersion

    @abstractmethod
    def pack(self, op: UserOperation) -> bytes:
        """ABI-encode the operation's hashed fields (signature excluded)."""

    @abstractmethod
    def hash(self, op: UserOperation, entry_point: str, chain_id: int) -> bytes:
        """Return the 32-byte hash the account signs."""


class _EntryPointBoundHasher(UserOpHasher):
    """v0.6/v0.7: keccak(abi(keccak(pack), entryPoint, chainId))."""

    def hash(self, op: UserOperation, entry_point: str, chain_id: int) -> bytes:
        return keccak(
            encode(
                ["bytes32", "address", "uint256"],
                [keccak(self.pack(op)), to_canonical_address(entry_point), chain_id],
            )
        )


class V06UserOpHasher(_EntryPointBoundHasher):
    version = EntryPointVersion.V0_6

    def pack(self, op: UserOperation) -> bytes:
        return encode(
            [
                "address",
                "uint256",
                "bytes32",
                "bytes32",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "uint256",
                "bytes32",
            ],
            [
                to_canonical_address(op.sender),
                op.nonce,
                keccak(op.init_code),
                keccak(op.call_data),
                op.gas.call_gas_limit,
                op.gas.verification_gas_limit,
                op.gas.pre_verification_gas,
                op.gas.max_fee_per_gas,
                op.gas.max_priority_fee_per_gas,
                keccak(op.paymaster_and_data),
            ],
        )


class V07UserOpHasher(_EntryPointBoundHasher):
    version = EntryPointVersion.V0_7

    def pack(self, op: UserOperation) -> bytes:
        return encode(
            [
                "address",
                "uint256",
                "bytes32",
                "bytes32",
                "bytes32",
                "uint256",
                "bytes32",
                "bytes32",
            ],
            [
                to_canonical_address(op.sender),
                op.nonce,
                keccak(op.init_code),
                keccak(op.call_data),
                op.account_gas_limits,
                op.gas.pre_verification_gas,
                op.gas_fees,
                keccak(op.paymaster_and_data),
            ],
        )


class V08UserOpHasher(UserOpHasher):
    """v0.8: EIP-712 typed data hash with the EntryPoint as verifying contract."""

    version = EntryPointVersion.V0_8

    def pack(self, op: UserOperation) -> bytes:
        return encode(
            [
                "bytes32",
                "address",
                "uint256",
                "bytes32",
                "bytes32",
                "bytes32",
                "uint256",
                "bytes32",
                "bytes32",
            ],
            [
                PACKED_USEROP_TYPEHASH,
                to_canonical_address(op.sender),
                op.nonce,
                keccak(op.init_code),
                keccak(op.call_data),
                op.account_gas_limits,
                op.gas.pre_verification_gas,
                op.gas_fees,
                keccak(op.paymaster_and_data),
            ],
        )

    @staticmethod
    def domain_separator(entry_point: str, chain_id: int) -> bytes:
        return keccak(
            encode(
                ["bytes32", "bytes32", "bytes32", "uint256", "address"],
                [
                    EIP712_DOMAIN_TYPEHASH,
                    keccak(text=EIP712_DOMAIN_NAME),
                    keccak(text=EIP712_DOMAIN_VERSION),
                    chain_id,
                    to_canonical_address(entry_point),
                ],
            )
        )

    def hash(self, op: UserOperation, entry_point: str, chain_id: int) -> bytes:
        return keccak(
            b"\x19\x01" + self.domain_separator(entry_point, chain_id) + keccak(self.pack(op))
        )


USER_OP_HASHERS: Dict[EntryPointVersion, UserOpHasher] = {
    EntryPointVersion.V0_6: V06UserOpHasher(),
    EntryPointVersion.V0_7: V07UserOpHasher(),
    EntryPointVersion.V0_8: V08UserOpHasher(),
}


def get_hasher(version: EntryPointVersion) -> UserOpHasher:
    return USER_OP_HASHERS[EntryPointVersion(version)]


def get_user_operation_hash(op: UserOperation, entry_point: str, chain_id: int) -> bytes:
    return get_hasher(op.version).hash(op, entry_point, chain_id)
