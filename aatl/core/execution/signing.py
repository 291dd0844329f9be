"""
Signers, credential resolution and signature normalization.

Keys never live in module state: callers hand a Signer (or a
CredentialResolver that produces one) to every call that signs.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional, Protocol, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import encode_hex, is_hex, to_bytes

from aatl.core.errors import (
    InvalidSignatureEncodingError,
    InvalidSignatureLengthError,
    UnexpectedSenderError,
)
from aatl.core.execution.hashing import get_user_operation_hash
from aatl.core.execution.userop import SignedUserOperation, UserOperation


SIGNATURE_LENGTH = 65


@dataclass(frozen=True)
class SignatureTriple:
    """Raw secp256k1 signature with a {0, 1} recovery parity."""
    y_parity: int
    r: int
    s: int


class Signer(Protocol):
    """Capability to sign on behalf of one address."""

    @property
    def address(self) -> str: ...

    def sign_message_hash(self, message_hash: bytes) -> bytes:
        """Sign the EIP-191 personal-message digest of ``message_hash``; 65 bytes."""
        ...

    def sign_digest(self, digest: bytes) -> SignatureTriple:
        """Sign ``digest`` as-is, without any message prefix."""
        ...


class CredentialResolver(Protocol):
    def resolve(self, address: str) -> Signer: ...


class LocalAccountSigner:
    """Signer backed by an in-process private key (eth_account)."""

    def __init__(self, private_key: Union[str, bytes]) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_message_hash(self, message_hash: bytes) -> bytes:
        signed = self._account.sign_message(encode_defunct(primitive=message_hash))
        return bytes(signed.signature)

    def sign_digest(self, digest: bytes) -> SignatureTriple:
        signed = self._account.unsafe_sign_hash(digest)
        return SignatureTriple(y_parity=to_y_parity(signed.v), r=signed.r, s=signed.s)

    def __repr__(self) -> str:
        return f"LocalAccountSigner({self.address})"


class StaticCredentialResolver:
    """Resolves signers from an explicit address -> private key mapping."""

    def __init__(self, keys: Optional[Mapping[str, Union[str, bytes]]] = None) -> None:
        self._signers: Dict[str, LocalAccountSigner] = {}
        for key in (keys or {}).values():
            self.add(key)

    def add(self, private_key: Union[str, bytes]) -> LocalAccountSigner:
        signer = LocalAccountSigner(private_key)
        self._signers[signer.address.lower()] = signer
        return signer

    def resolve(self, address: str) -> Signer:
        signer = self._signers.get(address.lower())
        if signer is None:
            raise KeyError(f"No credentials for {address}")
        return signer


def to_y_parity(v: int) -> int:
    """Map a recovery value (0/1, 27/28 or EIP-155) onto {0, 1}."""
    if v in (0, 1):
        return v
    if v in (27, 28):
        return v - 27
    if v >= 35:
        return (v - 35) % 2
    raise InvalidSignatureEncodingError(f"Unsupported recovery value: {v}")


def normalize_signature(signature: Union[bytes, str]) -> bytes:
    """
    Return a 65-byte r || s || v signature with v in {27, 28}.

    Signers may emit v as {0, 1}; EIP-155 style values are folded by parity.
    """
    if isinstance(signature, str):
        text = signature if signature.startswith("0x") else f"0x{signature}"
        if len(text) % 2 != 0 or not is_hex(text):
            raise InvalidSignatureEncodingError("Signature is not a hex string")
        raw = to_bytes(hexstr=text)
    else:
        raw = bytes(signature)

    if len(raw) != SIGNATURE_LENGTH:
        raise InvalidSignatureLengthError(len(raw))

    v = raw[64]
    if v in (27, 28):
        return raw
    return raw[:64] + bytes([to_y_parity(v) + 27])


def sign_user_operation(
    op: UserOperation,
    signer: Signer,
    entry_point: str,
    chain_id: int,
) -> SignedUserOperation:
    """Hash ``op`` for its revision and sign the personal-message digest."""
    if signer.address.lower() != op.sender.lower() and op.is_delegated:
        # 7702 accounts validate against their own EOA key
        raise UnexpectedSenderError(signer.address, op.sender)
    user_op_hash = get_user_operation_hash(op, entry_point, chain_id)
    signature = normalize_signature(signer.sign_message_hash(user_op_hash))
    return SignedUserOperation(
        operation=replace(op, signature=signature),
        user_op_hash=encode_hex(user_op_hash),
        entry_point=entry_point,
        chain_id=chain_id,
    )
