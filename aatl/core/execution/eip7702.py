"""
EIP-7702 authorizations and type-0x04 (set-code) transactions.

https://eips.ethereum.org/EIPS/eip-7702

    authorization digest = keccak(0x05 || rlp([chain_id, address, nonce]))
    tx = 0x04 || rlp([chain_id, nonce, max_priority_fee_per_gas, max_fee_per_gas,
                      gas_limit, destination, value, data, access_list,
                      authorization_list, signature_y_parity, signature_r, signature_s])

Integers go through pyrlp's big-endian sedes: minimal encoding, no leading
zero byte, and zero encodes as the empty string.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence

import rlp
from eth_utils import big_endian_to_int, encode_hex, keccak, to_canonical_address, to_checksum_address

from aatl.core.errors import MalformedDraftError, UnexpectedSenderError
from aatl.core.execution.signing import Signer
from aatl.core.execution.userop import Eip7702Authorization, HexLike, normalize_address, to_data_bytes


AUTHORIZATION_MAGIC = b"\x05"
SET_CODE_TX_TYPE = b"\x04"

# Plain authorization posting vs. authorization bundled with a call
AUTHORIZATION_ONLY_GAS_LIMIT = 21_000
AUTHORIZATION_WITH_CALL_GAS_LIMIT = 100_000


class RawTransport(str, Enum):
    """Where a signed type-0x04 transaction is broadcast."""
    AUTO = "auto"  # relayer first, chain RPC on failure
    BUNDLER = "bundler"
    RPC = "rpc"


def authorization_digest(chain_id: int, delegate: str, nonce: int) -> bytes:
    return keccak(AUTHORIZATION_MAGIC + rlp.encode([chain_id, to_canonical_address(delegate), nonce]))


def build_authorization(
    signer: Signer,
    delegate: str,
    chain_id: int,
    nonce: int,
    expected_sender: str,
) -> Eip7702Authorization:
    """
    Sign an authorization delegating ``signer``'s code to ``delegate``.

    ``nonce`` is the signer's plain account nonce, not the UserOperation
    nonce. The signer must be the operation sender.
    """
    if signer.address.lower() != expected_sender.lower():
        raise UnexpectedSenderError(signer.address, expected_sender)

    delegate = normalize_address(delegate, "delegate")
    sig = signer.sign_digest(authorization_digest(chain_id, delegate, nonce))
    return Eip7702Authorization(
        chain_id=chain_id,
        address=delegate,
        nonce=nonce,
        y_parity=sig.y_parity,
        r=sig.r,
        s=sig.s,
    )


@dataclass(frozen=True)
class DelegatedTransaction:
    """Unsigned type-0x04 transaction carrying exactly one authorization."""
    chain_id: int
    nonce: int
    max_priority_fee_per_gas: int
    max_fee_per_gas: int
    gas_limit: int
    destination: str
    authorization: Eip7702Authorization
    value: int = 0
    data: bytes = b""
    access_list: Sequence[Any] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.access_list:
            raise MalformedDraftError("Delegated transactions carry an empty access list", field_name="access_list")
        for name in ("chain_id", "nonce", "max_priority_fee_per_gas", "max_fee_per_gas", "gas_limit", "value"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise MalformedDraftError(f"{name} must be a non-negative integer", field_name=name)

    def to_rlp_fields(self) -> List[Any]:
        return [
            self.chain_id,
            self.nonce,
            self.max_priority_fee_per_gas,
            self.max_fee_per_gas,
            self.gas_limit,
            to_canonical_address(self.destination),
            self.value,
            to_data_bytes(self.data),
            [],
            [self.authorization.to_rlp_fields()],
        ]

    def encode(self) -> bytes:
        """0x04 || rlp(fields); the signing pre-image."""
        return SET_CODE_TX_TYPE + rlp.encode(self.to_rlp_fields())

    def signing_hash(self) -> bytes:
        return keccak(self.encode())


@dataclass(frozen=True)
class SignedDelegatedTransaction:
    transaction: DelegatedTransaction
    y_parity: int
    r: int
    s: int

    @property
    def raw_transaction(self) -> bytes:
        fields = self.transaction.to_rlp_fields() + [self.y_parity, self.r, self.s]
        return SET_CODE_TX_TYPE + rlp.encode(fields)

    @property
    def hash(self) -> str:
        return encode_hex(keccak(self.raw_transaction))

    def to_hex(self) -> str:
        return encode_hex(self.raw_transaction)


def build_delegated_transaction(
    authorization: Eip7702Authorization,
    nonce: int,
    max_priority_fee_per_gas: int,
    max_fee_per_gas: int,
    destination: str,
    value: int = 0,
    data: HexLike = b"",
    gas_limit: Optional[int] = None,
) -> DelegatedTransaction:
    call_data = to_data_bytes(data, "data")
    if gas_limit is None:
        gas_limit = AUTHORIZATION_WITH_CALL_GAS_LIMIT if call_data else AUTHORIZATION_ONLY_GAS_LIMIT
    return DelegatedTransaction(
        chain_id=authorization.chain_id,
        nonce=nonce,
        max_priority_fee_per_gas=max_priority_fee_per_gas,
        max_fee_per_gas=max_fee_per_gas,
        gas_limit=gas_limit,
        destination=normalize_address(destination, "destination"),
        authorization=authorization,
        value=value,
        data=call_data,
    )


def sign_delegated_transaction(tx: DelegatedTransaction, signer: Signer) -> SignedDelegatedTransaction:
    """Sign the raw envelope digest; no personal-message prefix here."""
    sig = signer.sign_digest(tx.signing_hash())
    return SignedDelegatedTransaction(transaction=tx, y_parity=sig.y_parity, r=sig.r, s=sig.s)


def _decode_int(item: bytes, name: str) -> int:
    if item[:1] == b"\x00":
        raise ValueError(f"Non-canonical integer encoding for {name}")
    return big_endian_to_int(item)


def _decode_authorization(items: Sequence[bytes]) -> Eip7702Authorization:
    if len(items) != 6:
        raise ValueError("Authorization tuple must have 6 fields")
    chain_id, address, nonce, y_parity, r, s = items
    return Eip7702Authorization(
        chain_id=_decode_int(chain_id, "authorization.chain_id"),
        address=to_checksum_address(address),
        nonce=_decode_int(nonce, "authorization.nonce"),
        y_parity=_decode_int(y_parity, "authorization.y_parity"),
        r=_decode_int(r, "authorization.r"),
        s=_decode_int(s, "authorization.s"),
    )


def decode_delegated_transaction(raw: HexLike) -> DelegatedTransaction | SignedDelegatedTransaction:
    """Parse an unsigned (10-field) or signed (13-field) type-0x04 envelope."""
    payload = to_data_bytes(raw, "raw")
    if payload[:1] != SET_CODE_TX_TYPE:
        raise ValueError("Not a type-0x04 transaction")

    items = rlp.decode(payload[1:])
    if len(items) not in (10, 13):
        raise ValueError(f"Unexpected field count {len(items)} for a type-0x04 transaction")

    (chain_id, nonce, priority_fee, max_fee, gas_limit, destination, value, data, access_list, auth_list) = items[:10]
    if access_list:
        raise ValueError("Non-empty access lists are not supported")
    if len(auth_list) != 1:
        raise ValueError("Expected exactly one authorization")

    tx = DelegatedTransaction(
        chain_id=_decode_int(chain_id, "chain_id"),
        nonce=_decode_int(nonce, "nonce"),
        max_priority_fee_per_gas=_decode_int(priority_fee, "max_priority_fee_per_gas"),
        max_fee_per_gas=_decode_int(max_fee, "max_fee_per_gas"),
        gas_limit=_decode_int(gas_limit, "gas_limit"),
        destination=to_checksum_address(destination),
        authorization=_decode_authorization(auth_list[0]),
        value=_decode_int(value, "value"),
        data=bytes(data),
    )
    if len(items) == 10:
        return tx

    y_parity, r, s = items[10:]
    return SignedDelegatedTransaction(
        transaction=tx,
        y_parity=_decode_int(y_parity, "y_parity"),
        r=_decode_int(r, "r"),
        s=_decode_int(s, "s"),
    )
