"""
Gas limits and fee defaults for UserOperations.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

from aatl.core.errors import MalformedDraftError


UINT256_MAX = 2**256 - 1


@dataclass
class UserOpGasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    paymaster_verification_gas_limit: Optional[int] = None
    paymaster_post_op_gas_limit: Optional[int] = None

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "UserOpGasEstimate":
        def parse_hex(value: Optional[str]) -> Optional[int]:
            if value is None:
                return None
            return int(value, 16)

        return cls(
            call_gas_limit=parse_hex(data.get("callGasLimit")) or 0,
            verification_gas_limit=parse_hex(data.get("verificationGasLimit")) or 0,
            pre_verification_gas=parse_hex(data.get("preVerificationGas")) or 0,
            paymaster_verification_gas_limit=parse_hex(data.get("paymasterVerificationGasLimit")),
            paymaster_post_op_gas_limit=parse_hex(data.get("paymasterPostOpGasLimit")),
        )


@dataclass(frozen=True)
class GasParameters:
    """Gas limits and fees in raw units (gas / wei)."""
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_verification_gas_limit: int = 0
    paymaster_post_op_gas_limit: int = 0

    def with_estimate(self, estimate: UserOpGasEstimate) -> "GasParameters":
        """Return a copy carrying a relayer gas estimate; fees are untouched."""
        updates = {
            "call_gas_limit": estimate.call_gas_limit or self.call_gas_limit,
            "verification_gas_limit": estimate.verification_gas_limit or self.verification_gas_limit,
            "pre_verification_gas": estimate.pre_verification_gas or self.pre_verification_gas,
        }
        if estimate.paymaster_verification_gas_limit is not None:
            updates["paymaster_verification_gas_limit"] = estimate.paymaster_verification_gas_limit
        if estimate.paymaster_post_op_gas_limit is not None:
            updates["paymaster_post_op_gas_limit"] = estimate.paymaster_post_op_gas_limit
        return replace(self, **updates)


DEFAULT_GAS = GasParameters(
    call_gas_limit=1_500_000,
    verification_gas_limit=1_000_000,
    pre_verification_gas=100_000,
    max_fee_per_gas=1,
    max_priority_fee_per_gas=1,
    paymaster_verification_gas_limit=500_000,
    paymaster_post_op_gas_limit=200_000,
)

GAS_FIELDS = frozenset(f.name for f in fields(GasParameters))


class GasPolicy:
    """
    Supplies gas parameters: revision-independent defaults with caller
    overrides applied on top.
    """

    def __init__(self, defaults: Optional[GasParameters] = None) -> None:
        self.defaults = defaults or DEFAULT_GAS

    def resolve(self, overrides: Optional[Mapping[str, int]] = None) -> GasParameters:
        if not overrides:
            return self.defaults

        unknown = set(overrides) - GAS_FIELDS
        if unknown:
            raise MalformedDraftError(
                f"Unknown gas parameter(s): {', '.join(sorted(unknown))}",
                field_name=sorted(unknown)[0],
            )

        for name, value in overrides.items():
            if isinstance(value, bool) or not isinstance(value, int):
                raise MalformedDraftError(f"Gas parameter {name} must be an integer", field_name=name)
            if value < 0 or value > UINT256_MAX:
                raise MalformedDraftError(f"Gas parameter {name} is outside the uint256 range", field_name=name)

        return replace(self.defaults, **overrides)
