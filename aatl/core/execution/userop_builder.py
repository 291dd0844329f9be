"""
UserOperation builders: revision-correct operations and calldata helpers.
"""

from __future__ import annotations

from typing import Optional

from eth_abi import encode
from eth_utils import keccak, to_canonical_address

from aatl.core.errors import MalformedDraftError
from aatl.core.execution.gas import GasParameters, UINT256_MAX
from aatl.core.execution.userop import (
    EIP7702_FACTORY_SENTINEL,
    UINT128_MAX,
    HexLike,
    PaymasterSpec,
    UserOperation,
    UserOperationDraft,
    normalize_address,
    to_data_bytes,
)
from aatl.core.execution.versions import EntryPointVersion


EXECUTE_SIGNATURE = "execute(address,uint256,bytes)"
GET_NONCE_SIGNATURE = "getNonce(address,uint192)"


def function_selector(signature: str) -> bytes:
    return keccak(text=signature)[:4]


def build_execute_call_data(to_address: str, value_wei: int, data: HexLike = b"") -> bytes:
    """
    Build calldata for execute(address,uint256,bytes).
    """
    if value_wei < 0:
        raise ValueError("Value must be non-negative")
    return function_selector(EXECUTE_SIGNATURE) + encode(
        ["address", "uint256", "bytes"],
        [to_canonical_address(to_address), value_wei, to_data_bytes(data)],
    )


def build_entrypoint_get_nonce_call(sender: str, key: int = 0) -> bytes:
    """
    Build calldata for EntryPoint.getNonce(address,uint192).
    """
    return function_selector(GET_NONCE_SIGNATURE) + encode(
        ["address", "uint192"],
        [to_canonical_address(sender), key],
    )


def _check_range(value: int, limit: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0 or value > limit:
        raise MalformedDraftError(f"{name} is outside the encodable range", field_name=name)


def _resolve_paymaster(spec: Optional[PaymasterSpec], gas: GasParameters) -> Optional[PaymasterSpec]:
    if spec is None:
        return None

    address = normalize_address(spec.address, "paymaster")
    verification = spec.verification_gas_limit
    post_op = spec.post_op_gas_limit
    if (verification is None) != (post_op is None):
        raise MalformedDraftError(
            "Paymaster gas limits must be given together or not at all",
            field_name="paymaster",
        )
    if verification is None:
        verification = gas.paymaster_verification_gas_limit
        post_op = gas.paymaster_post_op_gas_limit

    return PaymasterSpec(
        address=address,
        verification_gas_limit=verification,
        post_op_gas_limit=post_op,
        data=to_data_bytes(spec.data, "paymasterData"),
    )


def build_user_operation(
    draft: UserOperationDraft,
    version: EntryPointVersion,
    gas: GasParameters,
    nonce: Optional[int] = None,
) -> UserOperation:
    """
    Resolve a draft into the unsigned UserOperation for ``version``.

    ``nonce`` is the EntryPoint nonce read by the caller; the draft's own
    nonce takes precedence when set.
    """
    sender = normalize_address(draft.sender, "sender")

    resolved_nonce = draft.nonce if draft.nonce is not None else nonce
    if resolved_nonce is None:
        raise MalformedDraftError("UserOperation nonce was not resolved", field_name="nonce")
    _check_range(resolved_nonce, UINT256_MAX, "nonce")

    factory_data = to_data_bytes(draft.factory_data, "factoryData")
    creation = draft.factory is not None and draft.factory != EIP7702_FACTORY_SENTINEL

    if draft.authorization is not None:
        if creation:
            raise MalformedDraftError(
                "A creation factory and an EIP-7702 authorization cannot be combined",
                field_name="factory",
            )
        if not version.is_packed:
            raise MalformedDraftError(
                f"EIP-7702 delegated operations need EntryPoint v0.7 or later, got v{version.value}",
                field_name="authorization",
            )
        normalize_address(draft.authorization.address, "authorization.address")
        factory: Optional[str] = EIP7702_FACTORY_SENTINEL
    elif draft.factory == EIP7702_FACTORY_SENTINEL:
        raise MalformedDraftError(
            "The 0x7702 factory marker requires an EIP-7702 authorization",
            field_name="factory",
        )
    elif creation:
        factory = normalize_address(draft.factory, "factory")
    else:
        if factory_data:
            raise MalformedDraftError("factoryData given without a factory", field_name="factoryData")
        factory = None

    paymaster = _resolve_paymaster(draft.paymaster, gas)

    if version.is_packed:
        # accountGasLimits / gasFees / paymasterAndData pack these as uint128
        for name in (
            "call_gas_limit",
            "verification_gas_limit",
            "max_fee_per_gas",
            "max_priority_fee_per_gas",
        ):
            _check_range(getattr(gas, name), UINT128_MAX, name)
        if paymaster is not None:
            _check_range(paymaster.verification_gas_limit, UINT128_MAX, "paymaster_verification_gas_limit")
            _check_range(paymaster.post_op_gas_limit, UINT128_MAX, "paymaster_post_op_gas_limit")

    return UserOperation(
        version=version,
        sender=sender,
        nonce=resolved_nonce,
        call_data=to_data_bytes(draft.call_data, "callData"),
        gas=gas,
        factory=factory,
        factory_data=factory_data,
        paymaster=paymaster,
        authorization=draft.authorization,
        signature=to_data_bytes(draft.signature, "signature"),
    )
