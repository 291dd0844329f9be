"""
ERC-4337 UserOperation execution helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple, Union

import structlog

from aatl.config import Settings, settings as default_settings
from aatl.core.errors import AlreadyKnownError, MalformedDraftError, RelayerError
from aatl.core.execution.eip7702 import (
    RawTransport,
    SignedDelegatedTransaction,
    build_authorization,
    build_delegated_transaction,
    sign_delegated_transaction,
)
from aatl.core.execution.gas import GasPolicy, UserOpGasEstimate
from aatl.core.execution.receipts import ReceiptOutcome, ReceiptPoller
from aatl.core.execution.signing import Signer, sign_user_operation
from aatl.core.execution.userop import (
    Eip7702Authorization,
    HexLike,
    PaymasterSpec,
    SignedUserOperation,
    UserOperation,
    UserOperationDraft,
    to_data_bytes,
)
from aatl.core.execution.userop_builder import build_user_operation
from aatl.core.execution.versions import EntryPointVersion, resolve_entry_point_version
from aatl.providers.bundler import BundlerProvider, get_bundler_provider
from aatl.providers.chain import ChainStateProvider, get_chain_provider


logger = structlog.stdlib.get_logger(__name__)


@dataclass
class UserOpSubmission:
    """
    Result of handing a signed operation to the relayer.

    ``already_known`` means the relayer already held the operation; the
    hash is the locally computed one and the caller should poll, not resend.
    """
    user_op_hash: str
    entry_point: str
    version: EntryPointVersion
    already_known: bool = False
    bundled_now: bool = False
    signed: Optional[SignedUserOperation] = None


@dataclass
class DelegatedTransactionSubmission:
    """
    Result of broadcasting a signed type-0x04 transaction.

    ``already_known`` means the relayer already held the transaction; the
    hash is the locally computed one and nothing was rebroadcast.
    """
    transaction_hash: str
    transport: RawTransport
    nonce: int
    signed: SignedDelegatedTransaction
    already_known: bool = False


class UserOpExecutor:
    """
    Builds, signs and submits ERC-4337 UserOperations and EIP-7702
    delegated transactions via a bundler and a chain RPC endpoint.

    Signers are passed per call; the executor holds no key material.
    """

    def __init__(
        self,
        bundler: Optional[BundlerProvider] = None,
        chain: Optional[ChainStateProvider] = None,
        entry_point: Optional[str] = None,
        gas_policy: Optional[GasPolicy] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.bundler = bundler or get_bundler_provider()
        self.chain = chain or get_chain_provider()
        self.entry_point = entry_point or self.settings.entry_point_address
        self.gas_policy = gas_policy or GasPolicy()

    def _require_entry_point(self, entry_point: Optional[str]) -> str:
        resolved = entry_point or self.entry_point
        if not resolved:
            raise MalformedDraftError("EntryPoint address is required", field_name="entry_point")
        return resolved

    def resolve_version(
        self,
        entry_point: Optional[str] = None,
        version: Optional[Union[EntryPointVersion, str]] = None,
        delegate: Optional[str] = None,
    ) -> EntryPointVersion:
        return resolve_entry_point_version(
            self._require_entry_point(entry_point),
            version=version,
            delegate=delegate,
            settings=self.settings,
        )

    async def build_user_operation(
        self,
        draft: UserOperationDraft,
        entry_point: Optional[str] = None,
        version: Optional[Union[EntryPointVersion, str]] = None,
    ) -> UserOperation:
        """
        Resolve the revision and gas, read the EntryPoint nonce when the draft
        has none, and build the unsigned operation.
        """
        entry_point = self._require_entry_point(entry_point)
        delegate = draft.authorization.address if draft.authorization is not None else None
        resolved_version = self.resolve_version(entry_point, version, delegate=delegate)
        gas = self.gas_policy.resolve(draft.gas_overrides)

        nonce = draft.nonce
        if nonce is None:
            nonce = await self.chain.get_entry_point_nonce(entry_point, draft.sender)

        return build_user_operation(draft, resolved_version, gas, nonce=nonce)

    def sign_user_operation(
        self,
        op: UserOperation,
        signer: Signer,
        chain_id: int,
        entry_point: Optional[str] = None,
    ) -> SignedUserOperation:
        return sign_user_operation(op, signer, self._require_entry_point(entry_point), chain_id)

    async def _chain_id(self, chain_id: Optional[int]) -> int:
        if chain_id is not None:
            return chain_id
        return await self.chain.get_chain_id()

    async def submit(self, signed: SignedUserOperation, bundle_now: Optional[bool] = None) -> UserOpSubmission:
        """Send an already signed operation, then nudge the relayer to bundle."""
        log = logger.bind(
            user_op_hash=signed.user_op_hash,
            entry_point=signed.entry_point,
            version=signed.operation.version.value,
        )

        already_known = False
        try:
            user_op_hash = await self.bundler.send_user_operation(signed, signed.entry_point)
        except AlreadyKnownError as exc:
            log.info("userop.already_known", reason=exc.message)
            user_op_hash = signed.user_op_hash
            already_known = True
        else:
            if user_op_hash.lower() != signed.user_op_hash.lower():
                log.warning("userop.hash_mismatch", relayer_hash=user_op_hash)
            log.info("userop.submitted")

        if bundle_now is None:
            bundle_now = self.settings.enable_bundle_now
        bundled_now = await self.bundler.send_bundle_now() if bundle_now else False

        return UserOpSubmission(
            user_op_hash=user_op_hash,
            entry_point=signed.entry_point,
            version=signed.operation.version,
            already_known=already_known,
            bundled_now=bundled_now,
            signed=signed,
        )

    async def send_user_operation(
        self,
        draft: UserOperationDraft,
        signer: Signer,
        entry_point: Optional[str] = None,
        version: Optional[Union[EntryPointVersion, str]] = None,
        chain_id: Optional[int] = None,
        bundle_now: Optional[bool] = None,
    ) -> UserOpSubmission:
        entry_point = self._require_entry_point(entry_point)
        op = await self.build_user_operation(draft, entry_point, version)
        signed = sign_user_operation(op, signer, entry_point, await self._chain_id(chain_id))
        return await self.submit(signed, bundle_now=bundle_now)

    async def send_delegated_user_operation(
        self,
        sender: str,
        call_data: HexLike,
        signer: Signer,
        delegate: Optional[str] = None,
        entry_point: Optional[str] = None,
        gas_overrides: Optional[Dict[str, int]] = None,
        paymaster: Optional[PaymasterSpec] = None,
        chain_id: Optional[int] = None,
        bundle_now: Optional[bool] = None,
    ) -> UserOpSubmission:
        """
        Send a UserOperation from an EOA delegated via EIP-7702 (EntryPoint v0.8
        by default).

        The authorization uses the account's pending transaction count; the
        operation uses EntryPoint.getNonce(sender, 0).
        """
        delegate = self.settings.require_delegate(delegate)
        entry_point = entry_point or self.settings.entry_point_v08_address
        chain_id = await self._chain_id(chain_id)

        authorization_nonce = await self.chain.get_transaction_count(sender, "pending")
        authorization = build_authorization(signer, delegate, chain_id, authorization_nonce, expected_sender=sender)
        logger.debug(
            "eip7702.authorization_signed",
            sender=sender,
            delegate=authorization.address,
            nonce=authorization_nonce,
        )

        draft = UserOperationDraft(
            sender=sender,
            call_data=to_data_bytes(call_data, "callData"),
            nonce=await self.chain.get_entry_point_nonce(entry_point, sender),
            gas_overrides=dict(gas_overrides or {}),
            paymaster=paymaster,
            authorization=authorization,
        )
        op = await self.build_user_operation(draft, entry_point)
        signed = sign_user_operation(op, signer, entry_point, chain_id)
        return await self.submit(signed, bundle_now=bundle_now)

    async def send_eip7702_authorization(
        self,
        authorization: Eip7702Authorization,
        sponsor: Signer,
        authority: Optional[str] = None,
        destination: Optional[str] = None,
        value: int = 0,
        data: HexLike = b"",
        gas_limit: Optional[int] = None,
        transport: Union[RawTransport, str] = RawTransport.AUTO,
    ) -> DelegatedTransactionSubmission:
        """
        Post ``authorization`` on chain in a type-0x04 transaction paid by
        ``sponsor``.

        Without call data the transaction goes to the delegating account
        (``authority``); with call data it goes to the delegate contract.
        The sponsor nonce is read again right before signing.
        """
        transport = RawTransport(transport)
        call_data = to_data_bytes(data, "data")
        if destination is None:
            destination = authorization.address if call_data else authority
        if not destination:
            raise MalformedDraftError(
                "A destination or the delegating account is required",
                field_name="destination",
            )

        fees = await self.chain.get_fee_data()
        nonce = await self.chain.get_transaction_count(sponsor.address, "pending")
        tx = build_delegated_transaction(
            authorization,
            nonce=nonce,
            max_priority_fee_per_gas=fees.max_priority_fee_per_gas,
            max_fee_per_gas=fees.max_fee_per_gas,
            destination=destination,
            value=value,
            data=call_data,
            gas_limit=gas_limit,
        )

        latest_nonce = await self.chain.get_transaction_count(sponsor.address, "pending")
        if latest_nonce != nonce:
            logger.info("eip7702.nonce_moved", sponsor=sponsor.address, nonce=nonce, latest_nonce=latest_nonce)
            tx = replace(tx, nonce=latest_nonce)

        signed = sign_delegated_transaction(tx, sponsor)
        try:
            tx_hash, used = await self._broadcast(signed.to_hex(), transport)
        except AlreadyKnownError as exc:
            logger.info("eip7702.already_known", tx_hash=signed.hash, nonce=tx.nonce, reason=exc.message)
            return DelegatedTransactionSubmission(
                transaction_hash=signed.hash,
                transport=RawTransport.BUNDLER,
                nonce=tx.nonce,
                signed=signed,
                already_known=True,
            )
        logger.info("eip7702.transaction_sent", tx_hash=tx_hash, transport=used.value, nonce=tx.nonce)
        return DelegatedTransactionSubmission(transaction_hash=tx_hash, transport=used, nonce=tx.nonce, signed=signed)

    async def _broadcast(self, raw_transaction: str, transport: RawTransport) -> Tuple[str, RawTransport]:
        if transport is RawTransport.RPC:
            return await self.chain.send_raw_transaction(raw_transaction), RawTransport.RPC

        if transport is RawTransport.BUNDLER:
            return await self.bundler.send_raw_transaction(raw_transaction), RawTransport.BUNDLER

        if await self.bundler.ready():
            try:
                return await self.bundler.send_raw_transaction(raw_transaction), RawTransport.BUNDLER
            except AlreadyKnownError:
                raise
            except RelayerError as exc:
                logger.warning("eip7702.bundler_broadcast_failed", error=str(exc), fallback="rpc")
        return await self.chain.send_raw_transaction(raw_transaction), RawTransport.RPC

    async def wait_for_receipt(
        self,
        user_op_hash: str,
        timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> ReceiptOutcome:
        poller = ReceiptPoller(
            self.bundler,
            timeout_seconds=timeout_seconds if timeout_seconds is not None else self.settings.receipt_timeout_seconds,
            poll_interval_seconds=(
                poll_interval_seconds
                if poll_interval_seconds is not None
                else self.settings.receipt_poll_interval_seconds
            ),
        )
        return await poller.wait(user_op_hash)

    async def estimate_gas(
        self,
        user_op: Union[UserOperation, SignedUserOperation],
        entry_point: Optional[str] = None,
    ) -> UserOpGasEstimate:
        return await self.bundler.estimate_user_operation_gas(user_op, self._require_entry_point(entry_point))
