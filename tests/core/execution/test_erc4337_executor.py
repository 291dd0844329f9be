"""
Tests for the UserOperation executor flows.
"""

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from unittest.mock import AsyncMock

from aatl.config import ENTRY_POINT_V06, ENTRY_POINT_V07, ENTRY_POINT_V08, Settings
from aatl.core.errors import (
    AlreadyKnownError,
    ChainRpcError,
    MalformedDraftError,
    RelayerRejectedError,
    UnexpectedSenderError,
)
from aatl.core.execution.eip7702 import RawTransport, build_authorization, decode_delegated_transaction
from aatl.core.execution.erc4337_executor import UserOpExecutor
from aatl.core.execution.signing import LocalAccountSigner
from aatl.core.execution.userop import EIP7702_FACTORY_SENTINEL, UserOperationDraft
from aatl.core.execution.versions import EntryPointVersion
from aatl.providers.bundler import BundlerProvider
from aatl.providers.chain import ChainStateProvider, FeeData


ACCOUNT_KEY = "0x" + "11" * 32
SPONSOR_KEY = "0x" + "22" * 32
DELEGATE = "0x4444444444444444444444444444444444444444"
CHAIN_ID = 11155111


@pytest.fixture
def signer():
    return LocalAccountSigner(ACCOUNT_KEY)


@pytest.fixture
def sponsor():
    return LocalAccountSigner(SPONSOR_KEY)


@pytest.fixture
def bundler():
    bundler = AsyncMock(spec=BundlerProvider)
    bundler.send_user_operation.side_effect = lambda signed, entry_point: signed.user_op_hash
    bundler.send_bundle_now.return_value = True
    bundler.ready.return_value = True
    return bundler


@pytest.fixture
def chain():
    chain = AsyncMock(spec=ChainStateProvider)
    chain.get_chain_id.return_value = CHAIN_ID
    chain.get_entry_point_nonce.return_value = 4
    chain.get_transaction_count.return_value = 9
    chain.get_fee_data.return_value = FeeData(
        base_fee_per_gas=10,
        max_priority_fee_per_gas=2,
        max_fee_per_gas=22,
    )
    return chain


@pytest.fixture
def executor(bundler, chain):
    settings = Settings(eip7702_delegate_address=DELEGATE, enable_bundle_now=True)
    return UserOpExecutor(bundler=bundler, chain=chain, entry_point=ENTRY_POINT_V07, settings=settings)


def _recovers(user_op_hash: str, signature: bytes, address: str) -> bool:
    return Account.recover_message(encode_defunct(hexstr=user_op_hash), signature=signature) == address


class TestSendUserOperation:
    @pytest.mark.asyncio
    async def test_reads_nonce_signs_and_submits(self, executor, bundler, chain, signer):
        draft = UserOperationDraft(sender=signer.address, call_data=b"\x01")

        submission = await executor.send_user_operation(draft, signer)

        assert submission.version is EntryPointVersion.V0_7
        assert submission.entry_point == ENTRY_POINT_V07
        assert submission.already_known is False
        assert submission.bundled_now is True
        assert submission.signed.operation.nonce == 4
        assert _recovers(submission.user_op_hash, submission.signed.signature, signer.address)
        chain.get_entry_point_nonce.assert_awaited_once_with(ENTRY_POINT_V07, signer.address)
        bundler.send_user_operation.assert_awaited_once()
        bundler.send_bundle_now.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_explicit_entry_point_selects_revision(self, executor, signer):
        draft = UserOperationDraft(sender=signer.address, nonce=0)

        submission = await executor.send_user_operation(draft, signer, entry_point=ENTRY_POINT_V06, chain_id=1)

        assert submission.version is EntryPointVersion.V0_6
        assert "initCode" in submission.signed.to_rpc_dict()

    @pytest.mark.asyncio
    async def test_already_known_is_not_fatal(self, executor, bundler, signer):
        bundler.send_user_operation.side_effect = AlreadyKnownError("already known")
        draft = UserOperationDraft(sender=signer.address, nonce=1)

        submission = await executor.send_user_operation(draft, signer, chain_id=CHAIN_ID)

        assert submission.already_known is True
        assert submission.user_op_hash == submission.signed.user_op_hash

    @pytest.mark.asyncio
    async def test_rejection_propagates(self, executor, bundler, signer):
        bundler.send_user_operation.side_effect = RelayerRejectedError(-32500, "AA21 didn't pay prefund")
        draft = UserOperationDraft(sender=signer.address, nonce=1)

        with pytest.raises(RelayerRejectedError):
            await executor.send_user_operation(draft, signer, chain_id=CHAIN_ID)
        bundler.send_bundle_now.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nonce_failure_aborts_before_signing(self, executor, bundler, chain, signer):
        chain.get_entry_point_nonce.side_effect = ChainRpcError("execution reverted", method="eth_call")
        draft = UserOperationDraft(sender=signer.address)

        with pytest.raises(ChainRpcError):
            await executor.send_user_operation(draft, signer, chain_id=CHAIN_ID)
        bundler.send_user_operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bundle_now_can_be_skipped(self, executor, bundler, signer):
        draft = UserOperationDraft(sender=signer.address, nonce=0)

        submission = await executor.send_user_operation(draft, signer, chain_id=CHAIN_ID, bundle_now=False)

        assert submission.bundled_now is False
        bundler.send_bundle_now.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_entry_point(self, bundler, chain, signer):
        executor = UserOpExecutor(bundler=bundler, chain=chain, settings=Settings(entry_point_address=""))
        executor.entry_point = ""

        with pytest.raises(MalformedDraftError):
            await executor.send_user_operation(UserOperationDraft(sender=signer.address, nonce=0), signer)


class TestDelegatedUserOperation:
    @pytest.mark.asyncio
    async def test_v08_delegated_flow(self, executor, chain, signer):
        submission = await executor.send_delegated_user_operation(
            sender=signer.address,
            call_data="0xb61d27f6",
            signer=signer,
        )

        op = submission.signed.operation
        payload = submission.signed.to_rpc_dict()
        assert submission.entry_point == ENTRY_POINT_V08
        assert submission.version is EntryPointVersion.V0_8
        assert op.nonce == 4
        assert op.authorization.nonce == 9
        assert op.authorization.chain_id == CHAIN_ID
        assert payload["factory"] == EIP7702_FACTORY_SENTINEL
        assert payload["eip7702Auth"]["address"] == DELEGATE
        assert _recovers(submission.user_op_hash, op.signature, signer.address)
        chain.get_transaction_count.assert_awaited_once_with(signer.address, "pending")

    @pytest.mark.asyncio
    async def test_signer_must_be_sender(self, executor, bundler, sponsor, signer):
        with pytest.raises(UnexpectedSenderError):
            await executor.send_delegated_user_operation(
                sender=signer.address,
                call_data=b"",
                signer=sponsor,
            )
        bundler.send_user_operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delegate_is_required(self, bundler, chain, signer):
        executor = UserOpExecutor(
            bundler=bundler,
            chain=chain,
            entry_point=ENTRY_POINT_V07,
            settings=Settings(eip7702_delegate_address=""),
        )

        with pytest.raises(MalformedDraftError) as exc_info:
            await executor.send_delegated_user_operation(sender=signer.address, call_data=b"", signer=signer)
        assert exc_info.value.field_name == "delegate"
        bundler.send_user_operation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_v06_entry_point_is_rejected(self, executor, signer):
        with pytest.raises(MalformedDraftError):
            await executor.send_delegated_user_operation(
                sender=signer.address,
                call_data=b"",
                signer=signer,
                entry_point=ENTRY_POINT_V06,
            )


class TestEip7702Authorization:
    def _authorization(self, signer):
        return build_authorization(signer, DELEGATE, CHAIN_ID, 0, expected_sender=signer.address)

    @pytest.mark.asyncio
    async def test_nonce_is_reread_before_signing(self, executor, bundler, chain, signer, sponsor):
        chain.get_transaction_count.side_effect = [7, 8]
        bundler.send_raw_transaction.return_value = "0x" + "ef" * 32

        result = await executor.send_eip7702_authorization(
            self._authorization(signer),
            sponsor,
            authority=signer.address,
        )

        assert result.nonce == 8
        assert result.transport is RawTransport.BUNDLER
        assert result.already_known is False
        raw = bundler.send_raw_transaction.await_args.args[0]
        decoded = decode_delegated_transaction(raw)
        assert decoded.transaction.nonce == 8
        assert decoded.transaction.destination == signer.address
        assert decoded.transaction.gas_limit == 21_000
        assert decoded.transaction.max_fee_per_gas == 22
        assert decoded.transaction.max_priority_fee_per_gas == 2

    @pytest.mark.asyncio
    async def test_call_data_targets_delegate(self, executor, bundler, signer, sponsor):
        bundler.send_raw_transaction.return_value = "0x" + "ef" * 32

        result = await executor.send_eip7702_authorization(
            self._authorization(signer),
            sponsor,
            authority=signer.address,
            value=5,
            data="0xb61d27f6",
        )

        tx = result.signed.transaction
        assert tx.destination == DELEGATE
        assert tx.gas_limit == 100_000
        assert tx.value == 5

    @pytest.mark.asyncio
    async def test_auto_falls_back_to_rpc(self, executor, bundler, chain, signer, sponsor):
        bundler.send_raw_transaction.side_effect = RelayerRejectedError(-32601, "Method not found")
        chain.send_raw_transaction.return_value = "0x" + "12" * 32

        result = await executor.send_eip7702_authorization(
            self._authorization(signer),
            sponsor,
            authority=signer.address,
        )

        assert result.transport is RawTransport.RPC
        assert result.transaction_hash == "0x" + "12" * 32
        chain.send_raw_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bundler_transport_does_not_fall_back(self, executor, bundler, chain, signer, sponsor):
        bundler.send_raw_transaction.side_effect = RelayerRejectedError(-32601, "Method not found")

        with pytest.raises(RelayerRejectedError):
            await executor.send_eip7702_authorization(
                self._authorization(signer),
                sponsor,
                authority=signer.address,
                transport="bundler",
            )
        chain.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("transport", [RawTransport.AUTO, RawTransport.BUNDLER])
    async def test_already_known_is_not_rebroadcast(self, executor, bundler, chain, signer, sponsor, transport):
        bundler.send_raw_transaction.side_effect = AlreadyKnownError("already known")
        chain.send_raw_transaction.side_effect = ChainRpcError("already known", method="eth_sendRawTransaction")

        result = await executor.send_eip7702_authorization(
            self._authorization(signer),
            sponsor,
            authority=signer.address,
            transport=transport,
        )

        assert result.already_known is True
        assert result.transaction_hash == result.signed.hash
        assert result.transport is RawTransport.BUNDLER
        bundler.send_raw_transaction.assert_awaited_once()
        chain.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rpc_transport(self, executor, bundler, chain, signer, sponsor):
        chain.send_raw_transaction.return_value = "0x" + "34" * 32

        result = await executor.send_eip7702_authorization(
            self._authorization(signer),
            sponsor,
            authority=signer.address,
            transport=RawTransport.RPC,
        )

        assert result.transport is RawTransport.RPC
        bundler.send_raw_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_destination_required(self, executor, signer, sponsor):
        with pytest.raises(MalformedDraftError):
            await executor.send_eip7702_authorization(self._authorization(signer), sponsor)


class TestReceiptsAndEstimates:
    @pytest.mark.asyncio
    async def test_wait_for_receipt_uses_bundler(self, executor, bundler):
        bundler.get_user_operation_receipt.return_value = None

        outcome = await executor.wait_for_receipt("0x" + "ab" * 32, timeout_seconds=0.05, poll_interval_seconds=0.01)

        assert outcome.status.value == "timed_out"

    @pytest.mark.asyncio
    async def test_estimate_gas_uses_default_entry_point(self, executor, bundler, signer):
        op = await executor.build_user_operation(UserOperationDraft(sender=signer.address, nonce=0))

        await executor.estimate_gas(op)

        bundler.estimate_user_operation_gas.assert_awaited_once_with(op, ENTRY_POINT_V07)
