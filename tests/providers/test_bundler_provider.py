"""
Tests for the bundler JSON-RPC client.
"""

import json

import httpx
import pytest

from aatl.config import ENTRY_POINT_V07
from aatl.core.errors import AlreadyKnownError, RelayerRejectedError, RelayerTransportError
from aatl.core.execution.gas import DEFAULT_GAS
from aatl.core.execution.userop import UserOperationDraft
from aatl.core.execution.userop_builder import build_user_operation
from aatl.core.execution.versions import EntryPointVersion
from aatl.providers.bundler import BundlerConfig, BundlerProvider


BUNDLER_URL = "http://bundler.test/rpc"
USER_OP_HASH = "0x" + "ab" * 32


def _provider(handler, **config) -> BundlerProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BundlerProvider(BundlerConfig(rpc_url=BUNDLER_URL, **config), client=client)


def _result(request: httpx.Request, result):
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _error(request: httpx.Request, code, message, data=None, status=200):
    body = json.loads(request.content)
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return httpx.Response(status, json={"jsonrpc": "2.0", "id": body["id"], "error": error})


def _user_op():
    draft = UserOperationDraft(sender="0x1111111111111111111111111111111111111111", nonce=0)
    return build_user_operation(draft, EntryPointVersion.V0_7, DEFAULT_GAS)


class TestSendUserOperation:
    @pytest.mark.asyncio
    async def test_returns_relayer_hash(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return _result(request, USER_OP_HASH)

        provider = _provider(handler)

        assert await provider.send_user_operation(_user_op(), ENTRY_POINT_V07) == USER_OP_HASH
        assert seen[0]["method"] == "eth_sendUserOperation"
        assert seen[0]["jsonrpc"] == "2.0"
        payload, entry_point = seen[0]["params"]
        assert entry_point == ENTRY_POINT_V07
        assert payload["sender"] == "0x1111111111111111111111111111111111111111"
        assert "factory" not in payload

    @pytest.mark.asyncio
    async def test_already_known(self):
        provider = _provider(lambda request: _error(request, -32602, "Already Known"))

        with pytest.raises(AlreadyKnownError):
            await provider.send_user_operation(_user_op(), ENTRY_POINT_V07)

    @pytest.mark.asyncio
    async def test_rejection_keeps_code_message_and_data(self):
        provider = _provider(lambda request: _error(request, -32500, "AA23 reverted", data="0xdeadbeef"))

        with pytest.raises(RelayerRejectedError) as exc_info:
            await provider.send_user_operation(_user_op(), ENTRY_POINT_V07)

        assert exc_info.value.code == -32500
        assert exc_info.value.message == "AA23 reverted"
        assert exc_info.value.data == "0xdeadbeef"
        assert exc_info.value.method == "eth_sendUserOperation"

    @pytest.mark.asyncio
    async def test_error_object_with_http_error_status(self):
        provider = _provider(lambda request: _error(request, -32602, "already known", status=400))

        with pytest.raises(AlreadyKnownError):
            await provider.send_user_operation(_user_op(), ENTRY_POINT_V07)

    @pytest.mark.asyncio
    async def test_http_failure_is_transport_error(self):
        provider = _provider(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(RelayerTransportError) as exc_info:
            await provider.send_user_operation(_user_op(), ENTRY_POINT_V07)

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_connection_failure_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = _provider(handler)

        with pytest.raises(RelayerTransportError):
            await provider.send_user_operation(_user_op(), ENTRY_POINT_V07)

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self):
        provider = BundlerProvider(BundlerConfig(rpc_url=""))

        assert await provider.ready() is False
        with pytest.raises(RelayerRejectedError):
            await provider.send_user_operation(_user_op(), ENTRY_POINT_V07)
        assert (await provider.health_check())["status"] == "disabled"


class TestBundleNow:
    @pytest.mark.asyncio
    async def test_success(self):
        methods = []

        def handler(request):
            methods.append(json.loads(request.content)["method"])
            return _result(request, "ok")

        provider = _provider(handler)

        assert await provider.send_bundle_now() is True
        assert methods == ["debug_bundler_sendBundleNow"]

    @pytest.mark.asyncio
    async def test_rejection_is_swallowed(self):
        provider = _provider(lambda request: _error(request, -32601, "Method not found"))

        assert await provider.send_bundle_now() is False

    @pytest.mark.asyncio
    async def test_transport_failure_is_swallowed(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        provider = _provider(handler)

        assert await provider.send_bundle_now() is False

    @pytest.mark.asyncio
    async def test_disabled(self):
        def handler(request):
            raise AssertionError("no request expected")

        provider = _provider(handler, enable_bundle_now=False)

        assert await provider.send_bundle_now() is False

    @pytest.mark.asyncio
    async def test_custom_method(self):
        methods = []

        def handler(request):
            methods.append(json.loads(request.content)["method"])
            return _result(request, None)

        provider = _provider(handler, bundle_now_method="debug_sendBundle")

        assert await provider.send_bundle_now() is True
        assert methods == ["debug_sendBundle"]


class TestReceiptsAndEstimates:
    @pytest.mark.asyncio
    async def test_missing_receipt_is_none(self):
        provider = _provider(lambda request: _result(request, None))

        assert await provider.get_user_operation_receipt(USER_OP_HASH) is None

    @pytest.mark.asyncio
    async def test_receipt_is_parsed(self):
        result = {
            "userOpHash": USER_OP_HASH,
            "success": False,
            "reason": "0x9167c27a",
            "actualGasUsed": "0x100",
            "actualGasCost": "0x200",
            "receipt": {"transactionHash": "0x" + "cd" * 32, "blockNumber": "0x2a"},
        }
        provider = _provider(lambda request: _result(request, result))

        receipt = await provider.get_user_operation_receipt(USER_OP_HASH)

        assert receipt.success is False
        assert receipt.reason == "0x9167c27a"
        assert receipt.block_number == 42
        assert receipt.actual_gas_cost == 0x200
        assert receipt.raw == result

    @pytest.mark.asyncio
    async def test_estimate(self):
        result = {"callGasLimit": "0x5208", "verificationGasLimit": "0x10000", "preVerificationGas": "0xc350"}
        provider = _provider(lambda request: _result(request, result))

        estimate = await provider.estimate_user_operation_gas(_user_op(), ENTRY_POINT_V07)

        assert estimate.call_gas_limit == 21000
        assert estimate.pre_verification_gas == 50000
        assert estimate.paymaster_verification_gas_limit is None

    @pytest.mark.asyncio
    async def test_send_raw_transaction(self):
        provider = _provider(lambda request: _result(request, "0x" + "ef" * 32))

        assert await provider.send_raw_transaction("0x04c0") == "0x" + "ef" * 32

    @pytest.mark.asyncio
    async def test_health_check(self):
        provider = _provider(lambda request: _result(request, "0xaa36a7"))

        assert await provider.health_check() == {"status": "healthy", "chainId": "0xaa36a7"}
        await provider.aclose()
