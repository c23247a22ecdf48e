"""
Tests for the HTTP-facing collaborators.

Uses respx to mock the JSON-RPC node, the signer endpoint and the storage
network; no actual node or gateway required.
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx
from eth_abi import encode

from dblog_delegation.chain import ChainReader, RpcError, _RpcClient
from dblog_delegation.contracts import selector
from dblog_delegation.errors import NetworkError, TransactionRevertedError, UserRejectionError
from dblog_delegation.storage import (
    ARTICLE_INDEX_FILE,
    MANIFEST_CONTENT_TYPE,
    GatewayStorage,
    build_manifest,
)
from dblog_delegation.types import DelegationConfig, FolderFile
from dblog_delegation.wallet import RpcWallet

from conftest import OWNER

RPC_URL = "http://localhost:8545"
SIGNER_URL = "http://localhost:1248"
UPLOAD_URL = "https://devnet.irys.xyz"
TX_HASH = "0x" + "ab" * 32


def _rpc(result) -> httpx.Response:
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


def _rpc_error(code: int, message: str) -> httpx.Response:
    return httpx.Response(
        200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}}
    )


class StaticUploadSigner:
    address = OWNER

    def sign(self, data: bytes) -> str:
        return "0xsig"


# ============================================================
#  JSON-RPC
# ============================================================


@pytest.mark.asyncio
async def test_rpc_client_sends_jsonrpc() -> None:
    """RPC client posts a JSON-RPC 2.0 envelope."""
    with respx.mock:
        route = respx.post(RPC_URL).mock(return_value=_rpc("0x7a69"))
        client = _RpcClient(RPC_URL)
        result = await client.call("eth_chainId")
        await client.close()

        assert result == "0x7a69"
        body = json.loads(route.calls[0].request.content)
        assert body["jsonrpc"] == "2.0"
        assert body["method"] == "eth_chainId"
        assert body["params"] == []


@pytest.mark.asyncio
async def test_rpc_error_object() -> None:
    with respx.mock:
        respx.post(RPC_URL).mock(return_value=_rpc_error(-32000, "nonce too low"))
        client = _RpcClient(RPC_URL)
        with pytest.raises(RpcError) as exc_info:
            await client.call("eth_sendRawTransaction", ["0x00"])
        await client.close()

        assert exc_info.value.code == -32000
        assert "nonce too low" in str(exc_info.value)


@pytest.mark.asyncio
async def test_rpc_http_error_does_not_echo_body() -> None:
    """HTTP errors are reported by status only."""
    with respx.mock:
        respx.post(RPC_URL).mock(return_value=httpx.Response(500, text="secret-internal-detail"))
        client = _RpcClient(RPC_URL)
        with pytest.raises(NetworkError) as exc_info:
            await client.call("eth_gasPrice")
        await client.close()

        assert "500" in str(exc_info.value)
        assert "secret-internal-detail" not in str(exc_info.value)


@pytest.mark.asyncio
async def test_rpc_connection_failure() -> None:
    with respx.mock:
        respx.post(RPC_URL).mock(side_effect=httpx.ConnectError("refused"))
        client = _RpcClient(RPC_URL)
        with pytest.raises(NetworkError):
            await client.call("eth_gasPrice")
        await client.close()


@pytest.mark.asyncio
async def test_chain_reads() -> None:
    """Hex quantities are decoded to ints."""
    with respx.mock:
        respx.post(RPC_URL).mock(
            side_effect=[
                _rpc("0x3b9aca00"),
                _rpc("0xde0b6b3a7640000"),
                _rpc({"number": "0x10", "timestamp": "0x65000000"}),
            ]
        )
        chain = ChainReader(RPC_URL)
        assert await chain.get_gas_price() == 10**9
        assert await chain.get_balance(OWNER) == 10**18
        assert await chain.get_block_timestamp() == 0x65000000
        await chain.close()


@pytest.mark.asyncio
async def test_read_contract() -> None:
    """eth_call with encoded arguments; the result is ABI-decoded."""
    with respx.mock:
        route = respx.post(RPC_URL).mock(
            return_value=_rpc("0x" + encode(["uint256"], [42]).hex())
        )
        chain = ChainReader(RPC_URL)
        result = await chain.read_contract(
            OWNER, "balanceOf(address)", [OWNER], ["uint256"]
        )
        await chain.close()

    assert result == (42,)
    body = json.loads(route.calls.last.request.content)
    assert body["method"] == "eth_call"
    assert body["params"][0]["data"].startswith(selector("balanceOf(address)"))


@pytest.mark.asyncio
async def test_wait_for_receipt_polls() -> None:
    with respx.mock:
        respx.post(RPC_URL).mock(
            side_effect=[
                _rpc(None),
                _rpc({"transactionHash": TX_HASH, "status": "0x1", "blockNumber": "0x2", "gasUsed": "0x5208"}),
            ]
        )
        chain = ChainReader(RPC_URL, poll_interval=0.01)
        receipt = await chain.wait_for_receipt(TX_HASH)
        await chain.close()

        assert receipt.tx_hash == TX_HASH
        assert receipt.block_number == 2
        assert receipt.gas_used == 21_000


@pytest.mark.asyncio
async def test_wait_for_receipt_reverted() -> None:
    with respx.mock:
        respx.post(RPC_URL).mock(
            return_value=_rpc({"transactionHash": TX_HASH, "status": "0x0", "blockNumber": "0x2"})
        )
        chain = ChainReader(RPC_URL)
        with pytest.raises(TransactionRevertedError) as exc_info:
            await chain.wait_for_receipt(TX_HASH)
        await chain.close()

        assert exc_info.value.tx_hash == TX_HASH


@pytest.mark.asyncio
async def test_wait_for_receipt_times_out() -> None:
    with respx.mock:
        respx.post(RPC_URL).mock(return_value=_rpc(None))
        chain = ChainReader(RPC_URL, poll_interval=0.01, confirmation_timeout=0.03)
        with pytest.raises(NetworkError, match="Timed out"):
            await chain.wait_for_receipt(TX_HASH)
        await chain.close()


# ============================================================
#  Signer-endpoint wallet
# ============================================================


@pytest.mark.asyncio
async def test_rpc_wallet_requests_accounts() -> None:
    """Falls back to eth_requestAccounts when no account is exposed yet."""
    with respx.mock:
        route = respx.post(SIGNER_URL).mock(side_effect=[_rpc([]), _rpc([OWNER.lower()])])
        wallet = RpcWallet(SIGNER_URL, ChainReader(RPC_URL))
        assert await wallet.get_current_address() == OWNER
        await wallet.close()

        methods = [json.loads(c.request.content)["method"] for c in route.calls]
        assert methods == ["eth_accounts", "eth_requestAccounts"]


@pytest.mark.asyncio
async def test_rpc_wallet_send_transaction() -> None:
    with respx.mock:
        route = respx.post(SIGNER_URL).mock(side_effect=[_rpc([OWNER]), _rpc(TX_HASH)])
        wallet = RpcWallet(SIGNER_URL, ChainReader(RPC_URL))
        tx_hash = await wallet.request_transaction(OWNER, 5, "0x1234")
        await wallet.close()

        assert tx_hash == TX_HASH
        tx = json.loads(route.calls[1].request.content)["params"][0]
        assert tx["from"] == OWNER
        assert tx["value"] == "0x5"
        assert tx["data"] == "0x1234"


@pytest.mark.asyncio
async def test_rpc_wallet_rejection() -> None:
    with respx.mock:
        respx.post(SIGNER_URL).mock(
            side_effect=[_rpc([OWNER]), _rpc_error(4001, "User rejected the request.")]
        )
        wallet = RpcWallet(SIGNER_URL, ChainReader(RPC_URL))
        with pytest.raises(UserRejectionError):
            await wallet.request_transaction(OWNER, 5)
        await wallet.close()


# ============================================================
#  Storage network
# ============================================================


def test_build_manifest() -> None:
    manifest = build_manifest({"index.md": "a", "coverImage": "b"}, index="index.md")
    assert manifest["manifest"] == "irys:manifest"
    assert manifest["version"] == "0.1.0"
    assert manifest["index"] == {"path": "index.md"}
    assert manifest["paths"]["coverImage"] == {"id": "b"}


@pytest.mark.asyncio
async def test_upload_folder() -> None:
    """Each file is uploaded, then the manifest that indexes them."""
    config = DelegationConfig()
    with respx.mock:
        route = respx.post(f"{UPLOAD_URL}/tx").mock(
            side_effect=[
                httpx.Response(200, json={"id": "index-id"}),
                httpx.Response(200, json={"id": "manifest-id"}),
            ]
        )
        storage = GatewayStorage(config)
        upload = await storage.upload_folder(
            [FolderFile(name=ARTICLE_INDEX_FILE, data=b"# hi", content_type="text/markdown")],
            StaticUploadSigner(),
            paid_by=OWNER,
            manifest_tags=[("Article-Title", "hi")],
        )
        await storage.close()

        assert upload.manifest_id == "manifest-id"
        assert upload.file_ids == {ARTICLE_INDEX_FILE: "index-id"}

        first, manifest_call = route.calls
        assert first.request.headers["x-signer"] == OWNER
        assert first.request.headers["x-signature"] == "0xsig"
        # Small uploads are free; nothing is billed to the owner
        assert "x-paid-by" not in first.request.headers

        assert manifest_call.request.headers["content-type"] == MANIFEST_CONTENT_TYPE
        manifest = json.loads(manifest_call.request.content)
        assert manifest["paths"][ARTICLE_INDEX_FILE] == {"id": "index-id"}
        tags = json.loads(manifest_call.request.headers["x-tags"])
        assert {"name": "Article-Title", "value": "hi"} in tags
        assert {"name": "Type", "value": "manifest"} in tags


@pytest.mark.asyncio
async def test_large_upload_is_paid_by_owner() -> None:
    config = DelegationConfig(storage_free_upload_limit=4)
    with respx.mock:
        route = respx.post(f"{UPLOAD_URL}/tx").mock(return_value=httpx.Response(200, json={"id": "x"}))
        storage = GatewayStorage(config)
        await storage.upload_item(b"0123456789", "text/plain", StaticUploadSigner(), paid_by=OWNER)
        await storage.close()

        assert route.calls[0].request.headers["x-paid-by"] == OWNER


@pytest.mark.asyncio
async def test_upload_failure() -> None:
    with respx.mock:
        respx.post(f"{UPLOAD_URL}/tx").mock(return_value=httpx.Response(402))
        storage = GatewayStorage(DelegationConfig())
        with pytest.raises(NetworkError, match="402"):
            await storage.upload_item(b"data", "text/plain", StaticUploadSigner())
        await storage.close()


@pytest.mark.asyncio
async def test_approve_delegate() -> None:
    with respx.mock:
        route = respx.post(f"{UPLOAD_URL}/approval").mock(return_value=httpx.Response(200, json={}))
        storage = GatewayStorage(DelegationConfig())
        await storage.approve_delegate(OWNER, OWNER, 10**18, 3600)
        await storage.close()

        body = json.loads(route.calls[0].request.content)
        assert body["amount"] == str(10**18)
        assert body["expiresInSeconds"] == 3600


@pytest.mark.asyncio
async def test_gateway_fallback() -> None:
    """Reads try the next gateway when one fails."""
    config = DelegationConfig(storage_gateways=["https://one.example", "https://two.example"])
    with respx.mock:
        respx.get("https://one.example/m1/index.md").mock(return_value=httpx.Response(404))
        respx.get("https://two.example/m1/index.md").mock(
            return_value=httpx.Response(200, content=b"# hi")
        )
        storage = GatewayStorage(config)
        assert await storage.fetch_file("m1") == b"# hi"
        await storage.close()


@pytest.mark.asyncio
async def test_all_gateways_fail() -> None:
    config = DelegationConfig(storage_gateways=["https://one.example"])
    with respx.mock:
        respx.get("https://one.example/m1").mock(side_effect=httpx.ConnectError("refused"))
        storage = GatewayStorage(config)
        with pytest.raises(NetworkError, match="all gateways"):
            await storage.download_manifest("m1")
        await storage.close()
