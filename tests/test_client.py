"""
Tests for the node client and instruction builders.

Covers:
- Retry with backoff on 5xx and transport errors
- RpcError after exhausting retries
- 404 lookups return None
- Rejected transactions raise TransactionFailed and hit the audit trail
- End-to-end flow against the in-process node
"""

import json

import httpx
import pytest

from onchain_gateway.client import (
    MAX_RETRIES,
    GatewayClient,
    RpcError,
    TransactionFailed,
    consume_instruction,
    hash_api_key,
    initialize_gateway_instruction,
    register_consumer_instruction,
    topup_instruction,
)
from onchain_gateway.core.audit_log import EventType, get_audit_logger
from onchain_gateway.ledger import SYSTEM_PROGRAM_ID, Keypair, Pubkey, Transaction
from onchain_gateway.program import (
    DEFAULT_PROGRAM_ID,
    GatewayError,
    consumer_pda,
    gateway_pda,
    unpack,
)
from onchain_gateway.program.instruction import Consume, InitializeGateway, TopUp


def _make_client(handler) -> GatewayClient:
    return GatewayClient("http://node.test", transport=httpx.MockTransport(handler), backoff=0)


def _failed_receipt(code: int = 6) -> dict:
    return {
        "signature": "sig",
        "ok": False,
        "slot": 1,
        "unix_timestamp": 1,
        "error": {"kind": "program", "name": "ApiKeyMismatch", "code": code, "message": "key mismatch"},
        "logs": [],
    }


def _read_audit_events():
    audit = get_audit_logger()
    audit._file_handler.flush()
    events = []
    for path in sorted(audit.log_dir.glob("audit_*.log")):
        for line in path.read_text().splitlines():
            if line.strip():
                events.append(json.loads(line))
    return events


# ===================================================================
# TestInstructionBuilders
# ===================================================================


class TestInstructionBuilders:
    def test_initialize_gateway_accounts(self):
        admin, treasury, backend = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
        ix = initialize_gateway_instruction(
            DEFAULT_PROGRAM_ID, admin, treasury, backend,
            base_price_lamports=1_000, max_surge_bps=2_000, period_limit=100,
            period_seconds=60, bucket_capacity=10, refill_per_second=2,
        )
        gateway, _ = gateway_pda(admin, DEFAULT_PROGRAM_ID)
        assert [m.pubkey for m in ix.accounts][:2] == [admin, gateway]
        assert ix.accounts[-1].pubkey == SYSTEM_PROGRAM_ID
        assert [m.pubkey for m in ix.accounts][2:4] == [treasury, backend]
        assert ix.accounts[0].is_signer and ix.accounts[0].is_writable
        assert ix.accounts[1].is_writable and not ix.accounts[1].is_signer
        assert isinstance(unpack(ix.data), InitializeGateway)

    def test_register_consumer_derives_record(self):
        owner = Pubkey.new_unique()
        gateway = Pubkey.new_unique()
        ix = register_consumer_instruction(DEFAULT_PROGRAM_ID, owner, gateway, 3, hash_api_key("k"))
        consumer, _ = consumer_pda(gateway, owner, 3, DEFAULT_PROGRAM_ID)
        assert [m.pubkey for m in ix.accounts] == [owner, gateway, consumer, SYSTEM_PROGRAM_ID]
        assert not ix.accounts[1].is_writable

    def test_topup_payload(self):
        ix = topup_instruction(DEFAULT_PROGRAM_ID, Pubkey.new_unique(), Pubkey.new_unique(), 500)
        assert unpack(ix.data) == TopUp(lamports=500)

    def test_consume_accounts(self):
        backend, gateway, consumer, treasury = (Pubkey.new_unique() for _ in range(4))
        ix = consume_instruction(DEFAULT_PROGRAM_ID, backend, gateway, consumer, treasury, 9, hash_api_key("k"))
        assert [m.pubkey for m in ix.accounts] == [backend, gateway, consumer, treasury]
        assert ix.accounts[0].is_signer and not ix.accounts[0].is_writable
        assert unpack(ix.data) == Consume(api_key_id=9, presented_api_key_hash=hash_api_key("k"))

    def test_hash_api_key_is_sha256(self):
        assert hash_api_key("abc").hex() == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )


# ===================================================================
# TestRetries
# ===================================================================


class TestRetries:
    def test_retries_server_errors_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if len(calls) < 3:
                return httpx.Response(503, json={"detail": "busy"})
            return httpx.Response(200, json={"status": "ok"})

        with _make_client(handler) as client:
            assert client.health() == {"status": "ok"}
        assert len(calls) == 3

    def test_gives_up_after_max_retries(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(500)

        with _make_client(handler) as client:
            with pytest.raises(RpcError, match="failed after"):
                client.health()
        assert len(calls) == MAX_RETRIES

    def test_transport_errors_are_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"data_len": 0, "lamports": 890_880})

        with _make_client(handler) as client:
            assert client.minimum_balance(0) == 890_880
        assert len(calls) == 2

    def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(403, json={"detail": "Faucet disabled"})

        with _make_client(handler) as client:
            with pytest.raises(RpcError, match="Faucet disabled") as exc_info:
                client.request_airdrop(Pubkey.new_unique(), 10)
        assert exc_info.value.status_code == 403
        assert len(calls) == 1


# ===================================================================
# TestResponses
# ===================================================================


class TestResponses:
    def test_missing_account_is_none(self):
        with _make_client(lambda request: httpx.Response(404, json={"detail": "Account not found"})) as client:
            address = Pubkey.new_unique()
            assert client.get_account(address) is None
            assert client.get_balance(address) == 0
            assert client.get_gateway(address) is None
            assert client.get_transaction("missing") is None

    def test_rejected_transaction_raises(self):
        tx = Transaction([topup_instruction(DEFAULT_PROGRAM_ID, Keypair.generate().pubkey(), Pubkey.new_unique(), 1)])

        with _make_client(lambda request: httpx.Response(400, json=_failed_receipt())) as client:
            with pytest.raises(TransactionFailed) as exc_info:
                client.send_transaction(tx)

        assert exc_info.value.code == int(GatewayError.API_KEY_MISMATCH)
        assert str(exc_info.value) == "key mismatch"
        assert any(e["event_type"] == EventType.TX_FAILED.value for e in _read_audit_events())

    def test_invalid_json_raises_rpc_error(self):
        with _make_client(lambda request: httpx.Response(200, content=b"not json")) as client:
            with pytest.raises(RpcError, match="invalid JSON"):
                client.health()


# ===================================================================
# TestAgainstNode
# ===================================================================


class TestAgainstNode:
    @pytest.fixture
    def client(self, node_transport):
        with GatewayClient("http://node.test", transport=node_transport, backoff=0) as client:
            yield client

    def test_health(self, client):
        assert client.health()["program_id"] == str(DEFAULT_PROGRAM_ID)

    def test_full_billing_flow(self, client, world):
        assert client.get_gateway(world.gateway) is None

        init = initialize_gateway_instruction(
            world.program_id, world.admin.pubkey(), world.treasury, world.backend.pubkey(),
            base_price_lamports=1_000, max_surge_bps=2_000, period_limit=100,
            period_seconds=60, bucket_capacity=10, refill_per_second=2,
        )
        client.send_transaction(Transaction([init]).sign(world.admin))

        register = register_consumer_instruction(
            world.program_id, world.owner.pubkey(), world.gateway,
            world.api_key_id, hash_api_key(world.api_key),
        )
        client.send_transaction(Transaction([register]).sign(world.owner))

        topup = topup_instruction(world.program_id, world.owner.pubkey(), world.consumer, 5_000_000)
        client.send_transaction(Transaction([topup]).sign(world.owner))

        consume = consume_instruction(
            world.program_id, world.backend.pubkey(), world.gateway, world.consumer,
            world.treasury, world.api_key_id, hash_api_key(world.api_key),
        )
        receipt = client.send_transaction(Transaction([consume]).sign(world.backend))

        assert client.get_transaction(receipt.signature).ok
        assert client.get_balance(world.treasury) == 1_002
        record = client.get_consumer(world.consumer)
        assert record.total_calls == 1
        assert record.total_spent_lamports == 1_002
        assert client.get_gateway(world.gateway).backend_signer == world.backend.pubkey()

    def test_rejection_carries_code(self, client, ready_world):
        consume = consume_instruction(
            ready_world.program_id, ready_world.backend.pubkey(), ready_world.gateway,
            ready_world.consumer, ready_world.treasury, ready_world.api_key_id, hash_api_key("wrong"),
        )
        with pytest.raises(TransactionFailed) as exc_info:
            client.send_transaction(Transaction([consume]).sign(ready_world.backend))
        assert exc_info.value.code == int(GatewayError.API_KEY_MISMATCH)

    def test_airdrop(self, client):
        key = Keypair.generate().pubkey()
        assert client.request_airdrop(key, 777).ok
        assert client.get_balance(key) == 777


# ===================================================================
# TestSubmitRetries
# ===================================================================


class TestSubmitRetries:
    def _consume_tx(self, w, api_key=None) -> Transaction:
        ix = consume_instruction(
            w.program_id, w.backend.pubkey(), w.gateway, w.consumer, w.treasury,
            w.api_key_id, hash_api_key(api_key or w.api_key),
        )
        return Transaction([ix]).sign(w.backend)

    def test_commit_then_timeout_returns_stored_receipt(self, node_transport, ready_world):
        posts = []

        def handler(request):
            resp = node_transport.handle_request(request)
            if request.method == "POST":
                posts.append(resp.status_code)
                if len(posts) == 1:
                    raise httpx.ReadTimeout("timed out", request=request)
            return resp

        tx = self._consume_tx(ready_world)
        with _make_client(handler) as client:
            receipt = client.send_transaction(tx)

        assert posts == [200, 400]
        assert receipt.ok
        assert receipt.signature == tx.signature
        assert ready_world.consumer_record().total_calls == 1
        assert not any(e["event_type"] == EventType.TX_FAILED.value for e in _read_audit_events())

    def test_rejected_retry_still_raises(self, node_transport, ready_world):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return node_transport.handle_request(request)

        with _make_client(handler) as client:
            with pytest.raises(TransactionFailed) as exc_info:
                client.send_transaction(self._consume_tx(ready_world, "wrong"))
        assert exc_info.value.code == int(GatewayError.API_KEY_MISMATCH)

    def test_single_attempt_replay_is_reported(self, node_transport, ready_world):
        tx = self._consume_tx(ready_world)
        with GatewayClient("http://node.test", transport=node_transport, backoff=0) as client:
            client.send_transaction(tx)
            with pytest.raises(TransactionFailed) as exc_info:
                client.send_transaction(tx)
        assert exc_info.value.error["name"] == "DuplicateTransaction"
        assert ready_world.consumer_record().total_calls == 1
