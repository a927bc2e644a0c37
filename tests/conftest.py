"""
Shared pytest fixtures for the Onchain Gateway test suite.

Autouse fixtures below isolate tests from the live node data:
  - Audit logger -> temp directory (prevents test events in ./audit_logs)
  - Environment  -> no GATEWAY_* variables, cwd in a temp directory
                    (prevents a developer .env from changing defaults)

The ``world`` fixture wires an in-memory ledger with a manual clock, the
gateway program and funded admin / backend / owner keypairs.
"""

from typing import Optional

import pytest

from onchain_gateway.client import (
    consume_instruction,
    hash_api_key,
    initialize_gateway_instruction,
    register_consumer_instruction,
    topup_instruction,
)
from onchain_gateway.ledger import (
    AccountStore,
    Keypair,
    Ledger,
    ManualClock,
    Pubkey,
    Transaction,
    TransactionReceipt,
)
from onchain_gateway.program import (
    DEFAULT_PROGRAM_ID,
    ConsumerAccount,
    GatewayConfig,
    consumer_pda,
    gateway_pda,
    register_gateway_program,
)

START_TS = 1_700_000_000
FUNDING = 100_000_000

DEFAULT_RULES = {
    "base_price_lamports": 1_000,
    "max_surge_bps": 2_000,
    "period_limit": 100,
    "period_seconds": 60,
    "bucket_capacity": 10,
    "refill_per_second": 2,
}


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path):
    """Point the global AuditLogger at a temp directory for every test."""
    import onchain_gateway.core.audit_log as audit_mod

    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = audit_mod.AuditLogger(log_dir=tmp_path / "audit_logs")

    yield

    audit_mod._audit_logger.close()
    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_environment(tmp_path, monkeypatch):
    """Clear GATEWAY_* variables and run from an empty directory."""
    import os

    for name in list(os.environ):
        if name.startswith("GATEWAY_"):
            monkeypatch.delenv(name, raising=False)
    workdir = tmp_path / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)


@pytest.fixture
def clock():
    return ManualClock(start=START_TS)


@pytest.fixture
def ledger(clock):
    ledger = Ledger(store=AccountStore(), clock=clock)
    register_gateway_program(ledger)
    yield ledger
    ledger.store.close()


class GatewayWorld:
    """One gateway, one consumer and the keypairs that drive them."""

    api_key = "test-api-key"
    api_key_id = 7

    def __init__(self, ledger: Ledger, clock: ManualClock, program_id: Pubkey = DEFAULT_PROGRAM_ID):
        self.ledger = ledger
        self.clock = clock
        self.program_id = program_id

        self.admin = Keypair.generate()
        self.backend = Keypair.generate()
        self.owner = Keypair.generate()
        self.treasury = Pubkey.new_unique()

        self.gateway, self.gateway_bump = gateway_pda(self.admin.pubkey(), program_id)
        self.consumer, self.consumer_bump = consumer_pda(
            self.gateway, self.owner.pubkey(), self.api_key_id, program_id
        )

        ledger.airdrop(self.admin.pubkey(), FUNDING)
        ledger.airdrop(self.owner.pubkey(), FUNDING)

    def send(self, instruction, *signers: Keypair) -> TransactionReceipt:
        return self.ledger.process_transaction(Transaction([instruction]).sign(*signers))

    def init_gateway(self, **overrides) -> TransactionReceipt:
        rules = {**DEFAULT_RULES, **overrides}
        ix = initialize_gateway_instruction(
            self.program_id,
            self.admin.pubkey(),
            self.treasury,
            self.backend.pubkey(),
            **rules,
        )
        return self.send(ix, self.admin)

    def register(self, api_key: Optional[str] = None) -> TransactionReceipt:
        ix = register_consumer_instruction(
            self.program_id,
            self.owner.pubkey(),
            self.gateway,
            self.api_key_id,
            hash_api_key(api_key or self.api_key),
        )
        return self.send(ix, self.owner)

    def topup(self, lamports: int, signer: Optional[Keypair] = None) -> TransactionReceipt:
        signer = signer or self.owner
        ix = topup_instruction(self.program_id, signer.pubkey(), self.consumer, lamports)
        return self.send(ix, signer)

    def consume(
        self,
        api_key: Optional[str] = None,
        signer: Optional[Keypair] = None,
        treasury: Optional[Pubkey] = None,
    ) -> TransactionReceipt:
        signer = signer or self.backend
        ix = consume_instruction(
            self.program_id,
            signer.pubkey(),
            self.gateway,
            self.consumer,
            treasury or self.treasury,
            self.api_key_id,
            hash_api_key(api_key or self.api_key),
        )
        return self.send(ix, signer)

    def gateway_record(self) -> GatewayConfig:
        return GatewayConfig.unpack(self.ledger.get_account(self.gateway).data)

    def consumer_record(self) -> ConsumerAccount:
        return ConsumerAccount.unpack(self.ledger.get_account(self.consumer).data)

    def balance(self, address: Pubkey) -> int:
        return self.ledger.get_balance(address)


@pytest.fixture
def make_world(ledger, clock):
    """Factory for extra gateways sharing the same ledger."""
    return lambda: GatewayWorld(ledger, clock)


@pytest.fixture
def world(make_world):
    return make_world()


@pytest.fixture
def node_app(ledger):
    from onchain_gateway.api.main import create_app

    return create_app(ledger, DEFAULT_PROGRAM_ID, faucet_enabled=True)


@pytest.fixture
def api_client(node_app):
    from fastapi.testclient import TestClient

    return TestClient(node_app)


@pytest.fixture
def node_transport(api_client):
    """httpx transport that hands every request to the in-process node."""
    import httpx

    def handler(request: httpx.Request) -> httpx.Response:
        resp = api_client.request(
            request.method,
            request.url.raw_path.decode("ascii"),
            content=request.content,
            headers={"Content-Type": request.headers.get("Content-Type", "application/json")},
        )
        return httpx.Response(
            resp.status_code,
            content=resp.content,
            headers={"Content-Type": resp.headers.get("content-type", "application/json")},
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def ready_world(world):
    """Gateway initialized, consumer registered and topped up with 5_000_000."""
    assert world.init_gateway().ok
    assert world.register().ok
    assert world.topup(5_000_000).ok
    return world
