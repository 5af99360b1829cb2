"""
============================================================================
Integration Test: Execution Gate API
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Input Constraints: FastAPI TestClient, httpx.MockTransport chain RPCs
Side Effects: None (in-memory ledger and context store)

Drives the full gate over HTTP:
- classify → policy (blocked) → confirm → policy (allowed) → funding → complete
- Funding routes Solana credit to Sepolia and verifies the new balance
- Float amounts rejected (422), store outage mapped to 503 (CTX-050)

============================================================================
"""

import asyncio
import json
from decimal import Decimal
from typing import Dict, List

import pytest
import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.api.gate import router as gate_router, get_gate
from app.chain.chains import ChainRegistry, ChainSpec, CHAIN_KIND_EVM, CHAIN_KIND_SOLANA
from app.chain.mint_issuer import MintIssuer, MintSubmission
from app.ledger.credit_ledger import InMemoryCreditLedger
from services.gate_config import GateConfig
from services.gate_container import ExecutionGate, build_execution_gate
from services.gate_models import CreditStatus
from services.intent_context_store import InMemoryContextStore, ContextStoreUnavailable


EVM_USER = "0x1111111111111111111111111111111111111111"
SOL_USER = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
SEPOLIA_TOKEN = "0x6751001fD8207c494703C062139784abCa099bB9"
SOLANA_MINT = "BUSDCmint1111111111111111111111111111111111"


# ============================================================================
# Simulated Chains
# ============================================================================

class SimulatedChains:
    """
    JSON-RPC answers for sepolia and solana devnet.

    Minting through MintingRelayer raises the sepolia balance so the
    post-route read sees the credit.
    """

    def __init__(self, sepolia_usd: Decimal, solana_usd: Decimal) -> None:
        self.sepolia_usd = sepolia_usd
        self.solana_usd = solana_usd
        self.methods: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.methods.append(method)
        if method == "eth_call":
            result = hex(int(self.sepolia_usd * 10 ** 6))
        elif method == "eth_getTransactionReceipt":
            result = {"status": "0x1", "blockNumber": "0x64"}
        elif method == "getTokenAccountsByOwner":
            amount = str(int(self.solana_usd * 10 ** 6))
            result = {
                "context": {"slot": 1},
                "value": [{
                    "pubkey": "acct",
                    "account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": amount}}}}},
                }],
            }
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                             "error": {"code": -32601, "message": "method not found"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class MintingRelayer(MintIssuer):
    def __init__(self, chains: SimulatedChains) -> None:
        self.chains = chains
        self.mints: List[Decimal] = []

    async def mint(self, to_address, amount_usd, chain, wait_for_receipt=False, correlation_id=None):
        self.mints.append(amount_usd)
        self.chains.sepolia_usd += amount_usd
        return MintSubmission(tx_hash="0x" + "cd" * 32, chain=chain, amount_usd=amount_usd)


class UnavailableStore(InMemoryContextStore):
    async def get(self, session_id):
        raise ContextStoreUnavailable("redis connection refused")


def make_registry() -> ChainRegistry:
    return ChainRegistry([
        ChainSpec(key="sepolia", label="Ethereum Sepolia", kind=CHAIN_KIND_EVM,
                  rpc_urls=["https://sepolia.test"], stable_token=SEPOLIA_TOKEN),
        ChainSpec(key="solana_devnet", label="Solana Devnet", kind=CHAIN_KIND_SOLANA,
                  rpc_urls=["https://solana.test"], stable_token=SOLANA_MINT),
    ])


def make_gate(chains: SimulatedChains, context_store=None) -> ExecutionGate:
    return build_execution_gate(
        config=GateConfig(read_retries=1, read_backoff_ms=0, high_value_threshold_usd=Decimal("10000")),
        registry=make_registry(),
        ledger=InMemoryCreditLedger(),
        mint_issuer=MintingRelayer(chains),
        context_store=context_store if context_store is not None else InMemoryContextStore(),
        transport=httpx.MockTransport(chains.handler),
    )


def create_test_app(gate: ExecutionGate) -> FastAPI:
    app = FastAPI(title="Execution Gate Test")
    app.include_router(gate_router, prefix="/api/gate")
    app.dependency_overrides[get_gate] = lambda: gate
    return app


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def chains() -> SimulatedChains:
    return SimulatedChains(sepolia_usd=Decimal("50"), solana_usd=Decimal("500"))


@pytest.fixture
def gate(chains: SimulatedChains) -> ExecutionGate:
    return make_gate(chains)


@pytest.fixture
def client(gate: ExecutionGate):
    with TestClient(create_test_app(gate)) as test_client:
        yield test_client


def funding_body(**overrides) -> Dict:
    body = {
        "user_evm_address": EVM_USER,
        "user_solana_address": SOL_USER,
        "from_chain": "solana_devnet",
        "to_chain": "sepolia",
        "amount_usd_required": "300",
        "session_id": "sess-1",
    }
    body.update(overrides)
    return body


# ============================================================================
# End-to-end Flow
# ============================================================================

class TestExecutionFlow:

    def test_confirm_fund_complete(self, client, chains, gate):
        classified = client.post("/api/gate/classify", json={"text": "buy 300 USDC of ETH"})
        assert classified.status_code == 200
        assert classified.json()["path"] == "planning"

        blocked = client.post("/api/gate/policy", json={
            "session_id": "sess-1", "path": "execution", "intent_id": "intent-1", "usd_estimate": "300",
        })
        assert blocked.status_code == 200
        assert blocked.json()["allowed"] is False
        assert blocked.json()["code"] == "PATH_TRANSITION_BLOCKED"
        assert blocked.json()["confirmation_type"] == "simple"

        confirmed = client.post("/api/gate/confirm", json={"session_id": "sess-1", "text": "yes, execute"})
        assert confirmed.status_code == 200
        assert confirmed.json()["confirmed"] is True
        assert confirmed.json()["context"]["current_state"] == "executing"

        allowed = client.post("/api/gate/policy", json={
            "session_id": "sess-1", "path": "execution", "intent_id": "intent-1", "usd_estimate": "300",
        })
        assert allowed.json()["allowed"] is True

        funded = client.post(
            "/api/gate/funding",
            json=funding_body(),
            headers={"X-Correlation-ID": "corr-e2e"},
        )
        assert funded.status_code == 200
        data = funded.json()
        assert data["ok"] is True
        assert data["correlation_id"] == "corr-e2e"
        assert data["route"]["did_route"] is True
        assert Decimal(data["route"]["credited_amount_usd"]) == Decimal("250")
        assert data["route"]["tx_hash"] == "0x" + "cd" * 32
        assert "code" not in data or data["code"] is None
        assert chains.sepolia_usd == Decimal("300")

        completed = client.post("/api/gate/complete", json={"session_id": "sess-1", "success": True})
        assert completed.status_code == 200
        assert completed.json()["current_state"] == "completed"
        assert completed.json()["current_path"] == "research"

    def test_funded_credit_recorded_as_credited(self, client, gate):
        data = client.post("/api/gate/funding", json=funding_body()).json()

        record = asyncio.run(gate.ledger.get(data["route"]["receipt_id"]))

        assert record.status == CreditStatus.CREDITED
        assert record.amount_usd == Decimal("250")

    def test_already_funded_does_not_route(self, client, chains, gate):
        chains.sepolia_usd = Decimal("1000")

        data = client.post("/api/gate/funding", json=funding_body()).json()

        assert data["ok"] is True
        assert data["route"]["did_route"] is False
        assert gate.mint_issuer.mints == []

    def test_cancel_then_reset(self, client):
        client.post("/api/gate/policy", json={
            "session_id": "sess-2", "path": "execution", "intent_id": "intent-9",
        })

        cancelled = client.post("/api/gate/confirm", json={"session_id": "sess-2", "text": "no, cancel"})
        assert cancelled.json()["cancelled"] is True
        assert cancelled.json()["context"]["pending_intent_id"] is None

        reset = client.post("/api/gate/reset", json={"session_id": "sess-2"})
        assert reset.json()["current_state"] == "idle"

        assert client.delete("/api/gate/context/sess-2").status_code == 204


# ============================================================================
# Failure Responses
# ============================================================================

class TestFailureResponses:

    def test_funding_failure_is_200_with_code(self, client):
        response = client.post("/api/gate/funding", json=funding_body(user_evm_address=None))

        assert response.status_code == 200
        assert response.json()["ok"] is False
        assert response.json()["code"] == "CROSS_CHAIN_ROUTE_MISSING_ADDRESS"
        assert response.json()["user_message"]

    def test_empty_source_is_insufficient(self, client, chains):
        chains.solana_usd = Decimal("0")

        response = client.post("/api/gate/funding", json=funding_body())

        assert response.json()["code"] == "CROSS_CHAIN_ROUTE_INSUFFICIENT_FUNDS"

    @pytest.mark.parametrize("path,body", [
        ("/api/gate/funding", funding_body(amount_usd_required=300.5)),
        ("/api/gate/policy", {"session_id": "s", "path": "execution", "usd_estimate": 12.25}),
    ])
    def test_float_amounts_rejected(self, client, path, body):
        assert client.post(path, json=body).status_code == 422

    def test_unknown_path_rejected(self, client):
        response = client.post("/api/gate/policy", json={"session_id": "s", "path": "yolo"})

        assert response.status_code == 422

    def test_no_pending_confirmation(self, client):
        response = client.post("/api/gate/confirm", json={"session_id": "fresh", "text": "yes"})

        assert response.json()["confirmed"] is False
        assert response.json()["message"] == "No pending confirmation to process."

    def test_store_outage_is_503(self, chains):
        gate = make_gate(chains, context_store=UnavailableStore())

        with TestClient(create_test_app(gate)) as client:
            response = client.post("/api/gate/confirm", json={"session_id": "s", "text": "yes"})

        assert response.status_code == 503
        assert response.json()["detail"]["error_code"] == "CTX-050"
