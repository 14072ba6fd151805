import asyncio
import random

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import RecordingSleeper, wallet
from fanout.clients.chain_client import ChainClient
from fanout.config import WalletRole
from fanout.contracts.contracts import BuyRequest, CreateTokenRequest, TransferRequest
from fanout.errors import InsufficientFunds
from fanout.gateway import ResilientGateway
from fanout.health import HealthState
from fanout.ledger import InMemoryLedgerStore, load_tree
from fanout.notifications import Notifier
from fanout.orchestrator import TransferOrchestrator
from fanout.poller import ConfirmationPoller
from mock_chain.main import LAMPORTS_PER_SOL, app, state


@pytest.fixture(autouse=True)
def clean_state():
    state.reset()
    yield
    state.reset()


def make_chain(sleeper):
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://mock-chain")
    gateway = ResilientGateway(
        health=HealthState(clock=sleeper.monotonic),
        sleeper=sleeper,
        rng=random.Random(1),
        client=client,
        rate_limit_jitter_seconds=0,
    )
    return ChainClient(gateway)


def test_admin_endpoints_with_test_client():
    with TestClient(app) as client:
        resp = client.post("/admin/airdrop", json={"publicKey": "abc", "amountSol": 1.5})
        assert resp.status_code == 200
        assert resp.json()["data"]["balanceSol"] == 1.5

        resp = client.get("/wallet/abc/balance/sol")
        assert resp.json()["data"]["balanceLamports"] == str(int(1.5 * LAMPORTS_PER_SOL))

        resp = client.post("/admin/reset")
        assert resp.json() == {"status": "cleared"}
        assert client.get("/wallet/abc/balance/sol").status_code == 404


def test_cold_start_then_transfer_is_idempotent():
    sleeper = RecordingSleeper()
    chain = make_chain(sleeper)
    state.cold_start_probes = 3

    async def scenario():
        source, target = await chain.create_wallets(2)
        state.lamports[source.publicKey] = LAMPORTS_PER_SOL
        request = TransferRequest(
            fromPublicKey=source.publicKey,
            toPublicKey=target.publicKey,
            amountSol=0.25,
            privateKey=source.privateKey,
        )
        first = await chain.transfer(request, idempotency_key="run-1-0")
        second = await chain.transfer(request, idempotency_key="run-1-0")
        balance = await chain.get_sol_balance(target.publicKey)
        await chain.gateway.aclose()
        return first, second, balance

    first, second, balance = asyncio.run(scenario())

    assert sleeper.delays == [20, 40, 60]
    assert first.signature == second.signature
    assert state.transfer_calls == 2
    assert balance.balanceSol == 0.25


def test_insufficient_lamports_surface_as_insufficient_funds():
    sleeper = RecordingSleeper()
    chain = make_chain(sleeper)
    state.lamports["poor"] = 48925568

    request = TransferRequest(fromPublicKey="poor", toPublicKey="rich", amountSol=0.050967165, privateKey="k")

    async def scenario():
        try:
            await chain.transfer(request)
        finally:
            await chain.gateway.aclose()

    with pytest.raises(InsufficientFunds) as exc:
        asyncio.run(scenario())

    assert "insufficient lamports 48925568, need 50972165" in str(exc.value)


def test_rate_limit_burst_is_absorbed_by_backoff():
    sleeper = RecordingSleeper()
    chain = make_chain(sleeper)
    state.rate_limit_bursts = 2

    async def scenario():
        try:
            return await chain.get_sol_balance("never-seen")
        finally:
            await chain.gateway.aclose()

    balance = asyncio.run(scenario())

    assert balance.balanceSol == 0.0
    assert sleeper.delays == [2, 4]


def test_token_create_and_buy_round_trip():
    sleeper = RecordingSleeper()
    chain = make_chain(sleeper)
    state.lamports["creator"] = LAMPORTS_PER_SOL

    async def scenario():
        try:
            created = await chain.create_token(
                CreateTokenRequest(
                    creatorPublicKey="creator",
                    name="Fan",
                    symbol="FAN",
                    devBuyAmount=0.1,
                    slippageBps=500,
                    priorityFeeSol=0.000005,
                    privateKey="k",
                )
            )
            bought = await chain.buy(
                BuyRequest(
                    buyerPublicKey="creator",
                    mintAddress=created.contract_address,
                    solAmount=0.1,
                    slippageBps=500,
                    priorityFeeSol=0.000005,
                    privateKey="k",
                )
            )
            tokens = await chain.get_token_balance(created.contract_address, "creator")
            return created, bought, tokens
        finally:
            await chain.gateway.aclose()

    created, bought, tokens = asyncio.run(scenario())

    assert created.contract_address
    assert bought.token_balance == tokens.uiAmount == 200000.0
    assert bought.sol_balance == pytest.approx(1.0 - 0.2 - 0.00001)


def test_fund_tree_end_to_end():
    sleeper = RecordingSleeper()
    chain = make_chain(sleeper)
    ledger = InMemoryLedgerStore([wallet("dist", WalletRole.DISTRIBUTOR, sol=3.0)])
    ledger.add_wallet(wallet("mid", WalletRole.INTERMEDIATE, parent="dist"))
    for j in range(4):
        ledger.add_wallet(wallet(f"leaf-{j}", WalletRole.TERMINAL, parent="mid"))
    state.lamports["dist"] = 3 * LAMPORTS_PER_SOL
    orchestrator = TransferOrchestrator(
        chain,
        ledger,
        poller=ConfirmationPoller(chain, sleeper=sleeper, max_attempts=3, base_delay=1, jitter_seconds=0),
        sleeper=sleeper,
        rng=random.Random(2),
        notifier=Notifier(webhook_url=""),
    )

    async def scenario():
        distributor, branches = load_tree(ledger, "dist")
        try:
            return await orchestrator.fund_tree(distributor, branches, idempotency_key="e2e")
        finally:
            await chain.gateway.aclose()

    result = asyncio.run(scenario())

    assert result.failed == 0
    assert result.successful == 5
    leaves = [state.lamports[f"leaf-{j}"] / LAMPORTS_PER_SOL for j in range(4)]
    assert sum(leaves) == pytest.approx(0.99, abs=1e-6)
    assert ledger.get_wallet("mid").sol_balance == pytest.approx(1.0 - 0.99 - 4 * 0.000005, abs=1e-6)
    assert set(state.idempotent) == {"e2e-intermediate-0"} | {f"e2e-terminal-0-{j}" for j in range(4)}
