import random
import sys
from pathlib import Path

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fanout.config import LAMPORTS_PER_SOL, WalletRole  # noqa: E402
from fanout.contracts.contracts import (  # noqa: E402
    CreatedWallet,
    SolBalance,
    TradePostBalances,
    TradeReceipt,
    TransferBalances,
    TransferReceipt,
)
from fanout.errors import InsufficientFunds  # noqa: E402
from fanout.schemas import WalletRecord  # noqa: E402
from fanout.timing import Sleeper  # noqa: E402


class RecordingSleeper(Sleeper):
    """Advances a fake clock instead of waiting."""

    def __init__(self):
        self.delays = []
        self.now = 0.0

    async def sleep(self, seconds):
        self.delays.append(seconds)
        self.now += max(seconds, 0)

    def monotonic(self):
        return self.now


def json_response(status_code, body=None, headers=None):
    return httpx.Response(status_code, json=body if body is not None else {}, headers=headers)


def wallet(key, role=WalletRole.TERMINAL, sol=0.0, tokens=0.0, parent=None):
    return WalletRecord(
        public_key=key,
        private_key=f"{key}-secret",
        role=role,
        sol_balance=sol,
        token_balance=tokens,
        parent_key=parent,
    )


class FakeChain:
    """
    In-process stand-in for ChainClient. Transfers settle immediately; keys in
    ``fail_to`` / ``fail_from`` raise the mapped exception instead.
    """

    def __init__(self, balances=None):
        self.balances = dict(balances or {})
        self.tokens = {}
        self.fail_to = {}
        self.fail_from = {}
        self.transfers = []
        self.buys = []
        self.sells = []
        self.created = 0

    async def create_wallets(self, count=1):
        wallets = []
        for _ in range(count):
            self.created += 1
            wallets.append(CreatedWallet(publicKey=f"new-{self.created}", privateKey=f"new-{self.created}-secret"))
        return wallets

    async def get_sol_balance(self, public_key):
        sol = self.balances.get(public_key, 0.0)
        return SolBalance(publicKey=public_key, balanceSol=sol, balanceLamports=str(round(sol * LAMPORTS_PER_SOL)))

    async def transfer(self, request, idempotency_key=None):
        self.transfers.append((request, idempotency_key))
        if request.toPublicKey in self.fail_to:
            raise self.fail_to[request.toPublicKey]
        if request.fromPublicKey in self.fail_from:
            raise self.fail_from[request.fromPublicKey]
        pre_from = self.balances.get(request.fromPublicKey, 0.0)
        pre_to = self.balances.get(request.toPublicKey, 0.0)
        self.balances[request.fromPublicKey] = pre_from - request.amountSol
        self.balances[request.toPublicKey] = pre_to + request.amountSol
        return TransferReceipt(
            signature=f"sig-{len(self.transfers)}",
            confirmed=True,
            preBalances=TransferBalances(fromSol=pre_from, toSol=pre_to),
            postBalances=TransferBalances(fromSol=self.balances[request.fromPublicKey], toSol=self.balances[request.toPublicKey]),
        )

    def _trade_receipt(self, public_key, mint):
        spl = None
        if (public_key, mint) in self.tokens:
            spl = {"walletPublicKey": public_key, "mintAddress": mint, "uiAmount": self.tokens[(public_key, mint)], "rawAmount": "0"}
        sol = self.balances.get(public_key, 0.0)
        return TradeReceipt(
            signature=f"trade-{len(self.buys) + len(self.sells)}",
            confirmed=True,
            postBalances=TradePostBalances.model_validate(
                {"sol": {"publicKey": public_key, "balanceSol": sol, "balanceLamports": "0"}, "spl": spl}
            ),
        )

    async def buy(self, request, idempotency_key=None):
        self.buys.append((request, idempotency_key))
        if request.buyerPublicKey in self.fail_from:
            raise self.fail_from[request.buyerPublicKey]
        self.balances[request.buyerPublicKey] = self.balances.get(request.buyerPublicKey, 0.0) - request.solAmount
        key = (request.buyerPublicKey, request.mintAddress)
        self.tokens[key] = self.tokens.get(key, 0.0) + request.solAmount * 1000
        return self._trade_receipt(request.buyerPublicKey, request.mintAddress)

    async def sell(self, request, idempotency_key=None):
        self.sells.append((request, idempotency_key))
        key = (request.sellerPublicKey, request.mintAddress)
        percent = float(request.tokenAmount.rstrip("%"))
        sold = self.tokens.get(key, 0.0) * percent / 100
        self.tokens[key] = self.tokens.get(key, 0.0) - sold
        self.balances[request.sellerPublicKey] = self.balances.get(request.sellerPublicKey, 0.0) + sold / 1000
        return self._trade_receipt(request.sellerPublicKey, request.mintAddress)


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def insufficient_lamports():
    return InsufficientFunds("Transaction simulation failed: insufficient lamports 48925568, need 50972165")
