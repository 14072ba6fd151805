import logging
import secrets
from typing import Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-chain")

LAMPORTS_PER_SOL = 1_000_000_000
FEE_LAMPORTS = 5_000
TOKENS_PER_SOL = 1_000_000
TOKEN_DECIMALS = 6

app = FastAPI(title="Mock Chain API")


class ChainState:
    def __init__(self):
        self.lamports: Dict[str, int] = {}
        self.tokens: Dict[tuple, int] = {}
        self.idempotent: Dict[str, dict] = {}
        self.cold_start_probes = 0
        self.rate_limit_bursts = 0
        self.router_throttles = 0
        self.transfer_calls = 0

    def reset(self):
        self.__init__()


state = ChainState()


class CreateWallets(BaseModel):
    count: int = 1


class Transfer(BaseModel):
    fromPublicKey: str
    toPublicKey: str
    amountSol: float
    privateKey: str
    commitment: str = "confirmed"
    idempotencyKey: Optional[str] = None


class CreateToken(BaseModel):
    creatorPublicKey: str
    name: str
    symbol: str
    devBuyAmount: float
    privateKey: str


class Buy(BaseModel):
    buyerPublicKey: str
    mintAddress: str
    solAmount: float
    privateKey: str


class Sell(BaseModel):
    sellerPublicKey: str
    mintAddress: str
    tokenAmount: str
    privateKey: str


class Airdrop(BaseModel):
    publicKey: str
    amountSol: float


class Faults(BaseModel):
    coldStartProbes: int = 0
    rateLimitBursts: int = 0
    routerThrottles: int = 0


def _sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def _fail(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message}, headers=headers)


def _post_balances(public_key: str, mint: Optional[str] = None) -> dict:
    lamports = state.lamports.get(public_key, 0)
    post = {"sol": {"publicKey": public_key, "balanceSol": _sol(lamports), "balanceLamports": str(lamports)}}
    if mint:
        raw = state.tokens.get((public_key, mint), 0)
        post["spl"] = {
            "walletPublicKey": public_key,
            "mintAddress": mint,
            "uiAmount": raw / 10 ** TOKEN_DECIMALS,
            "rawAmount": str(raw),
        }
    return post


def _debit(public_key: str, lamports: int) -> Optional[JSONResponse]:
    available = state.lamports.get(public_key, 0)
    if available < lamports:
        logger.warning("Insufficient lamports wallet=%s have=%s need=%s", public_key, available, lamports)
        return _fail(400, f"Transaction simulation failed: insufficient lamports {available}, need {lamports}")
    state.lamports[public_key] = available - lamports
    return None


@app.middleware("http")
async def inject_faults(request: Request, call_next):
    if request.url.path.startswith("/admin"):
        return await call_next(request)
    if request.url.path == "/" and state.cold_start_probes > 0:
        state.cold_start_probes -= 1
        logger.info("Cold start: answering 429 to health probe (%s left)", state.cold_start_probes)
        return _fail(429, "service waking up")
    if request.url.path != "/" and state.router_throttles > 0:
        state.router_throttles -= 1
        return _fail(503, "router throttled", headers={"x-render-routing": "rate-limited"})
    if request.url.path != "/" and state.rate_limit_bursts > 0:
        state.rate_limit_bursts -= 1
        return _fail(429, "Rate limit exceeded: max 4 req/s")
    return await call_next(request)


@app.get("/")
async def health():
    return {"status": "ok"}


@app.post("/wallet/create")
async def create_wallets(body: CreateWallets):
    wallets = []
    for _ in range(body.count):
        public_key = secrets.token_hex(16)
        state.lamports.setdefault(public_key, 0)
        wallets.append({"publicKey": public_key, "privateKey": secrets.token_hex(32)})
    logger.info("Created %s wallets", body.count)
    return {"ok": True, "data": wallets}


@app.get("/wallet/{public_key}/balance/sol")
async def sol_balance(public_key: str):
    if public_key not in state.lamports:
        return _fail(404, "account not found")
    lamports = state.lamports[public_key]
    return {"ok": True, "data": {"publicKey": public_key, "balanceSol": _sol(lamports), "balanceLamports": str(lamports)}}


@app.get("/wallet/{public_key}/balance/spl/{mint}")
async def spl_balance(public_key: str, mint: str):
    if (public_key, mint) not in state.tokens:
        return _fail(404, "token account not found")
    raw = state.tokens[(public_key, mint)]
    return {
        "ok": True,
        "data": {"walletPublicKey": public_key, "mintAddress": mint, "uiAmount": raw / 10 ** TOKEN_DECIMALS, "rawAmount": str(raw)},
    }


@app.post("/api/v1/sol/advanced-transfer")
async def transfer(body: Transfer, x_idempotency_key: Optional[str] = Header(None)):
    state.transfer_calls += 1
    key = x_idempotency_key or body.idempotencyKey
    if key and key in state.idempotent:
        logger.info("Replaying idempotent transfer key=%s", key)
        return state.idempotent[key]

    lamports = round(body.amountSol * LAMPORTS_PER_SOL)
    pre = {
        "fromLamports": state.lamports.get(body.fromPublicKey, 0),
        "toLamports": state.lamports.get(body.toPublicKey, 0),
    }
    failure = _debit(body.fromPublicKey, lamports + FEE_LAMPORTS)
    if failure:
        return failure
    state.lamports[body.toPublicKey] = state.lamports.get(body.toPublicKey, 0) + lamports
    post = {
        "fromLamports": state.lamports[body.fromPublicKey],
        "toLamports": state.lamports[body.toPublicKey],
    }
    response = {
        "ok": True,
        "data": {
            "signature": secrets.token_hex(32),
            "confirmed": body.commitment in ("confirmed", "finalized"),
            "preBalances": {**pre, "fromSol": _sol(pre["fromLamports"]), "toSol": _sol(pre["toLamports"])},
            "postBalances": {**post, "fromSol": _sol(post["fromLamports"]), "toSol": _sol(post["toLamports"])},
        },
    }
    if key:
        state.idempotent[key] = response
    logger.info("Transfer from=%s to=%s lamports=%s", body.fromPublicKey, body.toPublicKey, lamports)
    return response


@app.post("/api/v1/pump/advanced-create")
async def create_token(body: CreateToken):
    mint = secrets.token_hex(16)
    lamports = round(body.devBuyAmount * LAMPORTS_PER_SOL)
    failure = _debit(body.creatorPublicKey, lamports + FEE_LAMPORTS)
    if failure:
        return failure
    state.tokens[(body.creatorPublicKey, mint)] = round(body.devBuyAmount * TOKENS_PER_SOL * 10 ** TOKEN_DECIMALS)
    logger.info("Created token symbol=%s mint=%s", body.symbol, mint)
    return {
        "ok": True,
        "data": {
            "signature": secrets.token_hex(32),
            "confirmed": True,
            "postBalances": _post_balances(body.creatorPublicKey, mint),
            "generatedMint": {"publicKey": mint},
        },
    }


@app.post("/api/v1/pump/advanced-buy")
async def buy(body: Buy):
    lamports = round(body.solAmount * LAMPORTS_PER_SOL)
    failure = _debit(body.buyerPublicKey, lamports + FEE_LAMPORTS)
    if failure:
        return failure
    key = (body.buyerPublicKey, body.mintAddress)
    state.tokens[key] = state.tokens.get(key, 0) + round(body.solAmount * TOKENS_PER_SOL * 10 ** TOKEN_DECIMALS)
    return {
        "ok": True,
        "data": {"signature": secrets.token_hex(32), "confirmed": True, "postBalances": _post_balances(body.buyerPublicKey, body.mintAddress)},
    }


@app.post("/api/v1/pump/advanced-sell")
async def sell(body: Sell):
    key = (body.sellerPublicKey, body.mintAddress)
    held = state.tokens.get(key, 0)
    if body.tokenAmount.endswith("%"):
        raw = int(held * float(body.tokenAmount[:-1]) / 100)
    else:
        raw = int(float(body.tokenAmount) * 10 ** TOKEN_DECIMALS)
    if raw > held:
        return _fail(400, f"Insufficient token balance: have {held}, need {raw}")
    failure = _debit(body.sellerPublicKey, FEE_LAMPORTS)
    if failure:
        return failure
    state.tokens[key] = held - raw
    proceeds = round(raw / 10 ** TOKEN_DECIMALS / TOKENS_PER_SOL * LAMPORTS_PER_SOL)
    state.lamports[body.sellerPublicKey] += proceeds
    return {
        "ok": True,
        "data": {"signature": secrets.token_hex(32), "confirmed": True, "postBalances": _post_balances(body.sellerPublicKey, body.mintAddress)},
    }


@app.post("/admin/airdrop")
async def airdrop(body: Airdrop):
    lamports = round(body.amountSol * LAMPORTS_PER_SOL)
    state.lamports[body.publicKey] = state.lamports.get(body.publicKey, 0) + lamports
    logger.info("Airdropped lamports=%s to=%s", lamports, body.publicKey)
    return {"ok": True, "data": {"publicKey": body.publicKey, "balanceSol": _sol(state.lamports[body.publicKey])}}


@app.post("/admin/faults")
async def set_faults(body: Faults):
    state.cold_start_probes = body.coldStartProbes
    state.rate_limit_bursts = body.rateLimitBursts
    state.router_throttles = body.routerThrottles
    logger.warning("Fault injection updated: %s", body.model_dump())
    return {"ok": True}


@app.post("/admin/reset")
async def reset():
    """
    Dangerous: clears all mock chain balances and idempotency records.
    """
    state.reset()
    logger.warning("Cleared mock chain state via admin endpoint")
    return {"status": "cleared"}
