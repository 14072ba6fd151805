from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from fanout.config import settings
from fanout.contracts.contracts import (
    BuyRequest,
    CreateTokenRequest,
    CreateWalletsRequest,
    CreatedWallet,
    Envelope,
    SellRequest,
    SolBalance,
    TokenBalance,
    TokenCreateReceipt,
    TradeReceipt,
    TransferReceipt,
    TransferRequest,
)
from fanout.errors import UpstreamUnavailable, ValidationFailure
from fanout.gateway import ResilientGateway
from fanout.logging_config import get_logger


logger = get_logger(__name__)

M = TypeVar("M")


def _unwrap(body: Any, model: Type[M], operation: str) -> M:
    try:
        envelope = Envelope[model].model_validate(body)
    except ValidationError as exc:
        logger.error("Invalid %s response structure: %s", operation, exc.errors()[:3])
        raise UpstreamUnavailable(
            f"Invalid {operation} response format",
            code=f"{operation.upper()}_INVALID_RESPONSE",
        ) from exc
    if not envelope.ok:
        raise UpstreamUnavailable(f"{operation} response was not ok", code=f"{operation.upper()}_INVALID_RESPONSE")
    return envelope.data


def _payload(request: BaseModel) -> dict:
    return request.model_dump(exclude_none=True)


class ChainClient:
    """Typed wrapper over the external blockchain API. Signing happens server-side."""

    def __init__(self, gateway: ResilientGateway):
        self.gateway = gateway

    async def create_wallets(self, count: int = 1) -> List[CreatedWallet]:
        if count < 1:
            raise ValidationFailure(f"wallet count must be positive, got {count}")
        logger.info("Creating wallet(s) count=%s", count)
        body = await self.gateway.call("POST", "/wallet/create", json=_payload(CreateWalletsRequest(count=count)), operation="wallet_create")
        return _unwrap(body, List[CreatedWallet], "wallet_create")

    async def get_sol_balance(self, public_key: str) -> SolBalance:
        try:
            body = await self.gateway.call("GET", f"/wallet/{public_key}/balance/sol", operation="balance")
        except ValidationFailure as exc:
            # unknown or never-funded account
            if exc.status_code == 404:
                return SolBalance(publicKey=public_key, balanceSol=0.0, balanceLamports="0")
            raise
        return _unwrap(body, SolBalance, "balance")

    async def get_token_balance(self, mint_address: str, public_key: str) -> TokenBalance:
        try:
            body = await self.gateway.call("GET", f"/wallet/{public_key}/balance/spl/{mint_address}", operation="token_balance")
        except ValidationFailure as exc:
            if exc.status_code == 404:
                return TokenBalance(walletPublicKey=public_key, mintAddress=mint_address, uiAmount=0.0, rawAmount="0")
            raise
        return _unwrap(body, TokenBalance, "token_balance")

    async def transfer(self, request: TransferRequest, idempotency_key: Optional[str] = None) -> TransferReceipt:
        if request.amountSol < settings.min_transfer_sol:
            raise ValidationFailure(
                f"Transfer amount must be at least {settings.min_transfer_sol} SOL",
                code="AMOUNT_TOO_SMALL",
            )
        logger.info(
            "Initiating SOL transfer from=%s to=%s amount=%s idempotency_key=%s",
            request.fromPublicKey,
            request.toPublicKey,
            request.amountSol,
            idempotency_key,
        )
        body = await self.gateway.call(
            "POST",
            "/api/v1/sol/advanced-transfer",
            json=_payload(request),
            idempotency_key=idempotency_key,
            operation="transfer",
        )
        receipt = _unwrap(body, TransferReceipt, "transfer")
        logger.info("SOL transfer completed signature=%s confirmed=%s", receipt.signature, receipt.confirmed)
        return receipt

    async def create_token(self, request: CreateTokenRequest, idempotency_key: Optional[str] = None) -> TokenCreateReceipt:
        logger.info("Creating token name=%s symbol=%s dev_buy=%s", request.name, request.symbol, request.devBuyAmount)
        body = await self.gateway.call(
            "POST",
            "/api/v1/pump/advanced-create",
            json=_payload(request),
            idempotency_key=idempotency_key,
            operation="token_create",
        )
        receipt = _unwrap(body, TokenCreateReceipt, "token_create")
        if not receipt.contract_address:
            raise UpstreamUnavailable("Token creation response has no mint address", code="CONTRACT_ADDRESS_MISSING")
        logger.info("Token created signature=%s mint=%s", receipt.signature, receipt.contract_address)
        return receipt

    async def buy(self, request: BuyRequest, idempotency_key: Optional[str] = None) -> TradeReceipt:
        logger.info("Buying tokens buyer=%s mint=%s sol=%s", request.buyerPublicKey, request.mintAddress, request.solAmount)
        body = await self.gateway.call(
            "POST",
            "/api/v1/pump/advanced-buy",
            json=_payload(request),
            idempotency_key=idempotency_key,
            operation="token_buy",
        )
        return _unwrap(body, TradeReceipt, "token_buy")

    async def sell(self, request: SellRequest, idempotency_key: Optional[str] = None) -> TradeReceipt:
        logger.info("Selling tokens seller=%s mint=%s amount=%s", request.sellerPublicKey, request.mintAddress, request.tokenAmount)
        body = await self.gateway.call(
            "POST",
            "/api/v1/pump/advanced-sell",
            json=_payload(request),
            idempotency_key=idempotency_key,
            operation="token_sell",
        )
        return _unwrap(body, TradeReceipt, "token_sell")
