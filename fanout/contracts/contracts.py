from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

from fanout.schemas import TransferIntent

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    ok: bool
    data: T


class CreatedWallet(BaseModel):
    publicKey: str
    privateKey: str


class SolBalance(BaseModel):
    publicKey: str
    balanceSol: float
    balanceLamports: str


class TokenBalance(BaseModel):
    walletPublicKey: str
    mintAddress: str
    uiAmount: float
    rawAmount: str


class TransferBalances(BaseModel):
    fromLamports: Optional[int] = None
    fromSol: Optional[float] = None
    toLamports: Optional[int] = None
    toSol: Optional[float] = None


class TransferRequest(BaseModel):
    fromPublicKey: str
    toPublicKey: str
    amountSol: float
    privateKey: str
    commitment: str = "confirmed"
    computeUnits: Optional[int] = None
    microLamports: Optional[int] = None

    @classmethod
    def from_intent(cls, intent: TransferIntent, private_key: str) -> "TransferRequest":
        return cls(
            fromPublicKey=intent.from_key,
            toPublicKey=intent.to_key,
            amountSol=intent.amount_sol,
            privateKey=private_key,
        )


class TransferReceipt(BaseModel):
    signature: str
    confirmed: bool
    preBalances: Optional[TransferBalances] = None
    postBalances: Optional[TransferBalances] = None


class SolPostBalance(BaseModel):
    publicKey: str
    balanceSol: float
    balanceLamports: str


class SplPostBalance(BaseModel):
    walletPublicKey: str
    mintAddress: Optional[str] = None
    uiAmount: float = 0.0
    rawAmount: str = "0"


class TradePostBalances(BaseModel):
    sol: SolPostBalance
    spl: Optional[SplPostBalance] = None


class GeneratedMint(BaseModel):
    publicKey: str
    privateKey: Optional[str] = None


class TradeReceipt(BaseModel):
    signature: str
    confirmed: bool
    postBalances: TradePostBalances

    @property
    def sol_balance(self) -> float:
        return self.postBalances.sol.balanceSol

    @property
    def token_balance(self) -> float:
        return self.postBalances.spl.uiAmount if self.postBalances.spl else 0.0


class TokenCreateReceipt(TradeReceipt):
    generatedMint: Optional[GeneratedMint] = None

    @property
    def contract_address(self) -> Optional[str]:
        if self.postBalances.spl and self.postBalances.spl.mintAddress:
            return self.postBalances.spl.mintAddress
        return self.generatedMint.publicKey if self.generatedMint else None


class CreateTokenRequest(BaseModel):
    creatorPublicKey: str
    name: str
    symbol: str
    description: str = ""
    imageUrl: Optional[str] = None
    twitter: str = ""
    telegram: str = ""
    website: str = ""
    devBuyAmount: float
    slippageBps: int
    priorityFeeSol: float
    privateKey: str
    commitment: str = "confirmed"


class BuyRequest(BaseModel):
    buyerPublicKey: str
    mintAddress: str
    solAmount: float
    slippageBps: int
    priorityFeeSol: float
    privateKey: str
    commitment: str = "confirmed"


class SellRequest(BaseModel):
    sellerPublicKey: str
    mintAddress: str
    tokenAmount: str  # "<n>%" or a raw amount
    slippageBps: int = 100
    privateKey: str
    priorityFeeSol: Optional[float] = None
    commitment: str = "confirmed"


class CreateWalletsRequest(BaseModel):
    count: int = 1
