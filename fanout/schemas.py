from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fanout.config import WalletRole


class WalletRecord(BaseModel):
    public_key: str
    private_key: str
    role: WalletRole
    sol_balance: float = 0.0
    token_balance: float = 0.0
    parent_key: Optional[str] = None


class TransferIntent(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_key: str
    to_key: str
    amount_sol: float
    idempotency_key: Optional[str] = None
    attempt: int = 1


class TransferEdge(BaseModel):
    sender: WalletRecord
    to_key: str
    amount_sol: float


class Branch(BaseModel):
    intermediate: WalletRecord
    terminals: List[WalletRecord] = Field(default_factory=list)


class EdgeResult(BaseModel):
    index: int
    success: bool
    from_key: Optional[str] = None
    to_key: Optional[str] = None
    amount_sol: Optional[float] = None
    signature: Optional[str] = None
    observed_balance: Optional[float] = None
    confirmed: bool = False
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class BatchResult(BaseModel):
    results: List[EdgeResult] = Field(default_factory=list)
    successful: int = 0
    failed: int = 0
    errors: List[dict] = Field(default_factory=list)

    def record(self, result: EdgeResult) -> EdgeResult:
        self.results.append(result)
        if result.success:
            self.successful += 1
        else:
            self.failed += 1
            self.errors.append({"index": result.index, "error": result.error, "code": result.error_code})
        return result

    @property
    def total(self) -> int:
        return len(self.results)


class BalanceAdjustment(BaseModel):
    public_key: str
    previous_balance: float
    new_balance: float
    source_error: str
