import re
from typing import List, Optional

from fanout.config import LAMPORTS_PER_SOL
from fanout.ledger import LedgerStore
from fanout.logging_config import get_logger
from fanout.schemas import BalanceAdjustment


logger = get_logger(__name__)

ACTUAL_BALANCE_RE = re.compile(r"actual balance ([\d.]+) SOL")
INSUFFICIENT_LAMPORTS_RE = re.compile(r"insufficient lamports (\d+), need (\d+)")
INSUFFICIENT_MARKERS = ("insufficient balance", "insufficient_balance", "insufficient lamports", "insufficient funds")


def is_insufficient_funds(text: Optional[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(marker in lowered for marker in INSUFFICIENT_MARKERS)


def extract_actual_balance(text: Optional[str]) -> Optional[float]:
    """
    Pull the on-chain SOL balance out of a provider error message.

    Two shapes are known: "actual balance 0.048925568 SOL" and
    "insufficient lamports 48925568, need 50972165". Anything else is None.
    """
    if not text:
        return None
    match = ACTUAL_BALANCE_RE.search(text)
    if match:
        try:
            return float(match.group(1))
        except ValueError:
            logger.warning("Could not parse balance from error message: %s", text)
            return None
    match = INSUFFICIENT_LAMPORTS_RE.search(text)
    if match:
        return int(match.group(1)) / LAMPORTS_PER_SOL
    return None


class Reconciler:
    """Collects corrective balance writes for wallets whose cache ran ahead of the chain."""

    def __init__(self):
        self.pending: List[BalanceAdjustment] = []

    def inspect(self, public_key: str, cached_balance: float, error_text: Optional[str]) -> Optional[BalanceAdjustment]:
        if not is_insufficient_funds(error_text):
            return None
        actual = extract_actual_balance(error_text)
        if actual is None:
            logger.warning(
                "Insufficient funds without a parseable balance, leaving cache untouched: public_key=%s error=%s",
                public_key,
                error_text,
            )
            return None
        if actual >= cached_balance:
            return None
        adjustment = BalanceAdjustment(
            public_key=public_key,
            previous_balance=cached_balance,
            new_balance=actual,
            source_error=error_text,
        )
        logger.warning(
            "Ledger balance mismatch, scheduling adjustment: public_key=%s cached=%s actual=%s difference=%s",
            public_key,
            cached_balance,
            actual,
            cached_balance - actual,
        )
        self.pending.append(adjustment)
        return adjustment

    def apply(self, ledger: LedgerStore) -> List[BalanceAdjustment]:
        applied: List[BalanceAdjustment] = []
        pending, self.pending = self.pending, []
        for adjustment in pending:
            try:
                ledger.update_balances(adjustment.public_key, adjustment.new_balance)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Failed to apply balance adjustment: public_key=%s error=%s",
                    adjustment.public_key,
                    exc,
                )
                continue
            logger.info(
                "Applied balance adjustment from chain feedback: public_key=%s new_balance=%s",
                adjustment.public_key,
                adjustment.new_balance,
            )
            applied.append(adjustment)
        return applied
