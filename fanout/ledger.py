from typing import Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.orm import Session

from fanout.config import WalletRole, parent_role_map
from fanout.errors import ValidationFailure
from fanout.logging_config import get_logger
from fanout.models import Wallet
from fanout.schemas import Branch, WalletRecord


logger = get_logger(__name__)


class LedgerStore(Protocol):
    """Local cache of wallet rows. Must be read-after-write consistent per key."""

    def get_wallet(self, public_key: str) -> Optional[WalletRecord]: ...

    def update_balances(self, public_key: str, sol_balance: float, token_balance: Optional[float] = None) -> WalletRecord: ...

    def add_wallet(self, record: WalletRecord) -> WalletRecord: ...

    def get_children(self, parent_key: str) -> List[WalletRecord]: ...


def _check_parent(record: WalletRecord, parent: Optional[WalletRecord]) -> None:
    if record.role == WalletRole.DISTRIBUTOR:
        if record.parent_key is not None:
            raise ValidationFailure("distributor wallet cannot have a parent")
        return
    if parent is None:
        raise ValidationFailure(f"parent {record.parent_key} not found for {record.role.value} wallet")
    if parent.role != parent_role_map[record.role]:
        raise ValidationFailure(
            f"{record.role.value} wallet must be funded by a {parent_role_map[record.role].value}, got {parent.role.value}"
        )


class InMemoryLedgerStore:
    def __init__(self, wallets: Optional[List[WalletRecord]] = None):
        self._wallets: Dict[str, WalletRecord] = {}
        for record in wallets or []:
            self.add_wallet(record)

    def get_wallet(self, public_key: str) -> Optional[WalletRecord]:
        record = self._wallets.get(public_key)
        return record.model_copy() if record else None

    def update_balances(self, public_key: str, sol_balance: float, token_balance: Optional[float] = None) -> WalletRecord:
        record = self._wallets.get(public_key)
        if record is None:
            raise ValidationFailure(f"unknown wallet {public_key}", status_code=404)
        update = {"sol_balance": sol_balance}
        if token_balance is not None:
            update["token_balance"] = token_balance
        self._wallets[public_key] = record.model_copy(update=update)
        return self._wallets[public_key].model_copy()

    def add_wallet(self, record: WalletRecord) -> WalletRecord:
        parent = self._wallets.get(record.parent_key) if record.parent_key else None
        _check_parent(record, parent)
        self._wallets[record.public_key] = record.model_copy()
        return record

    def get_children(self, parent_key: str) -> List[WalletRecord]:
        return [w.model_copy() for w in self._wallets.values() if w.parent_key == parent_key]


def _to_record(row: Wallet) -> WalletRecord:
    return WalletRecord(
        public_key=row.public_key,
        private_key=row.private_key,
        role=WalletRole(row.role),
        sol_balance=row.sol_balance,
        token_balance=row.token_balance,
        parent_key=row.parent_key,
    )


class SqlLedgerStore:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get_wallet(self, public_key: str) -> Optional[WalletRecord]:
        with self.session_factory() as db:
            row = db.query(Wallet).filter_by(public_key=public_key).first()
            return _to_record(row) if row else None

    def update_balances(self, public_key: str, sol_balance: float, token_balance: Optional[float] = None) -> WalletRecord:
        with self.session_factory() as db:
            row = db.query(Wallet).filter_by(public_key=public_key).first()
            if row is None:
                raise ValidationFailure(f"unknown wallet {public_key}", status_code=404)
            row.sol_balance = sol_balance
            if token_balance is not None:
                row.token_balance = token_balance
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info(
                "Stored wallet balances public_key=%s sol=%s token=%s",
                public_key,
                row.sol_balance,
                row.token_balance,
            )
            return _to_record(row)

    def add_wallet(self, record: WalletRecord) -> WalletRecord:
        parent = self.get_wallet(record.parent_key) if record.parent_key else None
        _check_parent(record, parent)
        with self.session_factory() as db:
            row = Wallet(
                public_key=record.public_key,
                private_key=record.private_key,
                role=record.role.value,
                sol_balance=record.sol_balance,
                token_balance=record.token_balance,
                parent_key=record.parent_key,
            )
            db.add(row)
            db.commit()
        return record

    def get_children(self, parent_key: str) -> List[WalletRecord]:
        with self.session_factory() as db:
            rows = db.query(Wallet).filter_by(parent_key=parent_key).order_by(Wallet.id).all()
            return [_to_record(r) for r in rows]


def load_tree(ledger: LedgerStore, distributor_key: str) -> Tuple[WalletRecord, List[Branch]]:
    distributor = ledger.get_wallet(distributor_key)
    if distributor is None:
        raise ValidationFailure(f"distributor wallet {distributor_key} not found", status_code=404)
    if distributor.role != WalletRole.DISTRIBUTOR:
        raise ValidationFailure(f"wallet {distributor_key} is a {distributor.role.value}, not a distributor")
    branches = [
        Branch(intermediate=intermediate, terminals=ledger.get_children(intermediate.public_key))
        for intermediate in ledger.get_children(distributor_key)
    ]
    return distributor, branches


def terminal_wallets(branches: List[Branch]) -> List[WalletRecord]:
    return [terminal for branch in branches for terminal in branch.terminals]
