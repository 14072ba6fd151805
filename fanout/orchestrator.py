import random
import uuid
from typing import Callable, List, Optional

from fanout.clients.chain_client import ChainClient
from fanout.config import WalletRole, settings
from fanout.contracts.contracts import BuyRequest, SellRequest, TransferRequest
from fanout.distribution import distribute
from fanout.errors import FanoutError, InsufficientFunds, ValidationFailure
from fanout.ledger import LedgerStore
from fanout.logging_config import get_logger
from fanout.notifications import Notifier
from fanout.poller import ConfirmationPoller
from fanout.reconciliation import Reconciler, is_insufficient_funds
from fanout.schemas import BatchResult, Branch, EdgeResult, TransferEdge, TransferIntent, WalletRecord
from fanout.timing import Sleeper, Temporizer


logger = get_logger(__name__)

PARENT_FAILED_CODE = "PARENT_TRANSFER_FAILED"
BUY_SAFETY_FACTOR = 0.85


def _error_code(exc: Exception) -> str:
    return exc.code if isinstance(exc, FanoutError) else type(exc).__name__


class TransferOrchestrator:
    """
    Walks wallet batches strictly one operation at a time.

    Every transfer after the first in a batch waits a randomized delay so the
    upstream never sees a burst. A failing edge is recorded and the walk moves
    on; nothing an edge raises escapes the batch.
    """

    def __init__(
        self,
        chain: ChainClient,
        ledger: LedgerStore,
        poller: ConfirmationPoller | None = None,
        sleeper: Sleeper | None = None,
        rng: random.Random | None = None,
        notifier: Notifier | None = None,
        reconciler: Reconciler | None = None,
        delay_min_seconds: float | None = None,
        delay_max_seconds: float | None = None,
        trade_delay_min_seconds: float | None = None,
        trade_delay_max_seconds: float | None = None,
    ):
        self.chain = chain
        self.ledger = ledger
        self.sleeper = sleeper or Sleeper()
        self.rng = rng
        self.poller = poller or ConfirmationPoller(chain, sleeper=self.sleeper, rng=rng)
        self.notifier = notifier or Notifier()
        self.reconciler = reconciler or Reconciler()
        self.delay_min_seconds = delay_min_seconds if delay_min_seconds is not None else settings.transfer_delay_min_seconds
        self.delay_max_seconds = delay_max_seconds if delay_max_seconds is not None else settings.transfer_delay_max_seconds
        self.trade_delay_min_seconds = trade_delay_min_seconds if trade_delay_min_seconds is not None else settings.trade_delay_min_seconds
        self.trade_delay_max_seconds = trade_delay_max_seconds if trade_delay_max_seconds is not None else settings.trade_delay_max_seconds

    def temporizer(self, trade: bool = False) -> Temporizer:
        if trade:
            return Temporizer(self.sleeper, self.trade_delay_min_seconds, self.trade_delay_max_seconds, self.rng)
        return Temporizer(self.sleeper, self.delay_min_seconds, self.delay_max_seconds, self.rng)

    # ledger access never fails an edge

    def _cached(self, public_key: str) -> Optional[WalletRecord]:
        try:
            return self.ledger.get_wallet(public_key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to read wallet from ledger public_key=%s error=%s", public_key, exc)
            return None

    def _store(self, public_key: str, sol_balance: float, token_balance: Optional[float] = None) -> bool:
        try:
            self.ledger.update_balances(public_key, sol_balance, token_balance)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to update wallet balance public_key=%s error=%s", public_key, exc)
            return False
        return True

    async def refresh_balance(self, public_key: str) -> Optional[float]:
        try:
            balance = await self.chain.get_sol_balance(public_key)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to refresh balance public_key=%s error=%s", public_key, exc)
            return None
        self._store(public_key, balance.balanceSol)
        return balance.balanceSol

    async def provision_wallets(self, role: WalletRole, count: int, parent_key: Optional[str] = None) -> List[WalletRecord]:
        created = await self.chain.create_wallets(count)
        records = []
        for wallet in created:
            record = WalletRecord(
                public_key=wallet.publicKey,
                private_key=wallet.privateKey,
                role=role,
                parent_key=parent_key,
            )
            records.append(self.ledger.add_wallet(record))
        logger.info("Provisioned wallets role=%s count=%s parent=%s", role.value, len(records), parent_key)
        return records

    def _failure(self, index: int, intent: TransferIntent, exc: Exception) -> EdgeResult:
        logger.error(
            "Transfer edge failed index=%s from=%s to=%s amount=%s code=%s error=%s",
            index,
            intent.from_key,
            intent.to_key,
            intent.amount_sol,
            _error_code(exc),
            exc,
        )
        if isinstance(exc, InsufficientFunds) or is_insufficient_funds(str(exc)):
            cached = self._cached(intent.from_key)
            if cached is not None:
                self.reconciler.inspect(intent.from_key, cached.sol_balance, str(exc))
        return EdgeResult(
            index=index,
            success=False,
            from_key=intent.from_key,
            to_key=intent.to_key,
            amount_sol=intent.amount_sol,
            error=str(exc),
            error_code=_error_code(exc),
        )

    async def _transfer_edge(
        self,
        index: int,
        sender: WalletRecord,
        to_key: str,
        amount_sol: float,
        idempotency_key: str,
        temporizer: Temporizer,
    ) -> EdgeResult:
        await temporizer.wait_turn()
        intent = TransferIntent(
            from_key=sender.public_key,
            to_key=to_key,
            amount_sol=amount_sol,
            idempotency_key=idempotency_key,
        )
        recipient = self._cached(to_key)
        pre_balance = recipient.sol_balance if recipient else 0.0

        try:
            receipt = await self.chain.transfer(TransferRequest.from_intent(intent, sender.private_key), idempotency_key=idempotency_key)
        except Exception as exc:  # noqa: BLE001
            return self._failure(index, intent, exc)

        if receipt.preBalances and receipt.preBalances.toSol is not None:
            pre_balance = receipt.preBalances.toSol
        if receipt.postBalances and receipt.postBalances.fromSol is not None:
            self._store(sender.public_key, receipt.postBalances.fromSol)

        expected = pre_balance + amount_sol
        try:
            observed = await self.poller.await_balance(to_key, expected)
        except Exception as exc:  # noqa: BLE001
            # the transfer itself went through; treat the edge as unconfirmed
            logger.error("Balance confirmation failed to=%s signature=%s error=%s", to_key, receipt.signature, exc)
            observed = None
        confirmed = observed is not None and observed >= expected - self.poller.tolerance
        if confirmed:
            new_balance = observed
        else:
            # unconfirmed: the pre-transfer balance is a safe lower bound
            new_balance = max(observed or 0.0, pre_balance)
            logger.warning(
                "Transfer not confirmed, recording lower-bound balance to=%s expected=%s observed=%s recorded=%s",
                to_key,
                expected,
                observed,
                new_balance,
            )
        if recipient is not None:
            self._store(to_key, new_balance)

        return EdgeResult(
            index=index,
            success=True,
            from_key=intent.from_key,
            to_key=to_key,
            amount_sol=amount_sol,
            signature=receipt.signature,
            observed_balance=observed,
            confirmed=confirmed,
        )

    def _stopped(self, should_continue: Optional[Callable[[], bool]]) -> bool:
        if should_continue is not None and not should_continue():
            logger.warning("Batch stopped by caller between edges")
            return True
        return False

    async def _finish(self, operation: str, result: BatchResult) -> BatchResult:
        self.reconciler.apply(self.ledger)
        if result.failed:
            logger.warning("Some operations in %s failed total=%s failed=%s", operation, result.total, result.failed)
        logger.info("%s completed successful=%s failed=%s", operation, result.successful, result.failed)
        await self.notifier.notify(
            "batch_completed",
            {"operation": operation, "successful": result.successful, "failed": result.failed, "errors": result.errors},
        )
        return result

    async def batch_transfer(
        self,
        edges: List[TransferEdge],
        idempotency_key: Optional[str] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> BatchResult:
        base_key = idempotency_key or str(uuid.uuid4())
        temporizer = self.temporizer()
        result = BatchResult()
        for i, edge in enumerate(edges):
            if self._stopped(should_continue):
                break
            result.record(
                await self._transfer_edge(i, edge.sender, edge.to_key, edge.amount_sol, f"{base_key}-{i}", temporizer)
            )
        return await self._finish("batch_transfer", result)

    async def fund_tree(
        self,
        distributor: WalletRecord,
        branches: List[Branch],
        idempotency_key: Optional[str] = None,
        funding_amount: Optional[float] = None,
        terminal_total: Optional[float] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> BatchResult:
        """
        Distributor -> each intermediate -> that intermediate's terminals.

        One temporizer spans the whole tree. Terminal amounts come from the
        constrained distribution when a branch has several terminals; a lone
        terminal receives the whole branch amount. When an intermediate is not
        funded its terminals are recorded as failed without being attempted.
        """
        base_key = idempotency_key or str(uuid.uuid4())
        funding_amount = funding_amount if funding_amount is not None else settings.intermediate_funding_sol
        terminal_total = terminal_total if terminal_total is not None else settings.distribution_total_sol
        temporizer = self.temporizer()
        result = BatchResult()

        logger.info(
            "Funding wallet tree distributor=%s branches=%s terminals=%s",
            distributor.public_key,
            len(branches),
            sum(len(b.terminals) for b in branches),
        )
        stopped = False
        for i, branch in enumerate(branches):
            if self._stopped(should_continue):
                break
            intermediate = branch.intermediate
            funded = result.record(
                await self._transfer_edge(
                    result.total,
                    distributor,
                    intermediate.public_key,
                    funding_amount,
                    f"{base_key}-intermediate-{i}",
                    temporizer,
                )
            )
            if not funded.success:
                for terminal in branch.terminals:
                    result.record(
                        EdgeResult(
                            index=result.total,
                            success=False,
                            from_key=intermediate.public_key,
                            to_key=terminal.public_key,
                            error=f"intermediate {intermediate.public_key} was not funded",
                            error_code=PARENT_FAILED_CODE,
                        )
                    )
                continue
            if not branch.terminals:
                logger.warning("No terminal wallets found for intermediate %s", intermediate.public_key)
                continue

            sender = self._cached(intermediate.public_key) or intermediate
            if len(branch.terminals) == 1:
                amounts = [terminal_total]
            else:
                amounts = distribute(
                    len(branch.terminals),
                    terminal_total,
                    settings.distribution_min_sol,
                    settings.distribution_max_sol,
                    rng=self.rng,
                )
            for j, (terminal, amount) in enumerate(zip(branch.terminals, amounts)):
                if self._stopped(should_continue):
                    stopped = True
                    break
                result.record(
                    await self._transfer_edge(
                        result.total,
                        sender,
                        terminal.public_key,
                        amount,
                        f"{base_key}-terminal-{i}-{j}",
                        temporizer,
                    )
                )
            await self.refresh_balance(intermediate.public_key)
            if stopped:
                break

        await self.refresh_balance(distributor.public_key)
        return await self._finish("fund_tree", result)

    async def batch_buy(
        self,
        mint_address: str,
        wallets: List[WalletRecord],
        slippage_bps: int,
        priority_fee_sol: Optional[float] = None,
        idempotency_key: Optional[str] = None,
    ) -> BatchResult:
        """
        Buy from every wallet that can afford it while keeping enough SOL for
        the buy fee, a later sell fee and a safety buffer.
        """
        base_key = idempotency_key or str(uuid.uuid4())
        priority_fee_sol = priority_fee_sol if priority_fee_sol is not None else settings.default_priority_fee_sol
        reserve = settings.buy_fee_reserve_sol + settings.sell_fee_reserve_sol + settings.safety_buffer_sol

        eligible = []
        for wallet in wallets:
            current = self._cached(wallet.public_key) or wallet
            available = max(current.sol_balance - reserve, 0.0)
            if available < settings.min_buy_amount_sol:
                logger.info(
                    "Skipping buy for wallet=%s balance=%s reserve=%s",
                    current.public_key,
                    current.sol_balance,
                    reserve,
                )
                continue
            eligible.append((current, min(available * BUY_SAFETY_FACTOR, settings.max_buy_amount_sol)))

        result = BatchResult()
        if not eligible:
            logger.warning("No wallets have sufficient balance for buying total_wallets=%s", len(wallets))
            return await self._finish("batch_buy", result)

        temporizer = self.temporizer(trade=True)
        for i, (wallet, amount) in enumerate(eligible):
            await temporizer.wait_turn()
            request = BuyRequest(
                buyerPublicKey=wallet.public_key,
                mintAddress=mint_address,
                solAmount=amount,
                slippageBps=slippage_bps,
                priorityFeeSol=priority_fee_sol,
                privateKey=wallet.private_key,
            )
            intent = TransferIntent(from_key=wallet.public_key, to_key=mint_address, amount_sol=amount, idempotency_key=f"{base_key}-buy-{i}")
            try:
                receipt = await self.chain.buy(request, idempotency_key=intent.idempotency_key)
            except Exception as exc:  # noqa: BLE001
                result.record(self._failure(i, intent, exc))
                continue

            token_balance = receipt.token_balance
            if token_balance == 0:
                logger.warning(
                    "Successful buy but token balance is 0 in response wallet=%s signature=%s, keeping cached token balance",
                    wallet.public_key,
                    receipt.signature,
                )
                token_balance = wallet.token_balance
            self._store(wallet.public_key, receipt.sol_balance, token_balance)
            result.record(
                EdgeResult(
                    index=i,
                    success=True,
                    from_key=wallet.public_key,
                    to_key=mint_address,
                    amount_sol=amount,
                    signature=receipt.signature,
                    confirmed=receipt.confirmed,
                    observed_balance=receipt.sol_balance,
                )
            )
        return await self._finish("batch_buy", result)

    async def batch_sell(
        self,
        mint_address: str,
        wallets: List[WalletRecord],
        percent: float,
        slippage_bps: int = 100,
        idempotency_key: Optional[str] = None,
    ) -> BatchResult:
        if not 0 < percent <= 100:
            raise ValidationFailure(f"sell percent must be in (0, 100], got {percent}")
        current = [self._cached(w.public_key) or w for w in wallets]
        if sum(w.token_balance for w in current) <= 0:
            raise ValidationFailure("No tokens to sell across all wallets", code="NO_TOKENS_TO_SELL")

        base_key = idempotency_key or str(uuid.uuid4())
        amount = f"{percent:g}%"
        temporizer = self.temporizer(trade=True)
        result = BatchResult()
        for i, wallet in enumerate(current):
            await temporizer.wait_turn()
            request = SellRequest(
                sellerPublicKey=wallet.public_key,
                mintAddress=mint_address,
                tokenAmount=amount,
                slippageBps=slippage_bps,
                privateKey=wallet.private_key,
            )
            intent = TransferIntent(from_key=wallet.public_key, to_key=mint_address, amount_sol=0.0, idempotency_key=f"{base_key}-sell-{i}")
            try:
                receipt = await self.chain.sell(request, idempotency_key=intent.idempotency_key)
            except Exception as exc:  # noqa: BLE001
                result.record(self._failure(i, intent, exc))
                continue
            self._store(wallet.public_key, receipt.sol_balance, receipt.token_balance)
            result.record(
                EdgeResult(
                    index=i,
                    success=True,
                    from_key=wallet.public_key,
                    to_key=mint_address,
                    signature=receipt.signature,
                    confirmed=receipt.confirmed,
                    observed_balance=receipt.sol_balance,
                    data={"tokenAmount": amount, "tokenBalance": receipt.token_balance},
                )
            )
        return await self._finish("batch_sell", result)

    async def sweep(
        self,
        wallets: List[WalletRecord],
        destination_key: str,
        idempotency_key: Optional[str] = None,
    ) -> BatchResult:
        """Return each wallet's SOL, minus rent exemption and fee, to ``destination_key``."""
        reserve = settings.rent_exemption_sol + settings.transaction_fee_sol
        edges = []
        for wallet in wallets:
            current = self._cached(wallet.public_key) or wallet
            amount = current.sol_balance - reserve
            if amount <= settings.min_transfer_sol:
                logger.info("Nothing to sweep from wallet=%s balance=%s", current.public_key, current.sol_balance)
                continue
            edges.append(TransferEdge(sender=current, to_key=destination_key, amount_sol=amount))
        logger.info("Sweeping SOL back destination=%s wallets=%s", destination_key, len(edges))
        return await self.batch_transfer(edges, idempotency_key=idempotency_key)
