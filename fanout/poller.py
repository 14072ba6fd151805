import random
from typing import Optional

from fanout.clients.chain_client import ChainClient
from fanout.config import settings
from fanout.errors import ConfirmationTimeout, FanoutError
from fanout.logging_config import get_logger
from fanout.timing import Sleeper, jitter


logger = get_logger(__name__)


class ConfirmationPoller:
    """
    Waits for a transfer to settle by re-reading the recipient balance.

    Delays grow linearly with the attempt number: this is settlement latency,
    not failure backoff. Running out of attempts is not an error; the last
    observed value is returned and the caller proceeds optimistically.
    """

    def __init__(
        self,
        chain: ChainClient,
        sleeper: Sleeper | None = None,
        rng: random.Random | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        tolerance: float | None = None,
        jitter_seconds: float | None = None,
    ):
        self.chain = chain
        self.sleeper = sleeper or Sleeper()
        self.rng = rng
        self.max_attempts = max_attempts if max_attempts is not None else settings.confirmation_attempts
        self.base_delay = base_delay if base_delay is not None else settings.confirmation_base_delay_seconds
        self.tolerance = tolerance if tolerance is not None else settings.confirmation_tolerance_sol
        self.jitter_seconds = jitter_seconds if jitter_seconds is not None else settings.confirmation_jitter_seconds

    async def await_balance(
        self,
        address: str,
        expected: float,
        tolerance: float | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
    ) -> Optional[float]:
        tolerance = tolerance if tolerance is not None else self.tolerance
        max_attempts = max(1, max_attempts if max_attempts is not None else self.max_attempts)
        base_delay = base_delay if base_delay is not None else self.base_delay

        observed: Optional[float] = None
        for attempt in range(1, max_attempts + 1):
            try:
                balance = await self.chain.get_sol_balance(address)
                observed = balance.balanceSol
            except FanoutError as exc:
                logger.warning("Balance poll failed address=%s attempt=%s error=%s", address, attempt, exc)

            if observed is not None and observed >= expected - tolerance:
                logger.info(
                    "Balance confirmed address=%s expected=%s observed=%s attempt=%s",
                    address,
                    expected,
                    observed,
                    attempt,
                )
                return observed

            if attempt < max_attempts:
                await self.sleeper.sleep(base_delay * attempt + jitter(self.jitter_seconds, self.rng))

        timeout = ConfirmationTimeout(
            f"balance for {address} not confirmed after {max_attempts} attempts",
            context={"expected": expected, "observed": observed},
        )
        logger.warning("%s (expected=%s last_observed=%s)", timeout, expected, observed)
        return observed
