import asyncio

from conftest import FakeChain, RecordingSleeper
from fanout.contracts.contracts import SolBalance
from fanout.errors import UpstreamUnavailable
from fanout.poller import ConfirmationPoller


class ScriptedChain(FakeChain):
    def __init__(self, readings):
        super().__init__()
        self.readings = list(readings)
        self.reads = 0

    async def get_sol_balance(self, public_key):
        self.reads += 1
        reading = self.readings.pop(0) if self.readings else self.last
        self.last = reading
        if isinstance(reading, Exception):
            raise reading
        return SolBalance(publicKey=public_key, balanceSol=reading, balanceLamports="0")


def make_poller(chain, sleeper, max_attempts=5):
    return ConfirmationPoller(chain, sleeper=sleeper, max_attempts=max_attempts, base_delay=2, tolerance=1e-5, jitter_seconds=0)


def test_returns_as_soon_as_balance_arrives():
    chain = ScriptedChain([0.0, 0.1, 0.5])
    sleeper = RecordingSleeper()

    observed = asyncio.run(make_poller(chain, sleeper).await_balance("w1", 0.5))

    assert observed == 0.5
    assert chain.reads == 3
    assert sleeper.delays == [2, 4]


def test_tolerance_accepts_rounding_shortfall():
    chain = ScriptedChain([0.499995])
    sleeper = RecordingSleeper()

    observed = asyncio.run(make_poller(chain, sleeper).await_balance("w1", 0.5))

    assert observed == 0.499995
    assert sleeper.delays == []


def test_gives_up_after_max_attempts_with_last_observed():
    chain = ScriptedChain([0.1, 0.2, 0.3])
    sleeper = RecordingSleeper()

    observed = asyncio.run(make_poller(chain, sleeper, max_attempts=3).await_balance("w1", 1.0))

    assert observed == 0.3
    assert chain.reads == 3
    # no wait after the final attempt
    assert sleeper.delays == [2, 4]


def test_read_errors_count_as_attempts():
    chain = ScriptedChain([UpstreamUnavailable("down")] * 4)
    sleeper = RecordingSleeper()

    observed = asyncio.run(make_poller(chain, sleeper, max_attempts=4).await_balance("w1", 1.0))

    assert observed is None
    assert chain.reads == 4


def test_recovers_after_transient_read_error():
    chain = ScriptedChain([UpstreamUnavailable("down"), 1.0])
    sleeper = RecordingSleeper()

    observed = asyncio.run(make_poller(chain, sleeper).await_balance("w1", 1.0))

    assert observed == 1.0
    assert chain.reads == 2
