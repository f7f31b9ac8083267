import time
from types import SimpleNamespace

import pytest

from registrar.core.engine import EngineSettings
from registrar.core.models import ChainEvent, RawSubmissionResult, RegistrationRequest

ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
BOB = "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty"
NETUID = 1

FAST = EngineSettings(
    poll_interval=0,
    min_submit_interval=0,
    inclusion_timeout=5.0,
    block_time=0,
    max_retries=3,
    base_delay=0,
    max_delay=0,
    jitter=0,
)


def registered_event(hotkey: str = ALICE, netuid: int = NETUID, uid: int = 7) -> ChainEvent:
    return ChainEvent(pallet="SubtensorModule", name="NeuronRegistered", attributes=(netuid, uid, hotkey))


def success_result(block_number: int = 12345, hotkey: str = ALICE) -> RawSubmissionResult:
    return RawSubmissionResult.included_with(
        block_hash="0xfeed",
        block_number=block_number,
        events=[ChainEvent("System", "ExtrinsicSuccess"), registered_event(hotkey)],
    )


class FakeChain:
    """Scripted chain client; the last cost and result repeat forever."""

    def __init__(self, costs, results=(), block: int = 100, submit_delay: float = 0.0):
        self.costs = list(costs)
        self.results = list(results)
        self.block = block
        self.submit_delay = submit_delay
        self.calls = []
        self.submissions = []

    def get_current_block(self) -> int:
        self.block += 1
        return self.block

    def query_recycle_cost(self, netuid, block=None):
        cost = self.costs.pop(0) if len(self.costs) > 1 else self.costs[0]
        if isinstance(cost, Exception):
            self.calls.append(("cost_error", str(cost)))
            raise cost
        self.calls.append(("cost", cost))
        return cost

    def submit_registration(self, coldkey, hotkey_ss58, netuid, tip=0):
        self.calls.append(("submit", hotkey_ss58))
        self.submissions.append(SimpleNamespace(hotkey=hotkey_ss58, netuid=netuid, tip=tip, at=time.monotonic()))
        if self.submit_delay:
            time.sleep(self.submit_delay)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if callable(result):
            return result(hotkey_ss58)
        return result


@pytest.fixture
def make_request():
    def _make(hotkey: str = ALICE, max_cost: int = 5_000_000_000, **kwargs) -> RegistrationRequest:
        return RegistrationRequest(
            coldkey=SimpleNamespace(ss58_address="coldkey"),
            hotkey_ss58=hotkey,
            netuid=kwargs.pop("netuid", NETUID),
            max_cost=max_cost,
            **kwargs,
        )
    return _make
