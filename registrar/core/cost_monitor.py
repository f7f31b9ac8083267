import asyncio
import time

from .errors import ChainError
from .models import CostSnapshot, rao_to_tao
from ..utils.logger import setup_logger

logger = setup_logger('registrar.cost_monitor', 'logs/registrar.log')

class CostMonitor:
    """Read-only view of a subnet's recycle cost.

    Failures are raised to the caller untouched; retrying is the engine's job.
    """

    def __init__(self, chain):
        self.chain = chain

    def read(self, netuid: int) -> CostSnapshot:
        started = time.monotonic()
        block = self.chain.get_current_block()
        cost = self.chain.query_recycle_cost(netuid, block=block)
        elapsed = time.monotonic() - started

        snapshot = CostSnapshot(netuid=netuid, recycle_cost=int(cost), observed_at_block=int(block))
        logger.info(
            f"Recycle cost for netuid {netuid} at block {snapshot.observed_at_block}: "
            f"{snapshot.recycle_cost} rao (TAO {rao_to_tao(snapshot.recycle_cost):.9f}), query took {elapsed:.3f}s"
        )
        return snapshot

    async def poll(self, netuid: int) -> CostSnapshot:
        try:
            return await asyncio.to_thread(self.read, netuid)
        except ChainError as e:
            logger.warning(f"Failed to read recycle cost for netuid {netuid}: {e}")
            raise
