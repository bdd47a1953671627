"""
snapshot.py - Ledger snapshot reader.

Reads the point-in-time state of the cluster once per cycle. Each group is
fetched concurrently and independently: a failed group is reported in
`errors` and left as None, the others are still usable.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from exporter.errors import CorruptPersistentState, TransientIO
from exporter.rpc import ClusterNode, EpochInfo, EpochSchedule, VoteAccount

if TYPE_CHECKING:
    from exporter.rpc import LedgerRpcClient

logger = logging.getLogger("snapshot")


@dataclass(frozen=True)
class EpochBoundary:
    epoch: int
    first_slot: int
    last_slot: int
    start_time: Optional[int] = None
    end_time: Optional[int] = None

    @property
    def duration_sec(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None or self.end_time <= self.start_time:
            return None
        return float(self.end_time - self.start_time)


@dataclass
class LedgerSnapshot:
    epoch_info: Optional[EpochInfo] = None
    vote_accounts: Optional[List[VoteAccount]] = None
    nodes: Optional[List[ClusterNode]] = None
    transaction_count: Optional[int] = None
    taken_at: float = field(default_factory=time.time)
    errors: Dict[str, Exception] = field(default_factory=dict)


class LedgerSnapshotReader:
    """Stateless reads against the ledger RPC, plus a cached epoch schedule."""

    def __init__(self, rpc: "LedgerRpcClient", clock: Callable[[], float] = time.time):
        self._rpc = rpc
        self._clock = clock
        self._schedule: Optional[EpochSchedule] = None

    @property
    def rpc(self) -> "LedgerRpcClient":
        return self._rpc

    async def read(self) -> LedgerSnapshot:
        groups = {
            "epoch": self._rpc.get_epoch_info(),
            "vote_accounts": self._rpc.get_vote_accounts(),
            "nodes": self._rpc.get_cluster_nodes(),
            "transaction_count": self._rpc.get_transaction_count(),
        }
        results = await asyncio.gather(*groups.values(), return_exceptions=True)
        snapshot = LedgerSnapshot(taken_at=self._clock())
        for name, result in zip(groups, results):
            if isinstance(result, TransientIO):
                logger.warning("Snapshot group %s unavailable: %s", name, result)
                snapshot.errors[name] = result
                continue
            if isinstance(result, CorruptPersistentState):
                raise result
            if isinstance(result, Exception):
                logger.error("Snapshot group %s failed", name, exc_info=result)
                snapshot.errors[name] = result
                continue
            if isinstance(result, BaseException):
                raise result
            if name == "epoch":
                snapshot.epoch_info = result
            elif name == "vote_accounts":
                snapshot.vote_accounts = result
            elif name == "nodes":
                snapshot.nodes = result
            else:
                snapshot.transaction_count = result
        if snapshot.transaction_count is None and snapshot.epoch_info is not None:
            snapshot.transaction_count = snapshot.epoch_info.transaction_count
        return snapshot

    async def epoch_schedule(self) -> EpochSchedule:
        if self._schedule is None:
            self._schedule = await self._rpc.get_epoch_schedule()
        return self._schedule

    async def first_block_time(self, epoch: int) -> Optional[int]:
        """Block time of the first confirmed block in `epoch`, if produced."""
        schedule = await self.epoch_schedule()
        block = await self._rpc.get_first_block(
            schedule.first_slot_in_epoch(epoch), schedule.last_slot_in_epoch(epoch),
        )
        if block is None:
            return None
        return await self._rpc.get_block_time(block)

    async def epoch_boundary(self, epoch: int) -> EpochBoundary:
        """Slot range of `epoch` and the times of its first and the next epoch's first block."""
        schedule = await self.epoch_schedule()
        start_time, end_time = await asyncio.gather(
            self.first_block_time(epoch), self.first_block_time(epoch + 1),
        )
        return EpochBoundary(
            epoch=epoch,
            first_slot=schedule.first_slot_in_epoch(epoch),
            last_slot=schedule.last_slot_in_epoch(epoch),
            start_time=start_time,
            end_time=end_time,
        )

    async def average_slot_time(self, epoch_info: EpochInfo) -> Optional[float]:
        """Mean seconds per slot so far in the current epoch."""
        if epoch_info.slot_index <= 0:
            return None
        block = await self._rpc.get_first_block(epoch_info.first_slot, epoch_info.last_slot)
        if block is None:
            return None
        block_time = await self._rpc.get_block_time(block)
        if block_time is None:
            return None
        return (self._clock() - block_time) / epoch_info.slot_index
