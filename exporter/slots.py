"""
slots.py - Leader slot tracking.

Counts validated and skipped leader slots per node identity, incrementally:
each cycle only the slots elapsed since the previous cycle are fetched. The
leader schedule is reloaded when the epoch changes. Counts accumulate for
the lifetime of the process.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional

from exporter.identity_filter import IdentityFilter
from exporter.rpc import EpochInfo, leaders_by_slot

if TYPE_CHECKING:
    from exporter.rpc import LedgerRpcClient

logger = logging.getLogger("slots")

SLOT_GET_BLOCK_STEP = 1_000


@dataclass
class LeaderSlotCounts:
    validated: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.validated + self.skipped

    @property
    def skipped_percent(self) -> Optional[float]:
        if self.total == 0:
            return None
        return self.skipped / self.total * 100.0


class SkippedSlotTracker:
    def __init__(self, rpc: "LedgerRpcClient"):
        self._rpc = rpc
        self._epoch: Optional[int] = None
        self._slot_index = 0
        self._leaders: Dict[int, str] = {}
        self._filter = IdentityFilter()
        self.counts: Dict[str, LeaderSlotCounts] = {}

    async def update(self, epoch_info: EpochInfo, identity_filter: IdentityFilter) -> Dict[str, LeaderSlotCounts]:
        if self._epoch != epoch_info.epoch or self._filter != identity_filter:
            schedule = await self._rpc.get_leader_schedule()
            leaders = {
                slot: leader for slot, leader in leaders_by_slot(schedule).items()
                if identity_filter.is_included(leader)
            }
            if self._epoch != epoch_info.epoch:
                # New epoch: start from its first slot
                self._slot_index = 0
            self._leaders = leaders
            self._epoch = epoch_info.epoch
            self._filter = identity_filter
            logger.debug("Leader schedule loaded for epoch %d: %d slots", epoch_info.epoch, len(leaders))
        elif self._slot_index == epoch_info.slot_index:
            return self.counts

        first_slot = epoch_info.first_slot
        range_start, range_end = self._slot_index, epoch_info.slot_index
        confirmed = set()
        for start in range(first_slot + range_start, first_slot + range_end, SLOT_GET_BLOCK_STEP):
            end = min(first_slot + range_end - 1, start + SLOT_GET_BLOCK_STEP - 1)
            confirmed.update(await self._rpc.get_blocks(start, end))

        for slot_in_epoch in range(range_start, range_end):
            leader = self._leaders.get(slot_in_epoch)
            if leader is None:
                continue
            counts = self.counts.setdefault(leader, LeaderSlotCounts())
            if first_slot + slot_in_epoch in confirmed:
                counts.validated += 1
            else:
                counts.skipped += 1

        self._slot_index = range_end
        logger.debug("Leader slots counted for %d..%d", first_slot + range_start, first_slot + range_end - 1)
        return self.counts
