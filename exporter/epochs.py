"""
epochs.py - Epoch boundary detection.

The only cross-cycle epoch state is the persisted `last_processed_epoch`
marker. A transition is observed when the cluster's current epoch is past
the marker (or no marker exists yet). Rewards for a completed epoch are paid
at the start of the following one, so a transition into epoch N scrapes the
first slots of N and records them under epoch N - 1.

The marker only moves inside the same transaction that writes the epoch's
reward records, so a crash or cancellation mid-scrape leaves the marker
behind and the scrape is simply repeated.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from exporter.errors import CorruptPersistentState
from exporter.rpc import EpochInfo

if TYPE_CHECKING:
    from exporter.snapshot import EpochBoundary, LedgerSnapshotReader
    from exporter.storage import MetadataRepo, RewardRepo

logger = logging.getLogger("epochs")

# Slots at the start of an epoch searched for the reward-paying block
REWARD_SLOT_OFFSET = 100


@dataclass(frozen=True)
class EpochTransition:
    current_epoch: int
    previous_marker: Optional[int]
    boundary: "EpochBoundary"
    reward_first_slot: int
    reward_last_slot: int

    @property
    def completed_epoch(self) -> int:
        return self.boundary.epoch


class EpochBoundaryDetector:
    def __init__(
        self,
        reader: "LedgerSnapshotReader",
        metadata_repo: "MetadataRepo",
        reward_repo: "RewardRepo",
    ):
        self._reader = reader
        self._metadata = metadata_repo
        self._rewards = reward_repo
        self._pending_commit: Optional[asyncio.Future] = None

    async def last_processed_epoch(self) -> Optional[int]:
        return await self._metadata.get_last_processed_epoch()

    async def check(self, epoch_info: EpochInfo) -> Optional[EpochTransition]:
        """Return the pending transition, or None if this epoch is already processed."""
        marker = await self._metadata.get_last_processed_epoch()
        current = epoch_info.epoch
        if marker is not None and current <= marker:
            return None
        if current == 0:
            return None
        if marker is not None and current - marker > 1:
            logger.warning(
                "Epochs %d..%d were not observed; only epoch %d will be recorded",
                marker, current - 2, current - 1,
            )
        boundary = await self._reader.epoch_boundary(current - 1)
        reward_first = epoch_info.first_slot
        reward_last = min(epoch_info.last_slot, reward_first + REWARD_SLOT_OFFSET - 1)
        logger.info(
            "Epoch transition: marker=%s current=%d completed=%d (slots %d..%d)",
            marker, current, boundary.epoch, boundary.first_slot, boundary.last_slot,
        )
        return EpochTransition(
            current_epoch=current,
            previous_marker=marker,
            boundary=boundary,
            reward_first_slot=reward_first,
            reward_last_slot=reward_last,
        )

    async def commit(self, transition: EpochTransition, records: List[dict]) -> int:
        """Persist the scraped records and advance the marker in one transaction."""
        # Shielded: a cancelled cycle leaves the commit running; wait_for_commit() drains it
        self._pending_commit = asyncio.ensure_future(
            self._rewards.commit_epoch(records, transition.current_epoch)
        )
        try:
            inserted = await asyncio.shield(self._pending_commit)
        except Exception:
            self._pending_commit = None
            raise
        self._pending_commit = None
        logger.info(
            "Epoch %d committed: %d records (%d new), marker -> %d",
            transition.completed_epoch, len(records), inserted, transition.current_epoch,
        )
        return inserted

    async def wait_for_commit(self):
        """Wait for a commit left running by a cancelled cycle."""
        task, self._pending_commit = self._pending_commit, None
        if task is None:
            return
        try:
            await task
        except CorruptPersistentState:
            logger.exception("Pending epoch commit failed during shutdown")
