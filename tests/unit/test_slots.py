"""
test_slots.py - Unit tests for incremental leader slot tracking.
"""

import pytest

from exporter.identity_filter import IdentityFilter
from exporter.slots import LeaderSlotCounts, SkippedSlotTracker
from fakes import NODE_A, NODE_B



@pytest.fixture
def tracker(rpc):
    rpc.leader_schedule = {NODE_A: [0, 1, 2, 3, 100, 101], NODE_B: [4, 5, 6, 7, 102]}
    first = rpc.info.first_slot
    rpc.skipped_slots = {first + 2, first + 5, first + 6}
    return SkippedSlotTracker(rpc)


@pytest.mark.asyncio
class TestSkippedSlotTracker:

    async def test_counts_elapsed_slots(self, rpc, tracker):
        rpc.set_epoch(10, slot_index=50)
        counts = await tracker.update(rpc.info, IdentityFilter())
        assert counts[NODE_A] == LeaderSlotCounts(validated=3, skipped=1)
        assert counts[NODE_B] == LeaderSlotCounts(validated=2, skipped=2)
        assert counts[NODE_B].skipped_percent == 50.0

    async def test_incremental_updates(self, rpc, tracker):
        rpc.set_epoch(10, slot_index=50)
        await tracker.update(rpc.info, IdentityFilter())
        fetched = rpc.count("getBlocks")

        await tracker.update(rpc.info, IdentityFilter())
        assert rpc.count("getBlocks") == fetched

        rpc.set_epoch(10, slot_index=103)
        counts = await tracker.update(rpc.info, IdentityFilter())
        assert counts[NODE_A].total == 6
        assert counts[NODE_B].total == 5
        assert rpc.count("getLeaderSchedule") == 1

    async def test_filter_limits_leaders(self, rpc, tracker):
        rpc.set_epoch(10, slot_index=50)
        counts = await tracker.update(rpc.info, IdentityFilter([NODE_A]))
        assert NODE_B not in counts

    async def test_new_epoch_reloads_schedule(self, rpc, tracker):
        rpc.set_epoch(10, slot_index=50)
        await tracker.update(rpc.info, IdentityFilter())
        rpc.set_epoch(11, slot_index=10)
        rpc.skipped_slots = set()
        counts = await tracker.update(rpc.info, IdentityFilter())
        assert rpc.count("getLeaderSchedule") == 2
        # Cumulative across epochs
        assert counts[NODE_A] == LeaderSlotCounts(validated=7, skipped=1)

    async def test_large_range_is_chunked(self, rpc, tracker):
        rpc.info = rpc.info.__class__(
            epoch=10, slot_index=2_500, slots_in_epoch=432_000, absolute_slot=4_320_000 + 2_500,
        )
        await tracker.update(rpc.info, IdentityFilter())
        assert rpc.count("getBlocks") == 3


class TestLeaderSlotCounts:

    def test_empty_counts_have_no_percent(self):
        assert LeaderSlotCounts().skipped_percent is None

    def test_percent(self):
        assert LeaderSlotCounts(validated=3, skipped=1).skipped_percent == 25.0
