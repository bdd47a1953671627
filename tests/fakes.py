"""
fakes.py - In-process stand-ins for the ledger RPC and the MaxMind client.

Both record their calls so tests can assert on how often the exporter went
to the network.
"""

from typing import Dict, List, Optional

from exporter.errors import NotConfigured, TransientIO
from exporter.geolocation import GeoInfo
from exporter.rpc import ClusterNode, EpochInfo, EpochSchedule, RewardEntry, VoteAccount

SLOTS_PER_EPOCH = 432

VOTE_A = "VoteA1111111111111111111111111111111111111"
VOTE_B = "VoteB1111111111111111111111111111111111111"
VOTE_C = "VoteC1111111111111111111111111111111111111"
NODE_A = "NodeA1111111111111111111111111111111111111"
NODE_B = "NodeB1111111111111111111111111111111111111"
NODE_C = "NodeC1111111111111111111111111111111111111"


def epoch_info(epoch: int, slot_index: int = 200, slots_in_epoch: int = SLOTS_PER_EPOCH) -> EpochInfo:
    return EpochInfo(
        epoch=epoch,
        slot_index=slot_index,
        slots_in_epoch=slots_in_epoch,
        absolute_slot=epoch * slots_in_epoch + slot_index,
        block_height=epoch * slots_in_epoch + slot_index - 7,
        transaction_count=1_000_000 + epoch,
    )


def staking(identity: str, lamports: int, stake: int, source: str = "") -> RewardEntry:
    """Staking reward of `lamports` on a stake account holding `stake` before the reward."""
    return RewardEntry(identity, "staking", lamports, stake + lamports, source or f"stake-{identity}")


def voting(identity: str, lamports: int, post_balance: int) -> RewardEntry:
    return RewardEntry(identity, "voting", lamports, post_balance, identity)


class FakeRpc:
    """Scriptable ledger RPC."""

    def __init__(self, epoch: int = 10, slot_index: int = 200):
        self.info = epoch_info(epoch, slot_index)
        self.schedule = EpochSchedule(slots_per_epoch=SLOTS_PER_EPOCH)
        self.vote_accounts: List[VoteAccount] = []
        self.nodes: List[ClusterNode] = []
        self.transaction_count: Optional[int] = 5_000_000
        self.balances: Dict[str, int] = {}
        self.block_times: Dict[int, int] = {}
        self.rewards: Dict[int, List[RewardEntry]] = {}
        self.leader_schedule: Dict[str, List[int]] = {}
        self.skipped_slots: set = set()
        self.failing: set = set()
        self.calls: List[str] = []
        self.closed = False

    def set_epoch(self, epoch: int, slot_index: int = 200):
        self.info = epoch_info(epoch, slot_index)

    def _enter(self, method: str):
        self.calls.append(method)
        if method in self.failing:
            raise TransientIO(f"{method}: connection refused")

    def count(self, method: str) -> int:
        return self.calls.count(method)

    async def get_epoch_info(self) -> EpochInfo:
        self._enter("getEpochInfo")
        return self.info

    async def get_epoch_schedule(self) -> EpochSchedule:
        self._enter("getEpochSchedule")
        return self.schedule

    async def get_vote_accounts(self) -> List[VoteAccount]:
        self._enter("getVoteAccounts")
        return list(self.vote_accounts)

    async def get_cluster_nodes(self) -> List[ClusterNode]:
        self._enter("getClusterNodes")
        return list(self.nodes)

    async def get_transaction_count(self) -> int:
        self._enter("getTransactionCount")
        return self.transaction_count

    async def get_balance(self, pubkey: str) -> int:
        self._enter("getBalance")
        return self.balances.get(pubkey, 0)

    async def get_first_block(self, first_slot: int, last_slot: int) -> Optional[int]:
        self._enter("getBlocksWithLimit")
        for slot in range(first_slot, last_slot + 1):
            if slot in self.block_times:
                return slot
        return None

    async def get_block_time(self, slot: int) -> Optional[int]:
        self._enter("getBlockTime")
        return self.block_times.get(slot)

    async def get_blocks(self, start_slot: int, end_slot: int) -> List[int]:
        self._enter("getBlocks")
        return [s for s in range(start_slot, end_slot + 1) if s not in self.skipped_slots]

    async def get_leader_schedule(self) -> Dict[str, List[int]]:
        self._enter("getLeaderSchedule")
        return self.leader_schedule

    async def get_rewards_for_slot_range(self, first_slot, last_slot, identities=None):
        self._enter("getBlock")
        slot = await self.get_first_block(first_slot, last_slot)
        if slot is None:
            return None
        entries = self.rewards.get(slot, [])
        if identities is not None:
            entries = [e for e in entries if e.identity in identities]
        return list(entries)

    def pay_rewards(self, epoch: int, entries: List[RewardEntry], block_time: int = 0):
        """Produce the first block of `epoch` carrying the rewards for epoch - 1."""
        slot = self.schedule.first_slot_in_epoch(epoch)
        self.block_times[slot] = block_time or epoch * 3 * 86400
        self.rewards[slot] = entries

    def close(self):
        self.closed = True


class FakeLookup:
    """Stand-in for MaxMindClient with a fixed address table."""

    def __init__(self, table: Optional[Dict[str, GeoInfo]] = None, configured: bool = True):
        self.table = dict(table or {})
        self._configured = configured
        self.fail_with: Optional[Exception] = None
        self.lookups: List[str] = []
        self.closed = False

    @property
    def configured(self) -> bool:
        return self._configured

    async def lookup(self, address: str) -> GeoInfo:
        self.lookups.append(address)
        if not self._configured:
            raise NotConfigured("no MaxMind credentials configured")
        if self.fail_with is not None:
            raise self.fail_with
        if address not in self.table:
            raise TransientIO(f"MaxMind lookup {address}: HTTP 404")
        return self.table[address]

    def close(self):
        self.closed = True


class FixedClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


EPOCH_SECONDS = 2 * 86400

GEO_TABLE = {
    "10.0.0.1": GeoInfo(as_number=14618, country_code="US", city="Ashburn", isp="Amazon"),
    "10.0.0.3": GeoInfo(as_number=15169, country_code="BE", city="Brussels", isp="Google"),
    "10.0.0.2": GeoInfo(as_number=14618, country_code="US", isp="Amazon"),
}


def seed_cluster(rpc: FakeRpc) -> FakeRpc:
    """Three validators (C delinquent), leader slots, and rewards paid for epoch 9."""
    rpc.vote_accounts = [
        VoteAccount(VOTE_A, NODE_A, 100_000, 5, 4_500, 4_400, False),
        VoteAccount(VOTE_B, NODE_B, 50_000, 10, 4_499, 4_380, False),
        VoteAccount(VOTE_C, NODE_C, 10_000, 100, 3_000, 2_900, True),
    ]
    rpc.nodes = [
        ClusterNode(NODE_A, gossip="10.0.0.1:8001", tpu="10.0.0.1:8003", version="1.18.22"),
        ClusterNode(NODE_B, gossip="10.0.0.3:8001", version="1.18.22"),
        ClusterNode(NODE_C, gossip="10.0.0.2:8001", version="1.17.34"),
    ]
    rpc.balances = {NODE_A: 2_500_000_000, NODE_B: 900_000_000}
    rpc.leader_schedule = {NODE_A: [0, 1, 2, 3], NODE_B: [4, 5, 6, 7]}
    rpc.skipped_slots = {rpc.info.first_slot + 5}
    rpc.block_times[rpc.schedule.first_slot_in_epoch(9)] = 9 * EPOCH_SECONDS
    rpc.pay_rewards(10, [
        staking(VOTE_A, 1_000, 1_000_000),
        voting(VOTE_A, 25, 8_000),
        staking(VOTE_B, 400, 2_000_000),
        staking(VOTE_C, 90, 500_000),
    ], block_time=10 * EPOCH_SECONDS)
    return rpc
