"""
rpc.py - Ledger JSON-RPC client.

Blocking HTTP via requests, run in the default executor so the polling loop
stays responsive. Every network or RPC failure surfaces as TransientIO.
"""

import asyncio
import functools
import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

import requests

from exporter.errors import TransientIO

logger = logging.getLogger("rpc")

# Epoch schedule warmup: the first epoch holds this many slots, doubling
# until first_normal_epoch.
MINIMUM_SLOTS_PER_EPOCH = 32

MULTIPLE_ACCOUNTS_CHUNK = 100

# Block / slot not available (skipped, not yet confirmed, or pruned)
_UNAVAILABLE_BLOCK_CODES = {-32004, -32007, -32009, -32014}


@dataclass(frozen=True)
class EpochInfo:
    epoch: int
    slot_index: int
    slots_in_epoch: int
    absolute_slot: int
    block_height: int = 0
    transaction_count: Optional[int] = None

    @property
    def first_slot(self) -> int:
        return self.absolute_slot - self.slot_index

    @property
    def last_slot(self) -> int:
        return self.first_slot + self.slots_in_epoch - 1


@dataclass(frozen=True)
class EpochSchedule:
    slots_per_epoch: int
    leader_schedule_slot_offset: int = 0
    warmup: bool = False
    first_normal_epoch: int = 0
    first_normal_slot: int = 0

    def slots_in_epoch(self, epoch: int) -> int:
        if self.warmup and epoch < self.first_normal_epoch:
            return MINIMUM_SLOTS_PER_EPOCH * 2 ** epoch
        return self.slots_per_epoch

    def first_slot_in_epoch(self, epoch: int) -> int:
        if self.warmup and epoch <= self.first_normal_epoch:
            return (2 ** epoch - 1) * MINIMUM_SLOTS_PER_EPOCH
        return (epoch - self.first_normal_epoch) * self.slots_per_epoch + self.first_normal_slot

    def last_slot_in_epoch(self, epoch: int) -> int:
        return self.first_slot_in_epoch(epoch) + self.slots_in_epoch(epoch) - 1


@dataclass(frozen=True)
class VoteAccount:
    vote_pubkey: str
    node_pubkey: str
    activated_stake: int
    commission: int
    last_vote: int
    root_slot: int
    delinquent: bool


@dataclass(frozen=True)
class ClusterNode:
    pubkey: str
    gossip: Optional[str] = None
    tpu: Optional[str] = None
    rpc: Optional[str] = None
    version: Optional[str] = None

    @property
    def address(self) -> Optional[str]:
        """IP address of the node: TPU socket, else gossip, else RPC."""
        socket = self.tpu or self.gossip or self.rpc
        if not socket:
            return None
        host, sep, _ = socket.rpartition(":")
        if not sep:
            return None
        return host.strip("[]") or None


@dataclass(frozen=True)
class RewardEntry:
    """A reward paid at an epoch boundary, attributed to a vote identity.

    For staking rewards `source` is the stake account that received the
    reward; for voting rewards it is the vote account itself.
    """
    identity: str
    reward_type: str
    lamports: int
    post_balance: int
    source: str


class LedgerRpcClient:
    """Thin async wrapper over the cluster's JSON-RPC API."""

    def __init__(self, url: str, timeout: float = 30.0, commitment: str = "confirmed"):
        self.url = url
        self.timeout = timeout
        self.commitment = commitment
        self._session = requests.Session()
        self._ids = itertools.count(1)

    def close(self):
        self._session.close()

    # -------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------

    def _call(self, method: str, params: Optional[list] = None):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            payload["params"] = params
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.exceptions.RequestException as e:
            raise TransientIO(f"{method}: {e}") from e
        except ValueError as e:
            raise TransientIO(f"{method}: invalid JSON response") from e
        if "error" in body:
            err = body["error"] or {}
            raise RpcError(method, err.get("code"), err.get("message", ""))
        return body.get("result")

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def call(self, method: str, params: Optional[list] = None):
        return await self._run(self._call, method, params)

    # -------------------------------------------------------------------
    # Point-in-time reads
    # -------------------------------------------------------------------

    async def get_epoch_info(self) -> EpochInfo:
        r = await self.call("getEpochInfo", [{"commitment": self.commitment}])
        return EpochInfo(
            epoch=r["epoch"],
            slot_index=r["slotIndex"],
            slots_in_epoch=r["slotsInEpoch"],
            absolute_slot=r["absoluteSlot"],
            block_height=r.get("blockHeight", 0),
            transaction_count=r.get("transactionCount"),
        )

    async def get_epoch_schedule(self) -> EpochSchedule:
        r = await self.call("getEpochSchedule")
        return EpochSchedule(
            slots_per_epoch=r["slotsPerEpoch"],
            leader_schedule_slot_offset=r.get("leaderScheduleSlotOffset", 0),
            warmup=r.get("warmup", False),
            first_normal_epoch=r.get("firstNormalEpoch", 0),
            first_normal_slot=r.get("firstNormalSlot", 0),
        )

    async def get_vote_accounts(self) -> List[VoteAccount]:
        r = await self.call("getVoteAccounts", [{"commitment": self.commitment}])
        accounts = []
        for status, delinquent in (("current", False), ("delinquent", True)):
            for v in r.get(status, []):
                accounts.append(VoteAccount(
                    vote_pubkey=v["votePubkey"],
                    node_pubkey=v["nodePubkey"],
                    activated_stake=v.get("activatedStake", 0),
                    commission=v.get("commission", 0),
                    last_vote=v.get("lastVote", 0),
                    root_slot=v.get("rootSlot", 0),
                    delinquent=delinquent,
                ))
        return accounts

    async def get_cluster_nodes(self) -> List[ClusterNode]:
        r = await self.call("getClusterNodes")
        return [
            ClusterNode(
                pubkey=n["pubkey"],
                gossip=n.get("gossip"),
                tpu=n.get("tpu"),
                rpc=n.get("rpc"),
                version=n.get("version"),
            )
            for n in r
        ]

    async def get_transaction_count(self) -> int:
        return await self.call("getTransactionCount", [{"commitment": self.commitment}])

    async def get_balance(self, pubkey: str) -> int:
        r = await self.call("getBalance", [pubkey, {"commitment": self.commitment}])
        return r["value"]

    async def get_block_time(self, slot: int) -> Optional[int]:
        try:
            return await self.call("getBlockTime", [slot])
        except RpcError as e:
            if e.code in _UNAVAILABLE_BLOCK_CODES:
                return None
            raise

    async def get_blocks(self, start_slot: int, end_slot: int) -> List[int]:
        return await self.call("getBlocks", [start_slot, end_slot, {"commitment": self.commitment}])

    async def get_first_block(self, first_slot: int, last_slot: int) -> Optional[int]:
        """First confirmed block in [first_slot, last_slot], or None if none yet."""
        blocks = await self.call(
            "getBlocksWithLimit", [first_slot, 1, {"commitment": self.commitment}]
        )
        if blocks and blocks[0] <= last_slot:
            return blocks[0]
        return None

    async def get_leader_schedule(self) -> Dict[str, List[int]]:
        r = await self.call("getLeaderSchedule", [None, {"commitment": self.commitment}])
        return r or {}

    # -------------------------------------------------------------------
    # Rewards
    # -------------------------------------------------------------------

    async def get_multiple_accounts(self, pubkeys: List[str]) -> List[Optional[dict]]:
        """jsonParsed account data in request order; None for missing accounts."""
        accounts: List[Optional[dict]] = []
        for i in range(0, len(pubkeys), MULTIPLE_ACCOUNTS_CHUNK):
            chunk = pubkeys[i:i + MULTIPLE_ACCOUNTS_CHUNK]
            logger.debug("Getting %d accounts", len(chunk))
            r = await self.call(
                "getMultipleAccounts",
                [chunk, {"encoding": "jsonParsed", "commitment": self.commitment}],
            )
            values = (r or {}).get("value") or []
            accounts.extend(values + [None] * (len(chunk) - len(values)))
        return accounts

    async def get_stake_voters(self, stake_pubkeys: List[str]) -> Dict[str, str]:
        """Map stake accounts to the vote account they delegate to."""
        voters: Dict[str, str] = {}
        accounts = await self.get_multiple_accounts(stake_pubkeys)
        for pubkey, account in zip(stake_pubkeys, accounts):
            voter = _delegated_voter(account)
            if voter:
                voters[pubkey] = voter
        return voters

    async def get_rewards_for_slot_range(
        self,
        first_slot: int,
        last_slot: int,
        identities: Optional[Set[str]] = None,
    ) -> Optional[List[RewardEntry]]:
        """Rewards paid in the first block of the slot range.

        Returns None when no block has been produced in the range yet. When
        `identities` is given only rewards attributed to those vote accounts
        are returned.
        """
        slot = await self.get_first_block(first_slot, last_slot)
        if slot is None:
            return None
        block = await self.call("getBlock", [slot, {
            "encoding": "json",
            "transactionDetails": "none",
            "rewards": True,
            "maxSupportedTransactionVersion": 0,
            "commitment": self.commitment,
        }])
        rewards = (block or {}).get("rewards") or []
        staking = [r["pubkey"] for r in rewards if r.get("rewardType") == "Staking"]
        voters = await self.get_stake_voters(staking) if staking else {}

        entries = []
        for r in rewards:
            kind = r.get("rewardType")
            if kind == "Voting":
                identity = r["pubkey"]
            elif kind == "Staking":
                identity = voters.get(r["pubkey"])
                if identity is None:
                    continue
            else:
                continue
            if identities is not None and identity not in identities:
                continue
            entries.append(RewardEntry(
                identity=identity,
                reward_type=kind.lower(),
                lamports=r.get("lamports", 0),
                post_balance=r.get("postBalance", 0),
                source=r["pubkey"],
            ))
        logger.debug("Slot %d: %d rewards, %d attributed", slot, len(rewards), len(entries))
        return entries


class RpcError(TransientIO):
    """JSON-RPC level error returned by the node."""

    def __init__(self, method: str, code: Optional[int], message: str):
        super().__init__(f"{method}: RPC error {code}: {message}")
        self.method = method
        self.code = code


def _delegated_voter(account: Optional[dict]) -> Optional[str]:
    if not account:
        return None
    data = account.get("data")
    if not isinstance(data, dict):
        return None
    parsed = data.get("parsed") or {}
    if parsed.get("type") != "delegated":
        return None
    delegation = ((parsed.get("info") or {}).get("stake") or {}).get("delegation") or {}
    return delegation.get("voter")


def leaders_by_slot(schedule: Dict[str, Iterable[int]]) -> Dict[int, str]:
    """Invert a leader schedule into slot index -> leader identity."""
    result: Dict[int, str] = {}
    for pubkey, slots in schedule.items():
        for slot in slots:
            result[slot] = pubkey
    return result
