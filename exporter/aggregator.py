"""
aggregator.py - One polling cycle, from RPC reads to a flat metric list.

Order of work in a cycle:
  1. ledger snapshot (epoch info, vote accounts, nodes, transaction count)
  2. epoch transition check; on a transition, scrape rewards and commit
  3. APY engine reload for the latest completed epoch
  4. concurrent sub-fetches: average slot time, leader slots, node
     balances, geolocation
  5. samples assembled and sorted

A failing group is left out of the cycle; the rest is still emitted. The
caller publishes the returned snapshot as a whole.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, NamedTuple, Optional, Tuple

from exporter.errors import (
    ConfigurationMissing,
    CorruptPersistentState,
    IncompleteEpochScrape,
    TransientIO,
)
from exporter.geolocation import group_by_datacenter, group_by_isp

if TYPE_CHECKING:
    from exporter.apy import ApyEngine
    from exporter.epochs import EpochBoundaryDetector
    from exporter.geolocation import GeolocationCache
    from exporter.identity_filter import IdentityFilter
    from exporter.rewards import EpochRewardLedger
    from exporter.rpc import ClusterNode, EpochInfo, VoteAccount
    from exporter.slots import SkippedSlotTracker
    from exporter.snapshot import LedgerSnapshot, LedgerSnapshotReader

logger = logging.getLogger("aggregator")

PUBKEY_LABEL = "pubkey"
STATUS_LABEL = "status"


class Sample(NamedTuple):
    name: str
    labels: Tuple[Tuple[str, str], ...]
    value: float


def sample(name: str, value, **labels) -> Sample:
    return Sample(name, tuple(sorted(labels.items())), float(value))


@dataclass
class CycleSnapshot:
    samples: List[Sample] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0
    epoch: Optional[int] = None
    last_processed_epoch: Optional[int] = None
    scraped_epoch: Optional[int] = None
    omitted: List[str] = field(default_factory=list)

    def by_name(self, name: str) -> Dict[Tuple[Tuple[str, str], ...], float]:
        return {s.labels: s.value for s in self.samples if s.name == name}

    def value(self, name: str, **labels) -> Optional[float]:
        return self.by_name(name).get(tuple(sorted(labels.items())))


class MetricAggregator:
    def __init__(
        self,
        reader: "LedgerSnapshotReader",
        detector: "EpochBoundaryDetector",
        ledger: "EpochRewardLedger",
        apy: "ApyEngine",
        geolocation: "GeolocationCache",
        slots: "SkippedSlotTracker",
        clock: Callable[[], float] = time.time,
    ):
        self._reader = reader
        self._detector = detector
        self._ledger = ledger
        self._apy = apy
        self._geo = geolocation
        self._slots = slots
        self._clock = clock
        self._geo_disabled_logged = False

    async def collect(self, identity_filter: "IdentityFilter") -> CycleSnapshot:
        cycle = CycleSnapshot(started_at=self._clock())
        snap = await self._reader.read()
        cycle.omitted.extend(sorted(snap.errors))
        epoch_info = snap.epoch_info

        if epoch_info is not None:
            cycle.epoch = epoch_info.epoch
            cycle.scraped_epoch = await self._process_epoch(epoch_info, identity_filter)

        marker = await self._detector.last_processed_epoch()
        cycle.last_processed_epoch = marker
        if marker is not None:
            await self._apy.refresh(marker - 1)

        jobs = {}
        if epoch_info is not None:
            jobs["slot_time"] = self._reader.average_slot_time(epoch_info)
            jobs["leader_slots"] = self._slots.update(epoch_info, identity_filter)
        if snap.nodes is not None and identity_filter.is_restricted:
            jobs["balances"] = self._node_balances(snap.nodes, identity_filter)
        if snap.nodes is not None and snap.vote_accounts is not None:
            if self._geo.enabled:
                jobs["geolocation"] = self._geolocate(snap.nodes, snap.vote_accounts, identity_filter)
            elif not self._geo_disabled_logged:
                logger.info("Geolocation not configured; datacenter and ISP metrics omitted")
                self._geo_disabled_logged = True

        results = await asyncio.gather(*(self._guard(name, job) for name, job in jobs.items()))
        fetched = {}
        for name, (ok, value) in zip(jobs, results):
            if ok:
                fetched[name] = value
            else:
                cycle.omitted.append(name)

        samples: List[Sample] = []
        if epoch_info is not None:
            samples += self._epoch_samples(epoch_info, snap, fetched.get("slot_time"))
        if snap.vote_accounts is not None:
            samples += self._vote_samples(snap.vote_accounts, identity_filter)
        samples += self._reward_samples(identity_filter)
        if snap.nodes is not None:
            samples += self._node_samples(snap.nodes, identity_filter, fetched.get("balances"))
        if "geolocation" in fetched:
            samples += self._geo_samples(fetched["geolocation"])
        if "leader_slots" in fetched:
            samples += self._slot_samples(fetched["leader_slots"], identity_filter)

        cycle.samples = sorted(samples)
        cycle.finished_at = self._clock()
        return cycle

    # -------------------------------------------------------------------
    # Epoch transition
    # -------------------------------------------------------------------

    async def _process_epoch(self, epoch_info: "EpochInfo", identity_filter: "IdentityFilter") -> Optional[int]:
        """Scrape and commit rewards if a new epoch began. Returns the recorded epoch."""
        try:
            transition = await self._detector.check(epoch_info)
            if transition is None:
                return None
            records = await self._ledger.scrape(transition, identity_filter)
        except IncompleteEpochScrape as e:
            logger.warning("Reward scrape deferred to next cycle: %s", e)
            return None
        except TransientIO as e:
            logger.warning("Epoch transition check failed: %s", e)
            return None
        except CorruptPersistentState:
            raise
        except Exception:
            logger.exception("Reward scrape failed; marker left at previous epoch")
            return None
        await self._detector.commit(transition, records)
        return transition.completed_epoch

    # -------------------------------------------------------------------
    # Sub-fetches
    # -------------------------------------------------------------------

    async def _guard(self, name: str, job) -> Tuple[bool, object]:
        try:
            return True, await job
        except (TransientIO, ConfigurationMissing) as e:
            logger.warning("Metric group %s omitted this cycle: %s", name, e)
        except CorruptPersistentState:
            raise
        except Exception:
            logger.exception("Metric group %s failed", name)
        return False, None

    async def _node_balances(self, nodes: List["ClusterNode"], identity_filter: "IdentityFilter") -> Dict[str, int]:
        pubkeys = sorted({n.pubkey for n in nodes if identity_filter.is_included(n.pubkey)})
        balances = await asyncio.gather(*(self._reader.rpc.get_balance(p) for p in pubkeys))
        return dict(zip(pubkeys, balances))

    async def _geolocate(
        self,
        nodes: List["ClusterNode"],
        vote_accounts: List["VoteAccount"],
        identity_filter: "IdentityFilter",
    ) -> list:
        active = {v.node_pubkey: v for v in vote_accounts if not v.delinquent}
        validators = []
        for node in nodes:
            vote = active.get(node.pubkey)
            if vote is None or not identity_filter.is_included(node.pubkey):
                continue
            if node.address is None:
                logger.debug("Validator node %s has no address", node.pubkey)
                continue
            validators.append((node.address, vote.activated_stake))

        resolved = await self._geo.resolve_many(addr for addr, _ in validators)
        return [(resolved[addr], stake) for addr, stake in validators if resolved.get(addr)]

    # -------------------------------------------------------------------
    # Sample builders
    # -------------------------------------------------------------------

    def _epoch_samples(self, info: "EpochInfo", snap: "LedgerSnapshot", slot_time: Optional[float]) -> List[Sample]:
        samples = [
            sample("solana_current_epoch", info.epoch),
            sample("solana_current_epoch_first_slot", info.first_slot),
            sample("solana_current_epoch_last_slot", info.last_slot),
            sample("solana_slot_height", info.absolute_slot),
        ]
        if snap.transaction_count is not None:
            samples.append(sample("solana_transaction_count", snap.transaction_count))
        if slot_time is not None:
            samples.append(sample("solana_average_slot_time", slot_time))
        return samples

    def _vote_samples(self, vote_accounts: List["VoteAccount"], identity_filter: "IdentityFilter") -> List[Sample]:
        included = identity_filter.select(vote_accounts, key=lambda v: v.vote_pubkey)
        delinquent = sum(1 for v in included if v.delinquent)
        samples = [
            sample("solana_active_validators", len(included) - delinquent, **{STATUS_LABEL: "current"}),
            sample("solana_active_validators", delinquent, **{STATUS_LABEL: "delinquent"}),
        ]
        for v in included:
            labels = {PUBKEY_LABEL: v.vote_pubkey}
            samples += [
                sample("solana_validator_delinquent", 1 if v.delinquent else 0, **labels),
                sample("solana_validator_activated_stake", v.activated_stake, **labels),
                sample("solana_validator_last_vote", v.last_vote, **labels),
                sample("solana_validator_root_slot", v.root_slot, **labels),
                sample("solana_staking_commission", v.commission, **labels),
            ]
        return samples

    def _reward_samples(self, identity_filter: "IdentityFilter") -> List[Sample]:
        samples = []
        for identity in identity_filter.select(self._apy.identities(), key=lambda i: i):
            labels = {PUBKEY_LABEL: identity}
            current = self._apy.current_apy(identity)
            if current is not None:
                samples.append(sample("solana_current_staking_apy", current, **labels))
            average = self._apy.average_apy(identity)
            if average is not None:
                samples.append(sample("solana_average_staking_apy", average, **labels))
            rewards = self._apy.cumulative_rewards(identity)
            if rewards is not None:
                samples.append(sample("solana_validator_rewards", rewards, **labels))
        return samples

    def _node_samples(
        self,
        nodes: List["ClusterNode"],
        identity_filter: "IdentityFilter",
        balances: Optional[Dict[str, int]],
    ) -> List[Sample]:
        included = identity_filter.select(nodes, key=lambda n: n.pubkey)
        versions = Counter(n.version or "unknown" for n in included)
        samples = [sample("solana_nodes", len(included))]
        samples += [sample("solana_node_versions", count, version=version) for version, count in versions.items()]
        for pubkey, balance in (balances or {}).items():
            samples.append(sample("solana_node_pubkey_balances", balance, **{PUBKEY_LABEL: pubkey}))
        return samples

    def _geo_samples(self, entries: list) -> List[Sample]:
        samples = []
        for dc, totals in group_by_datacenter(entries).items():
            samples.append(sample("solana_active_validators_dc_count", totals.count, dc_identifier=dc))
            samples.append(sample("solana_active_validators_dc_stake", totals.stake, dc_identifier=dc))
        for isp, totals in group_by_isp(entries).items():
            samples.append(sample("solana_active_validators_isp_count", totals.count, isp_name=isp))
            samples.append(sample("solana_active_validators_isp_stake", totals.stake, isp_name=isp))
        return samples

    def _slot_samples(self, counts: dict, identity_filter: "IdentityFilter") -> List[Sample]:
        samples = []
        for leader in sorted(counts):
            if not identity_filter.is_included(leader):
                continue
            c = counts[leader]
            samples.append(sample("solana_leader_slots", c.validated, **{PUBKEY_LABEL: leader, STATUS_LABEL: "validated"}))
            samples.append(sample("solana_leader_slots", c.skipped, **{PUBKEY_LABEL: leader, STATUS_LABEL: "skipped"}))
            if c.skipped_percent is not None:
                samples.append(sample("solana_skipped_slot_percent", c.skipped_percent, **{PUBKEY_LABEL: leader}))
        return samples
