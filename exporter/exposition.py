"""
exposition.py - Prometheus text exposition of the latest cycle.

The polling loop publishes a finished CycleSnapshot; scrapes render whatever
snapshot is current. Publishing swaps a single reference, so a scrape never
sees half of one cycle and half of another.
"""

import logging
from typing import Dict, Iterator, Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily

from exporter.aggregator import CycleSnapshot

logger = logging.getLogger("exposition")

METRICS: Dict[str, str] = {
    "solana_active_validators": "Total number of active validators by state",
    "solana_active_validators_dc_count": "Number of active validators grouped by datacenter",
    "solana_active_validators_dc_stake": "Activated stake of active validators grouped by datacenter",
    "solana_active_validators_isp_count": "Number of active validators grouped by ISP",
    "solana_active_validators_isp_stake": "Activated stake of active validators grouped by ISP",
    "solana_average_slot_time": "Average slot time in seconds over the current epoch",
    "solana_average_staking_apy": "Average staking APY over the trailing epoch window",
    "solana_current_epoch": "Current epoch",
    "solana_current_epoch_first_slot": "Current epoch's first slot",
    "solana_current_epoch_last_slot": "Current epoch's last slot",
    "solana_current_staking_apy": "Staking APY of the most recent completed epoch",
    "solana_leader_slots": "Validated and skipped leader slots per validator",
    "solana_node_pubkey_balances": "Balance of node identity accounts in lamports",
    "solana_node_versions": "Number of cluster nodes per software version",
    "solana_nodes": "Number of nodes in the cluster",
    "solana_skipped_slot_percent": "Percentage of skipped leader slots per validator",
    "solana_slot_height": "Current slot height",
    "solana_staking_commission": "Commission charged by the validator",
    "solana_transaction_count": "Total number of confirmed transactions since genesis",
    "solana_validator_activated_stake": "Activated stake per validator",
    "solana_validator_delinquent": "Whether a validator is delinquent",
    "solana_validator_last_vote": "Last voted slot per validator",
    "solana_validator_rewards": "Vote account balance after the latest epoch's voting reward",
    "solana_validator_root_slot": "Root slot per validator",
}


class MetricsStore:
    """Holds the most recently published cycle."""

    def __init__(self):
        self._latest: Optional[CycleSnapshot] = None
        self.published_cycles = 0

    def publish(self, cycle: CycleSnapshot):
        self._latest = cycle
        self.published_cycles += 1

    def latest(self) -> Optional[CycleSnapshot]:
        return self._latest


class SnapshotCollector:
    """prometheus_client collector over the store's current snapshot."""

    def __init__(self, store: MetricsStore):
        self._store = store

    def collect(self) -> Iterator[GaugeMetricFamily]:
        cycle = self._store.latest()
        if cycle is None:
            return
        families: Dict[str, GaugeMetricFamily] = {}
        for s in cycle.samples:
            family = families.get(s.name)
            if family is None:
                label_names = [k for k, _ in s.labels]
                family = GaugeMetricFamily(s.name, METRICS.get(s.name, s.name), labels=label_names)
                families[s.name] = family
            family.add_metric([v for _, v in s.labels], s.value)
        yield from families.values()


def build_registry(store: MetricsStore) -> CollectorRegistry:
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SnapshotCollector(store))
    return registry


def render(registry: CollectorRegistry) -> bytes:
    return generate_latest(registry)


__all__ = ["CONTENT_TYPE_LATEST", "METRICS", "MetricsStore", "SnapshotCollector", "build_registry", "render"]
