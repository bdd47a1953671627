"""
rewards.py - Epoch reward ledger.

Scrapes the rewards paid at an epoch boundary and folds them into one record
per vote identity:

  amount / stake      one delegated stake account's reward and its balance
                      before the reward; the base of the epoch return
  validator_balance   the vote account's balance after its voting reward

Identities without any reward entry get no record at all. A scrape either
produces the full record set or raises IncompleteEpochScrape; nothing is
written here, the epoch detector commits the result atomically.
"""

import logging
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from exporter.errors import IncompleteEpochScrape, TransientIO
from exporter.rpc import RewardEntry

if TYPE_CHECKING:
    from exporter.epochs import EpochTransition
    from exporter.identity_filter import IdentityFilter
    from exporter.rpc import LedgerRpcClient
    from exporter.storage import RewardRepo

logger = logging.getLogger("rewards")

SECONDS_IN_DAY = 86400

# Used when block times for the epoch boundaries are unavailable
DEFAULT_EPOCH_DURATION_SEC = 3.0 * SECONDS_IN_DAY


def fold_rewards(epoch: int, duration_sec: float, entries: Iterable[RewardEntry]) -> List[dict]:
    """Reduce raw reward entries to at most one record per identity."""
    samples: Dict[str, RewardEntry] = {}
    balances: Dict[str, int] = {}
    for entry in entries:
        if entry.reward_type == "voting":
            balances[entry.identity] = entry.post_balance
            continue
        if entry.reward_type != "staking":
            continue
        if entry.post_balance - entry.lamports <= 0:
            continue
        seen = samples.get(entry.identity)
        # First positive sample wins; a zero sample only stands in until one appears
        if seen is None or (seen.lamports <= 0 < entry.lamports):
            samples[entry.identity] = entry

    records = []
    for identity in sorted(set(samples) | set(balances)):
        sample = samples.get(identity)
        records.append({
            "identity": identity,
            "epoch": epoch,
            "amount": sample.lamports if sample else None,
            "stake": sample.post_balance - sample.lamports if sample else None,
            "validator_balance": balances.get(identity),
            "duration_sec": duration_sec,
        })
    return records


class EpochRewardLedger:
    """Reward scraping plus read access to the persisted reward records."""

    def __init__(self, rpc: "LedgerRpcClient", reward_repo: "RewardRepo"):
        self._rpc = rpc
        self._repo = reward_repo

    async def record_epoch_rewards(
        self,
        epoch: int,
        duration_sec: Optional[float],
        identity_filter: "IdentityFilter",
        first_slot: int,
        last_slot: int,
    ) -> List[dict]:
        """Scrape rewards for `epoch` from the slot range where they were paid."""
        identities = set(identity_filter.members) if identity_filter.is_restricted else None
        try:
            entries = await self._rpc.get_rewards_for_slot_range(first_slot, last_slot, identities)
        except TransientIO as e:
            raise IncompleteEpochScrape(epoch, f"reward scrape failed: {e}") from e
        if entries is None:
            raise IncompleteEpochScrape(
                epoch, f"no block yet in slots {first_slot}..{last_slot}"
            )
        if duration_sec is None:
            logger.warning(
                "Epoch %d duration unknown, assuming %.1f days",
                epoch, DEFAULT_EPOCH_DURATION_SEC / SECONDS_IN_DAY,
            )
            duration_sec = DEFAULT_EPOCH_DURATION_SEC
        records = fold_rewards(epoch, duration_sec, entries)
        logger.info(
            "Scraped epoch %d: %d reward entries -> %d records (filter=%r)",
            epoch, len(entries), len(records), identity_filter,
        )
        return records

    async def scrape(
        self, transition: "EpochTransition", identity_filter: "IdentityFilter"
    ) -> List[dict]:
        return await self.record_epoch_rewards(
            transition.completed_epoch,
            transition.boundary.duration_sec,
            identity_filter,
            transition.reward_first_slot,
            transition.reward_last_slot,
        )

    async def records_for_window(self, last_epoch: int, window: int) -> List[dict]:
        return await self._repo.list_for_epochs(last_epoch - window + 1, last_epoch)

    async def history(self, identity: str, limit: Optional[int] = None) -> List[dict]:
        return await self._repo.list_for_identity(identity, limit=limit)
