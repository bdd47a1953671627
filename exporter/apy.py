"""
apy.py - Staking APY derivation from persisted epoch reward records.

Per-epoch APY compounds the epoch's return over the number of epochs in a
year (derived from the epoch's duration). The trailing average is the plain
mean of the per-epoch values that exist in the window; an epoch without a
record is left out of the mean, never counted as zero. No value at all is
reported as None.
"""

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from exporter.rewards import SECONDS_IN_DAY

if TYPE_CHECKING:
    from exporter.rewards import EpochRewardLedger

logger = logging.getLogger("apy")

DAYS_IN_YEAR = 365

# Epochs averaged by default, including the most recent completed one
DEFAULT_APY_WINDOW = 5


def epoch_apy(record: dict) -> Optional[float]:
    """Annualized percentage yield of a single epoch record."""
    amount = record.get("amount")
    stake = record.get("stake")
    duration = record.get("duration_sec")
    if amount is None or not stake or stake <= 0 or not duration or duration <= 0:
        return None
    epochs_per_year = DAYS_IN_YEAR * SECONDS_IN_DAY / duration
    return 100.0 * ((1.0 + amount / stake) ** epochs_per_year - 1.0)


def mean_of_available(values: List[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


class ApyEngine:
    """Computes current and trailing APY; reloads once per completed epoch."""

    def __init__(self, ledger: "EpochRewardLedger", window: int = DEFAULT_APY_WINDOW):
        self._ledger = ledger
        self.window = window
        self._epoch: Optional[int] = None
        self._loaded_window = 0
        self._records: Dict[str, Dict[int, dict]] = {}

    @property
    def completed_epoch(self) -> Optional[int]:
        return self._epoch

    def set_window(self, window: int):
        if window != self.window:
            logger.info("APY window changed %d -> %d", self.window, window)
            self.window = window

    async def refresh(self, completed_epoch: Optional[int], window: Optional[int] = None) -> bool:
        """Load the window ending at `completed_epoch`. Returns True if reloaded.

        `window` widens the load beyond the engine's own window for callers
        that average over more epochs.
        """
        if completed_epoch is None:
            return False
        needed = max(window or 0, self.window)
        if completed_epoch == self._epoch and self._loaded_window == needed:
            return False
        records = await self._ledger.records_for_window(completed_epoch, needed)
        by_identity: Dict[str, Dict[int, dict]] = {}
        for r in records:
            by_identity.setdefault(r["identity"], {})[r["epoch"]] = r
        self._records = by_identity
        self._epoch = completed_epoch
        self._loaded_window = needed
        logger.debug(
            "APY window %d..%d loaded: %d records, %d identities",
            completed_epoch - needed + 1, completed_epoch, len(records), len(by_identity),
        )
        return True

    def identities(self) -> List[str]:
        return sorted(self._records)

    def apy_for_epoch(self, identity: str, epoch: int) -> Optional[float]:
        record = self._records.get(identity, {}).get(epoch)
        return epoch_apy(record) if record else None

    def current_apy(self, identity: str) -> Optional[float]:
        if self._epoch is None:
            return None
        return self.apy_for_epoch(identity, self._epoch)

    def average_apy(self, identity: str, window: Optional[int] = None) -> Optional[float]:
        """Mean APY over the last `window` completed epochs (default: the engine's window).

        Raises ValueError if more epochs are asked for than the last refresh loaded.
        """
        if self._epoch is None:
            return None
        k = window or self.window
        if k > self._loaded_window:
            raise ValueError(f"APY window {k} exceeds loaded window {self._loaded_window}; refresh first")
        epochs = range(self._epoch - k + 1, self._epoch + 1)
        return mean_of_available([self.apy_for_epoch(identity, e) for e in epochs])

    def cumulative_rewards(self, identity: str) -> Optional[int]:
        if self._epoch is None:
            return None
        record = self._records.get(identity, {}).get(self._epoch)
        return record.get("validator_balance") if record else None
