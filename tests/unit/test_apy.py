"""
test_apy.py - Unit tests for APY derivation.
"""

import pytest
import pytest_asyncio

from exporter.apy import ApyEngine, epoch_apy, mean_of_available
from exporter.rewards import SECONDS_IN_DAY, EpochRewardLedger
from fakes import FakeRpc


TWO_DAYS = 2.0 * SECONDS_IN_DAY


def _record(identity, epoch, amount, stake=1_000_000, duration=TWO_DAYS, balance=None):
    return {
        "identity": identity,
        "epoch": epoch,
        "amount": amount,
        "stake": stake,
        "validator_balance": balance,
        "duration_sec": duration,
    }


@pytest_asyncio.fixture
async def engine(storage):
    ledger = EpochRewardLedger(FakeRpc(), storage.rewards)
    return ApyEngine(ledger, window=5)


# ── Pure functions ─────────────────────────────────────────────────────────

class TestEpochApy:

    def test_compounds_over_epochs_per_year(self):
        apy = epoch_apy(_record("A", 1, amount=1_000, stake=1_000_000))
        expected = 100.0 * ((1.0 + 0.001) ** (365 / 2) - 1.0)
        assert apy == pytest.approx(expected)

    def test_zero_reward_is_zero_apy(self):
        assert epoch_apy(_record("A", 1, amount=0)) == 0.0

    @pytest.mark.parametrize("field,value", [
        ("amount", None),
        ("stake", 0),
        ("stake", None),
        ("duration_sec", 0),
    ])
    def test_undefined_inputs(self, field, value):
        record = _record("A", 1, amount=1_000)
        record[field] = value
        assert epoch_apy(record) is None

    def test_mean_ignores_missing(self):
        assert mean_of_available([4.0, None, 8.0]) == 6.0
        assert mean_of_available([None, None]) is None
        assert mean_of_available([]) is None


# ── Engine ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestApyEngine:

    async def test_average_over_present_epochs_only(self, storage, engine):
        # Epoch 8 has no record for A
        for epoch, amount in ((6, 1_000), (7, 2_000), (9, 3_000), (10, 4_000)):
            await storage.rewards.commit_epoch([_record("A", epoch, amount)], epoch + 1)

        await engine.refresh(10)

        values = [engine.apy_for_epoch("A", e) for e in (6, 7, 9, 10)]
        assert engine.apy_for_epoch("A", 8) is None
        assert engine.average_apy("A") == pytest.approx(sum(values) / 4)
        assert engine.average_apy("A") > engine.apy_for_epoch("A", 7)

    async def test_current_apy_is_completed_epoch(self, storage, engine):
        await storage.rewards.commit_epoch([_record("A", 9, 1_000)], 10)
        await storage.rewards.commit_epoch([_record("A", 10, 2_000)], 11)
        await engine.refresh(10)
        assert engine.current_apy("A") == engine.apy_for_epoch("A", 10)

    async def test_no_records_means_no_value(self, engine):
        await engine.refresh(10)
        assert engine.identities() == []
        assert engine.current_apy("A") is None
        assert engine.average_apy("A") is None

    async def test_before_first_refresh(self, engine):
        assert engine.completed_epoch is None
        assert engine.current_apy("A") is None
        assert await engine.refresh(None) is False

    async def test_refresh_only_on_change(self, storage, engine):
        await storage.rewards.commit_epoch([_record("A", 10, 1_000)], 11)
        assert await engine.refresh(10) is True
        assert await engine.refresh(10) is False
        engine.set_window(3)
        assert await engine.refresh(10) is True

    async def test_window_excludes_older_epochs(self, storage, engine):
        await storage.rewards.commit_epoch([_record("A", 4, 50_000)], 5)
        await storage.rewards.commit_epoch([_record("A", 10, 1_000)], 11)
        await engine.refresh(10)
        assert engine.average_apy("A") == engine.current_apy("A")

    async def test_cumulative_rewards_from_vote_balance(self, storage, engine):
        await storage.rewards.commit_epoch([_record("A", 10, 1_000, balance=42_000)], 11)
        await engine.refresh(10)
        assert engine.cumulative_rewards("A") == 42_000
        assert engine.cumulative_rewards("B") is None

    async def test_wider_window_than_loaded(self, storage, engine):
        for epoch in range(1, 11):
            await storage.rewards.commit_epoch([_record("A", epoch, epoch * 1_000)], epoch + 1)
        engine.set_window(2)
        await engine.refresh(10)

        with pytest.raises(ValueError):
            engine.average_apy("A", window=10)

        await engine.refresh(10, window=10)
        values = [engine.apy_for_epoch("A", e) for e in range(1, 11)]
        assert engine.average_apy("A", window=10) == pytest.approx(sum(values) / 10)
        assert engine.average_apy("A") == pytest.approx(sum(values[-2:]) / 2)
