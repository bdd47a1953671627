import logging
import time
from typing import Iterable, List, Optional

import aiosqlite

from exporter.errors import CorruptPersistentState
from .metadata import LAST_PROCESSED_EPOCH

logger = logging.getLogger("storage")

_COLUMNS = "identity, epoch, amount, stake, validator_balance, duration_sec, recorded_at"


def _row_to_dict(row) -> dict:
    return {
        "identity": row[0],
        "epoch": row[1],
        "amount": row[2],
        "stake": row[3],
        "validator_balance": row[4],
        "duration_sec": row[5],
        "recorded_at": row[6],
    }


class RewardRepo:
    """Append-only store of per-identity, per-epoch reward records."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def commit_epoch(self, records: Iterable[dict], processed_epoch: int) -> int:
        """Insert records and advance the processed-epoch marker atomically.

        Records already present for a key are left untouched, so re-running
        a scrape for the same epoch is harmless. Returns the number of new rows.
        """
        now = time.time()
        rows = [
            (r["identity"], r["epoch"], r.get("amount"), r.get("stake"),
             r.get("validator_balance"), r["duration_sec"], now)
            for r in records
        ]
        try:
            await self._db.execute("BEGIN IMMEDIATE")
            before = self._db.total_changes
            await self._db.executemany(
                f"INSERT INTO epoch_rewards ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(identity, epoch) DO NOTHING",
                rows,
            )
            inserted = self._db.total_changes - before
            await self._db.execute(
                "INSERT INTO metadata (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (LAST_PROCESSED_EPOCH, str(processed_epoch), now),
            )
            await self._db.commit()
        except BaseException as e:
            try:
                await self._db.rollback()
            except aiosqlite.Error:
                logger.exception("Rollback failed for epoch marker %d", processed_epoch)
            if isinstance(e, aiosqlite.Error):
                raise CorruptPersistentState(f"cannot commit epoch rewards: {e}") from e
            raise
        return inserted

    async def get(self, identity: str, epoch: int) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM epoch_rewards WHERE identity = ? AND epoch = ?",
            (identity, epoch),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def list_for_epochs(self, first_epoch: int, last_epoch: int) -> List[dict]:
        results = []
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM epoch_rewards WHERE epoch BETWEEN ? AND ? "
            "ORDER BY epoch, identity",
            (first_epoch, last_epoch),
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def list_for_identity(self, identity: str, limit: Optional[int] = None) -> List[dict]:
        query = f"SELECT {_COLUMNS} FROM epoch_rewards WHERE identity = ? ORDER BY epoch DESC"
        params: tuple = (identity,)
        if limit is not None:
            query += " LIMIT ?"
            params = (identity, limit)
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def epochs(self) -> List[int]:
        async with self._db.execute(
            "SELECT DISTINCT epoch FROM epoch_rewards ORDER BY epoch"
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def count(self, epoch: Optional[int] = None) -> int:
        if epoch is not None:
            async with self._db.execute(
                "SELECT COUNT(*) FROM epoch_rewards WHERE epoch = ?", (epoch,)
            ) as cursor:
                row = await cursor.fetchone()
        else:
            async with self._db.execute("SELECT COUNT(*) FROM epoch_rewards") as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0
