import time
from typing import Optional

import aiosqlite

CREATED_VERSION = "created_version"
LAST_PROCESSED_EPOCH = "last_processed_epoch"


class MetadataRepo:
    """Key/value access to the metadata table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def get(self, key: str) -> Optional[str]:
        async with self._db.execute(
            "SELECT value FROM metadata WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str, commit: bool = True):
        await self._db.execute(
            "INSERT INTO metadata (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, value, time.time()),
        )
        if commit:
            await self._db.commit()

    async def ensure_created_version(self, version: str) -> str:
        """Record the creating exporter version once; return the stored one."""
        await self._db.execute(
            "INSERT OR IGNORE INTO metadata (key, value, updated_at) VALUES (?, ?, ?)",
            (CREATED_VERSION, version, time.time()),
        )
        await self._db.commit()
        return await self.get(CREATED_VERSION)

    async def get_last_processed_epoch(self) -> Optional[int]:
        value = await self.get(LAST_PROCESSED_EPOCH)
        return int(value) if value is not None else None
