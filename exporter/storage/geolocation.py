import time
from typing import List, Optional

import aiosqlite

_COLUMNS = "address, as_number, country_code, city, isp, fetched_at"


def _row_to_dict(row) -> dict:
    return {
        "address": row[0],
        "as_number": row[1],
        "country_code": row[2],
        "city": row[3],
        "isp": row[4],
        "fetched_at": row[5],
    }


class GeolocationRepo:
    """Geolocation cache rows keyed by IP address."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def get(self, address: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM geolocation WHERE address = ?", (address,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def upsert(
        self,
        address: str,
        as_number: int,
        country_code: str,
        city: Optional[str],
        isp: str,
        fetched_at: Optional[float] = None,
    ) -> dict:
        fetched_at = time.time() if fetched_at is None else fetched_at
        await self._db.execute(
            f"INSERT INTO geolocation ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(address) DO UPDATE SET as_number = excluded.as_number, "
            "country_code = excluded.country_code, city = excluded.city, "
            "isp = excluded.isp, fetched_at = excluded.fetched_at",
            (address, as_number, country_code, city, isp, fetched_at),
        )
        await self._db.commit()
        return {
            "address": address,
            "as_number": as_number,
            "country_code": country_code,
            "city": city,
            "isp": isp,
            "fetched_at": fetched_at,
        }

    async def list_all(self) -> List[dict]:
        results = []
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM geolocation ORDER BY address"
        ) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM geolocation") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
