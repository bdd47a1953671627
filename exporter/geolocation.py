"""
geolocation.py - Node geolocation with a persistent stale-while-revalidate cache.

Entries older than the staleness horizon are refreshed from the MaxMind
GeoIP2 City web service. A failed refresh never evicts: the stale entry keeps
being served until a lookup succeeds. Without MaxMind credentials the cache
is a pass-through that resolves nothing, and the geolocation metric groups
are left out.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Optional, Tuple

import requests

from exporter.errors import ConfigurationMissing, NotConfigured, RateLimited, TransientIO

if TYPE_CHECKING:
    from exporter.config import MaxMindCredentials
    from exporter.storage import GeolocationRepo

logger = logging.getLogger("geolocation")

MAXMIND_CITY_URI = "https://geoip.maxmind.com/geoip/v2.1/city"

STALENESS_SEC = 7 * 86400
UNKNOWN_COUNTRY = "XX"
DEFAULT_CONCURRENCY = 8


@dataclass(frozen=True)
class GeoInfo:
    as_number: int
    country_code: str = UNKNOWN_COUNTRY
    city: Optional[str] = None
    isp: str = ""
    fetched_at: float = 0.0

    @classmethod
    def from_city_response(cls, body: dict, fetched_at: float = 0.0) -> "GeoInfo":
        traits = body.get("traits") or {}
        country = body.get("country") or {}
        names = (body.get("city") or {}).get("names") or {}
        return cls(
            as_number=int(traits.get("autonomous_system_number") or 0),
            country_code=country.get("iso_code") or UNKNOWN_COUNTRY,
            city=names.get("en") or None,
            isp=traits.get("isp") or traits.get("autonomous_system_organization") or "",
            fetched_at=fetched_at,
        )

    @classmethod
    def from_row(cls, row: dict) -> "GeoInfo":
        return cls(
            as_number=row["as_number"],
            country_code=row["country_code"] or UNKNOWN_COUNTRY,
            city=row["city"],
            isp=row["isp"] or "",
            fetched_at=row["fetched_at"],
        )


def datacenter_identifier(info: GeoInfo) -> str:
    """`{AS}-{country}` with `-{city}` appended when the city is known."""
    if info.city:
        return f"{info.as_number}-{info.country_code}-{info.city}"
    return f"{info.as_number}-{info.country_code}"


class MaxMindClient:
    """Blocking GeoIP2 City client, called through the default executor."""

    def __init__(self, credentials: Optional["MaxMindCredentials"], timeout: float = 10.0):
        self._credentials = credentials
        self.timeout = timeout
        self._session = requests.Session()

    @property
    def configured(self) -> bool:
        return self._credentials is not None

    def close(self):
        self._session.close()

    def _lookup(self, address: str) -> GeoInfo:
        if self._credentials is None:
            raise NotConfigured("no MaxMind credentials configured")
        try:
            resp = self._session.get(
                f"{MAXMIND_CITY_URI}/{address}",
                auth=(self._credentials.username, self._credentials.password),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise TransientIO(f"MaxMind lookup {address}: {e}") from e
        if resp.status_code == 429:
            raise RateLimited(f"MaxMind lookup {address}: rate limited")
        if resp.status_code in (401, 403):
            raise NotConfigured(f"MaxMind rejected credentials ({resp.status_code})")
        if resp.status_code != 200:
            raise TransientIO(f"MaxMind lookup {address}: HTTP {resp.status_code}")
        try:
            return GeoInfo.from_city_response(resp.json())
        except ValueError as e:
            raise TransientIO(f"MaxMind lookup {address}: invalid response") from e

    async def lookup(self, address: str) -> GeoInfo:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._lookup, address))


class GeolocationCache:
    def __init__(
        self,
        repo: "GeolocationRepo",
        client: MaxMindClient,
        staleness_sec: float = STALENESS_SEC,
        clock: Callable[[], float] = time.time,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self._repo = repo
        self._client = client
        self.staleness_sec = staleness_sec
        self._clock = clock
        self._semaphore = asyncio.Semaphore(concurrency)

    @property
    def enabled(self) -> bool:
        return self._client.configured

    def is_fresh(self, info: GeoInfo, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return now - info.fetched_at <= self.staleness_sec

    async def resolve(self, address: str) -> Optional[GeoInfo]:
        """Cached metadata for `address`, refreshed when absent or stale."""
        if not self.enabled:
            return None
        row = await self._repo.get(address)
        cached = GeoInfo.from_row(row) if row else None
        if cached is not None and self.is_fresh(cached):
            return cached

        try:
            async with self._semaphore:
                info = await self._client.lookup(address)
        except (TransientIO, ConfigurationMissing) as e:
            if cached is not None:
                logger.warning("Refresh of %s failed, serving stale entry: %s", address, e)
            else:
                logger.warning("Lookup of %s failed: %s", address, e)
            return cached

        row = await self._repo.upsert(
            address=address,
            as_number=info.as_number,
            country_code=info.country_code,
            city=info.city,
            isp=info.isp,
            fetched_at=self._clock(),
        )
        logger.debug("Cached geolocation for %s", address)
        return GeoInfo.from_row(row)

    async def resolve_many(self, addresses: Iterable[str]) -> Dict[str, Optional[GeoInfo]]:
        """Resolve distinct addresses concurrently; all lookups joined before returning."""
        unique = sorted(set(a for a in addresses if a))
        results = await asyncio.gather(*(self.resolve(a) for a in unique))
        return dict(zip(unique, results))

    async def entries(self) -> Dict[str, dict]:
        now = self._clock()
        result = {}
        for row in await self._repo.list_all():
            info = GeoInfo.from_row(row)
            result[row["address"]] = {
                **row,
                "datacenter": datacenter_identifier(info),
                "fresh": self.is_fresh(info, now),
            }
        return result


@dataclass
class GroupTotals:
    count: int = 0
    stake: int = 0


def _group(entries: Iterable[Tuple[GeoInfo, int]], key: Callable[[GeoInfo], str]) -> Dict[str, GroupTotals]:
    groups: Dict[str, GroupTotals] = {}
    for info, stake in entries:
        totals = groups.setdefault(key(info), GroupTotals())
        totals.count += 1
        totals.stake += stake
    return {k: groups[k] for k in sorted(groups)}


def group_by_datacenter(entries: Iterable[Tuple[GeoInfo, int]]) -> Dict[str, GroupTotals]:
    """Count identities and sum stake per datacenter identifier, sorted by key."""
    return _group(entries, datacenter_identifier)


def group_by_isp(entries: Iterable[Tuple[GeoInfo, int]]) -> Dict[str, GroupTotals]:
    """Count identities and sum stake per ISP name, sorted by key."""
    return _group(entries, lambda info: info.isp or "unknown")
