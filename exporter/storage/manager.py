import logging
from typing import Optional

try:
    import aiosqlite
except ImportError:
    raise ImportError(
        "aiosqlite is required for the storage layer. "
        "Install with: pip install aiosqlite"
    )

from exporter import __version__
from exporter.errors import CorruptPersistentState
from ._migrate import run_migrations
from .geolocation import GeolocationRepo
from .metadata import MetadataRepo
from .rewards import RewardRepo

logger = logging.getLogger("storage")


def _major(version: str) -> str:
    return version.split(".", 1)[0]


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "persistent.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self.rewards: Optional[RewardRepo] = None
        self.metadata: Optional[MetadataRepo] = None
        self.geolocation: Optional[GeolocationRepo] = None
        self.created_version: Optional[str] = None

    async def initialize(self):
        """Open and verify the database. Raises CorruptPersistentState."""
        try:
            self._db = await aiosqlite.connect(self.db_path)
            async with self._db.execute("PRAGMA quick_check") as cursor:
                row = await cursor.fetchone()
            if row is None or row[0] != "ok":
                raise CorruptPersistentState(
                    f"integrity check failed for {self.db_path}: {row[0] if row else 'no result'}"
                )
            await self._db.execute("PRAGMA journal_mode=WAL")
            await run_migrations(self._db, logger)

            self.rewards = RewardRepo(self._db)
            self.metadata = MetadataRepo(self._db)
            self.geolocation = GeolocationRepo(self._db)

            self.created_version = await self.metadata.ensure_created_version(__version__)
        except aiosqlite.Error as e:
            await self.close()
            raise CorruptPersistentState(f"cannot open {self.db_path}: {e}") from e
        except CorruptPersistentState:
            await self.close()
            raise

        if _major(self.created_version) != _major(__version__):
            logger.warning(
                "Database was created with exporter version %s, but the current version is %s",
                self.created_version, __version__,
            )
        logger.info("Storage initialized: %s", self.db_path)

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
