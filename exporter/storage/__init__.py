from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .metadata import MetadataRepo, CREATED_VERSION, LAST_PROCESSED_EPOCH
from .rewards import RewardRepo
from .geolocation import GeolocationRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "CREATED_VERSION",
    "LAST_PROCESSED_EPOCH",
    "MetadataRepo",
    "RewardRepo",
    "GeolocationRepo",
    "StorageManager",
]
