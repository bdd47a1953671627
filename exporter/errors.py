"""
errors.py - Exception taxonomy shared by the exporter services.

TransientIO and IncompleteEpochScrape are retried on the next polling cycle.
ConfigurationMissing drops the dependent metric group. CorruptPersistentState
is fatal.
"""


class ExporterError(Exception):
    """Base class for all exporter errors."""


class TransientIO(ExporterError):
    """RPC or geolocation network failure; retried next cycle."""


class RateLimited(TransientIO):
    """The geolocation service refused the request (HTTP 429)."""


class IncompleteEpochScrape(ExporterError):
    """Reward data for an epoch could not be gathered completely."""

    def __init__(self, epoch: int, reason: str):
        super().__init__(f"epoch {epoch}: {reason}")
        self.epoch = epoch
        self.reason = reason


class ConfigurationMissing(ExporterError):
    """An optional collaborator is not configured."""


class NotConfigured(ConfigurationMissing):
    """No geolocation credentials are present."""


class CorruptPersistentState(ExporterError):
    """The persistent store cannot be read or written."""
