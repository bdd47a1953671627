"""
Validator Cluster Exporter

Polls a validator cluster's JSON-RPC endpoint and the MaxMind geolocation
service, caches epoch rewards and geolocation in SQLite, and serves the
derived statistics to Prometheus.
"""

__version__ = "0.3.0"

__all__ = [
    "aggregator",
    "apy",
    "config",
    "epochs",
    "errors",
    "exposition",
    "geolocation",
    "identity_filter",
    "rewards",
    "rpc",
    "server",
    "slots",
    "snapshot",
    "storage",
]
