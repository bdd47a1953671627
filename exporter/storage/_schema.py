SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Key/value metadata: created_version, last_processed_epoch
CREATE TABLE IF NOT EXISTS metadata (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at REAL NOT NULL
);

-- Epoch rewards: one row per (vote identity, completed epoch), append-only
CREATE TABLE IF NOT EXISTS epoch_rewards (
    identity          TEXT NOT NULL,
    epoch             INTEGER NOT NULL,
    amount            INTEGER,
    stake             INTEGER,
    validator_balance INTEGER,
    duration_sec      REAL NOT NULL,
    recorded_at       REAL NOT NULL,
    PRIMARY KEY (identity, epoch)
);

-- Geolocation cache keyed by node IP address
CREATE TABLE IF NOT EXISTS geolocation (
    address      TEXT PRIMARY KEY,
    as_number    INTEGER NOT NULL,
    country_code TEXT NOT NULL DEFAULT 'XX',
    city         TEXT,
    isp          TEXT NOT NULL DEFAULT '',
    fetched_at   REAL NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_epoch_rewards_epoch ON epoch_rewards(epoch);
CREATE INDEX IF NOT EXISTS idx_geolocation_fetched ON geolocation(fetched_at);
"""
