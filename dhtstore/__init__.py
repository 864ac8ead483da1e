"""Expiring key-value stores, sub-key indexes, configuration, statistics and binlog replay for a DHT server."""

__version__ = "1.0.0"