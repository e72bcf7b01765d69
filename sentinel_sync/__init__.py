"""SentinelOne telemetry sync engine."""

__version__ = "0.1.0"
