"""File exporter for batched telemetry records (logs, metrics, traces)."""

__version__ = "0.1.0"
