"""HTTP API for branch subscription billing."""

__version__ = "0.1.0"
