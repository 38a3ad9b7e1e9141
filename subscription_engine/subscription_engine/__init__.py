"""Subscription lifecycle engine for the laundry platform's branch billing."""

__version__ = "0.1.0"
