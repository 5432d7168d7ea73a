"""Spec11 threat-match backfill over a dual-backend transaction layer."""

__version__ = "0.1.0"
