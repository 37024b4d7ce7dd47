"""Storefront analytics: event ingestion, rollups and dashboard queries."""

__version__ = "0.1.0"
