"""
Ingestion pipeline for the daily press synthesis.

This package turns the daily synthesis PDF into section-typed article and
image records, normalizes their text and persists them idempotently to
PostgreSQL, one run log row per ingestion.
"""

__version__ = "0.1.0"
