"""Unattended scheduling of PDF and external source ingestion."""
