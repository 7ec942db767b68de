"""
External news sources for the ingestion pipeline.

RSS feeds and JSON news APIs are normalized into the same article
candidates the PDF extractor produces.
"""
