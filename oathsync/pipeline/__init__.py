"""Incremental sync pipeline for OATH summons records.

Metadata sync, ghost detection and run orchestration. The expensive
enrichment step lives in oathsync.enrichment.
"""
