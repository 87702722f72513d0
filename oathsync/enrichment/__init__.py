"""Enrichment (document OCR) scheduling under a daily budget."""
