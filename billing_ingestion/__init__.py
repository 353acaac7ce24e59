"""
billing_ingestion -- getting vendor transactions into the canonical table.

Reads the live feed, per-invoice fetches and spreadsheet exports, normalises
them and upserts one canonical Transaction per vendor transaction id with a
per-field trust merge.  Mirrors vendor entities used for attribution.

Architecture:
    billing_ingestion/ sits above billing_kernel and billing_engines.
    billing_services and billing_batch call into it; nothing below does.
"""
