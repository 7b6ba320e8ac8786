"""
Contact sync feature package.

This vertical slice keeps every layer of unified contact sync co-located:
domain records, platform adapters, identity resolution and sync services,
Postgres repositories, the API router, and the scheduled job.
"""
