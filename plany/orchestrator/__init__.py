"""
orchestrator — Enrichment job queue, retry/backoff and result application.
"""
