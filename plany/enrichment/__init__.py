"""
enrichment — External estimation boundary.

Turns a textual description into structured attributes. No retry logic lives
here; retries belong to the task orchestrator.
"""
