"""
Plany — voice-driven health logging with asynchronous enrichment.

Spoken observation → classify/extract → placeholder entry in the one Event
Store → deferred enrichment job → the same entry updated in place.
"""

__version__ = "1.0.0"
__author__ = "Plany Team"
