"""
pipeline — Per-utterance controller.

Drives each submission through Idle → Recognizing → Executing → Completed,
writing placeholders to the Event Store before handing jobs to the
orchestrator.
"""
