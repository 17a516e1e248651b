"""
intent — Classifier and extractor contracts consumed by the pipeline.
"""
