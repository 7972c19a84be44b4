"""Backend package: DB models, pipelines, APIs.

This package orchestrates submission validation, persistence, LLM-backed
field extraction, and the read side used by the actor listing endpoints.
"""
