"""Submission processing, querying and text normalization pipelines."""
