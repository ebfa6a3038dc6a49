"""Taskweave: background task scheduling engine.

A priority-ordered job queue that dispatches async work under per-type
concurrency limits, retries transient failures with exponential
backoff, and reports operational metrics.
"""

__version__ = "1.0.0"
