"""
Utilities package.

Provides shared utilities for the cohort method pipeline:
- cache: Content hashing for task fingerprints
- helpers: Common utility functions (atomic writes, formatting)
"""
from .cache import hash_config, hash_dependencies, task_fingerprint
