"""
Cohort Method Backend Implementations.

This package contains backend implementations of the statistical
collaborators used by the pipeline stages.

Available Backends
------------------
- simulation: Synthetic cohorts and NumPy/SciPy estimators (default)

Backends are automatically registered via the @register_backend decorator
when this package is imported.
"""
from __future__ import annotations

# Import backends to trigger registration
from . import simulation  # noqa: F401
