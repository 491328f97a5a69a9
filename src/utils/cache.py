#!/usr/bin/env python3
"""
Content hashing utilities for task fingerprints.

Every task in a cohort method plan is identified by an MD5 digest of the
canonical JSON form of its relevant inputs. Identical inputs always produce
the same digest, so the digest doubles as the artifact cache key.

Usage
-----
    from utils.cache import hash_config, task_fingerprint

    # Hash a configuration dictionary (key order does not matter)
    h = hash_config({'caliper': 0.2, 'max_ratio': 1})

    # Fingerprint a stage from its upstream fingerprints and arguments
    fp = task_fingerprint(
        stage='propensity_score',
        upstream={'study_population': sp_fp},
        args={'create_ps_args': ps_args.to_dict()},
    )
"""
from __future__ import annotations

import dataclasses
import hashlib
import json
from enum import Enum
from pathlib import Path
from typing import Any, Optional


# =============================================================================
# CANONICAL FORM
# =============================================================================

def canonicalize(value: Any) -> Any:
    """
    Convert a value to a JSON-ready form with a single spelling per meaning.

    Dict keys are stringified, sets are sorted, tuples become lists,
    integral floats become ints (so ``1`` and ``1.0`` hash the same) and
    numpy scalars are unwrapped.

    Parameters
    ----------
    value : Any
        Value to canonicalize

    Returns
    -------
    Any
        Canonical value built from dict, list, str, int, float, bool and None
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return canonicalize(dataclasses.asdict(value))
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, dict):
        return {str(k): canonicalize(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((canonicalize(v) for v in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    if hasattr(value, 'item') and callable(value.item) and not isinstance(value, (str, bytes)):
        # numpy scalar
        return canonicalize(value.item())
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


# =============================================================================
# HASHING UTILITIES
# =============================================================================

def hash_config(config: dict) -> str:
    """
    Compute hash of a configuration dictionary.

    Parameters
    ----------
    config : dict
        Configuration dictionary (canonicalized before hashing)

    Returns
    -------
    str
        MD5 hash hex digest
    """
    # Sort keys for deterministic ordering
    config_str = json.dumps(canonicalize(config), sort_keys=True, default=str)
    return hashlib.md5(config_str.encode()).hexdigest()


def hash_dependencies(depends_on: dict) -> str:
    """
    Compute combined hash of multiple dependencies.

    Parameters
    ----------
    depends_on : dict
        Dictionary mapping names to values. Values can be:
        - dicts or dataclasses (hashed as canonical JSON)
        - None (recorded as absent)
        - Other (converted to string and hashed)

    Returns
    -------
    str
        Combined MD5 hash hex digest
    """
    hasher = hashlib.md5()

    for name in sorted(depends_on.keys()):
        value = depends_on[name]

        if value is None:
            dep_hash = 'none'
        elif isinstance(value, dict) or dataclasses.is_dataclass(value):
            dep_hash = hash_config(canonicalize(value))
        else:
            dep_hash = hashlib.md5(str(value).encode()).hexdigest()

        hasher.update(f"{name}:{dep_hash}".encode())

    return hasher.hexdigest()


def task_fingerprint(
    stage: str,
    upstream: Optional[dict[str, Optional[str]]] = None,
    args: Optional[dict] = None,
) -> str:
    """
    Fingerprint one task from the inputs that determine its output.

    Parameters
    ----------
    stage : str
        Stage kind value (e.g. 'propensity_score')
    upstream : dict, optional
        Role name -> upstream task fingerprint (None for an absent role)
    args : dict, optional
        The stage's own arguments

    Returns
    -------
    str
        MD5 hash hex digest
    """
    return hash_dependencies({
        'stage': stage,
        'upstream': hash_dependencies(upstream or {}),
        'args': args or {},
    })
