"""
Backend registry.

Backends register themselves by name when their module under ``engines/`` is
imported. The runner and the CLI look them up here, falling back to
``DEFAULT_BACKEND`` from config.

Usage
-----
    from cohort_method.factory import get_backend, list_backends, register_backend

    backend = get_backend()                 # DEFAULT_BACKEND
    backend = get_backend('simulation')
    print(list_backends())                  # {'simulation': True}

    @register_backend('database')
    class DatabaseBackend(BaseBackend):
        ...
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from config import DEFAULT_BACKEND

from .errors import ConfigurationError

if TYPE_CHECKING:
    from .base import CohortMethodBackend

# Methods the stage runners call on a backend
STAGE_METHODS = (
    'get_db_cohort_method_data',
    'create_study_population',
    'create_ps',
    'trim_by_ps',
    'match_on_ps',
    'stratify_by_ps',
    'compute_covariate_balance',
    'fit_outcome_model',
)

_backend_registry: dict[str, type] = {}
_engines_loaded = False


def register_backend(name: str):
    """
    Class decorator registering a backend under ``name`` (case-insensitive).

    Raises
    ------
    ConfigurationError
        If the class lacks a stage method, or the name is taken by another class
    """
    key = name.lower()

    def decorator(cls):
        missing = [m for m in STAGE_METHODS if not callable(getattr(cls, m, None))]
        if missing:
            raise ConfigurationError(
                f"Backend '{key}' ({cls.__name__}) is missing stage method(s): {', '.join(missing)}"
            )
        registered = _backend_registry.get(key)
        if registered is not None and registered.__qualname__ != cls.__qualname__:
            raise ConfigurationError(
                f"Backend name '{key}' is already registered to {registered.__name__}"
            )
        _backend_registry[key] = cls
        return cls
    return decorator


def get_backend(name: Optional[str] = None) -> 'CohortMethodBackend':
    """
    Instantiate a registered backend.

    Parameters
    ----------
    name : str, optional
        Backend name (default: DEFAULT_BACKEND from config)

    Raises
    ------
    ConfigurationError
        If no backend is registered under that name
    """
    _ensure_backends_loaded()
    key = (name or DEFAULT_BACKEND).lower()
    if key not in _backend_registry:
        available = ', '.join(sorted(_backend_registry))
        raise ConfigurationError(f"Unknown backend: '{key}'. Available backends: {available}")
    return _backend_registry[key]()


def list_backends() -> dict[str, bool]:
    """Registered backend names mapped to whether each one is usable."""
    _ensure_backends_loaded()
    return {name: _describe(name)['available'] for name in sorted(_backend_registry)}


def get_backend_info(name: str) -> dict:
    """
    Name, availability, version and status message of one backend.

    Unknown or failing backends are reported as unavailable, never raised.
    """
    _ensure_backends_loaded()
    key = name.lower()
    if key not in _backend_registry:
        return _unavailable(key, f"Unknown backend: {key}")
    return _describe(key)


def _describe(key: str) -> dict:
    try:
        backend = _backend_registry[key]()
        available, message = backend.validate_installation()
    except Exception as e:
        return _unavailable(key, str(e))
    return {
        'name': key,
        'available': available,
        'version': backend.version if available else 'N/A',
        'message': message,
    }


def _unavailable(key: str, message: str) -> dict:
    return {'name': key, 'available': False, 'version': 'N/A', 'message': message}


def _ensure_backends_loaded() -> None:
    global _engines_loaded
    if _engines_loaded:
        return
    # Importing the engines package runs their @register_backend decorators
    from . import engines  # noqa: F401
    _engines_loaded = True
