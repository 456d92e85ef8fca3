"""Runtime configuration for the phyloglmm package.

Two settings control how Z matrices are built:

* ``n_jobs`` - number of joblib workers used to distribute the
  per-tip root-path traversals.  ``1`` (the default) runs serially;
  ``-1`` uses every available core.
* ``cache_size`` - maximum number of Z matrices kept in the
  in-process cache.  ``0`` disables caching.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_n_jobs` /
       :func:`set_cache_size`.
    2. The ``PHYLOGLMM_N_JOBS`` / ``PHYLOGLMM_CACHE_SIZE``
       environment variables.
    3. Built-in defaults (``1`` and ``32``).

Examples:
    Parallelise traversals from the shell::

        export PHYLOGLMM_N_JOBS=-1

    Disable caching programmatically::

        import phyloglmm
        phyloglmm.set_cache_size(0)

    Restore the default resolution order::

        phyloglmm.set_n_jobs(None)
"""

from __future__ import annotations

import os

_DEFAULT_N_JOBS = 1
_DEFAULT_CACHE_SIZE = 32

_N_JOBS_ENV = "PHYLOGLMM_N_JOBS"
_CACHE_SIZE_ENV = "PHYLOGLMM_CACHE_SIZE"

# Sentinels indicating "no programmatic override has been set".
_n_jobs_override: int | None = None
_cache_size_override: int | None = None


def _validate_n_jobs(value: int, source: str) -> int:
    if value == 0 or value < -1:
        msg = f"Invalid n_jobs {value} from {source}. Use -1 or a positive integer."
        raise ValueError(msg)
    return value


def _validate_cache_size(value: int, source: str) -> int:
    if value < 0:
        msg = f"Invalid cache_size {value} from {source}. Must be >= 0."
        raise ValueError(msg)
    return value


def _read_int_env(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        msg = f"Environment variable {name}={raw!r} is not an integer."
        raise ValueError(msg) from None


def get_n_jobs() -> int:
    """Return the number of workers used for Z-matrix traversal.

    Returns:
        ``-1`` (all cores) or a positive integer.
    """
    if _n_jobs_override is not None:
        return _n_jobs_override

    env = _read_int_env(_N_JOBS_ENV)
    if env is not None:
        return _validate_n_jobs(env, _N_JOBS_ENV)

    return _DEFAULT_N_JOBS


def set_n_jobs(n_jobs: int | None) -> None:
    """Override the worker count.

    Args:
        n_jobs: ``-1``, a positive integer, or ``None`` to restore the
            default resolution order.

    Raises:
        ValueError: If *n_jobs* is ``0`` or below ``-1``.
    """
    global _n_jobs_override
    if n_jobs is None:
        _n_jobs_override = None
        return
    _n_jobs_override = _validate_n_jobs(int(n_jobs), "set_n_jobs()")


def get_cache_size() -> int:
    """Return the maximum number of cached Z matrices."""
    if _cache_size_override is not None:
        return _cache_size_override

    env = _read_int_env(_CACHE_SIZE_ENV)
    if env is not None:
        return _validate_cache_size(env, _CACHE_SIZE_ENV)

    return _DEFAULT_CACHE_SIZE


def set_cache_size(size: int | None) -> None:
    """Override the Z-matrix cache capacity.

    Args:
        size: Non-negative integer (``0`` disables caching), or
            ``None`` to restore the default resolution order.

    Raises:
        ValueError: If *size* is negative.
    """
    global _cache_size_override
    if size is None:
        _cache_size_override = None
        return
    _cache_size_override = _validate_cache_size(int(size), "set_cache_size()")
