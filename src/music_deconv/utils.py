# src/music_deconv/utils.py
from __future__ import annotations
import contextlib
import importlib.util
import os
from pathlib import Path
from typing import Iterator, List, Sequence

from .errors import InputError

REQUIRED_MODULES = ("numpy", "pandas", "scipy", "anndata", "requests")


@contextlib.contextmanager
def working_directory(path: str) -> Iterator[str]:
    """
    Temporarily chdir into `path`, always restoring the previous cwd.

    Yields the absolute path of the directory entered.
    """
    target = Path(path).expanduser()
    if not target.is_dir():
        raise InputError(f"Not a directory or missing: {path}")
    previous = os.getcwd()
    os.chdir(target)
    try:
        yield os.getcwd()
    finally:
        os.chdir(previous)


def probe_dependencies(modules: Sequence[str] = REQUIRED_MODULES) -> List[str]:
    """Fail fast with InputError if any required library is not importable."""
    missing = [m for m in modules if importlib.util.find_spec(m) is None]
    if missing:
        raise InputError(
            "Required libraries are not installed: " + ", ".join(missing)
            + ". Install with: pip install " + " ".join(missing)
        )
    return list(modules)


def probe_biomart(host: str, timeout: float = 30.0) -> None:
    """Check that the BioMart martservice answers before any work is done."""
    import requests

    try:
        resp = requests.get(host, params={"type": "registry"}, timeout=timeout)
        resp.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise InputError(f"BioMart service unavailable at {host}: {e}") from e


__all__ = ["working_directory", "probe_dependencies", "probe_biomart"]
