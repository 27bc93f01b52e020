# src/music_deconv/adata_utils.py
from __future__ import annotations
import logging
from pathlib import Path

import anndata as ad

from .errors import InputError

logger = logging.getLogger(__name__)

DEF_CLUSTER_COL = "celltypes"
DEF_SAMPLE_COL = "sampleIDs"


def validate_reference(adata, cluster_col: str = DEF_CLUSTER_COL, sample_col: str = DEF_SAMPLE_COL):
    """Minimal structural check: expression present, both label columns in .obs."""
    if not isinstance(adata, ad.AnnData):
        raise InputError(f"Reference is not an AnnData object (got {type(adata).__name__}).")
    if adata.X is None:
        raise InputError("Reference has no expression matrix (.X is empty).")
    if adata.n_obs == 0 or adata.n_vars == 0:
        raise InputError(f"Reference is empty: {adata.n_obs} cells × {adata.n_vars} genes.")
    missing = [c for c in (cluster_col, sample_col) if c not in adata.obs.columns]
    if missing:
        raise InputError(
            f"Reference .obs is missing required column(s): {', '.join(missing)}. "
            f"Available: {', '.join(map(str, adata.obs.columns))}"
        )
    return adata


def read_reference(path: str, cluster_col: str = DEF_CLUSTER_COL, sample_col: str = DEF_SAMPLE_COL):
    """Read a single-cell reference (.h5ad) and return the AnnData unchanged."""
    p = Path(path)
    if not p.is_file():
        raise InputError(f"Reference file not found: {path}")
    try:
        adata = ad.read_h5ad(p)
    except Exception as e:
        raise InputError(f"Could not read reference {path}: {e}") from e

    validate_reference(adata, cluster_col=cluster_col, sample_col=sample_col)
    logger.info(
        f"[S2] Reference: {adata.n_obs:,} cells × {adata.n_vars:,} genes, "
        f"{adata.obs[cluster_col].nunique()} cell types, {adata.obs[sample_col].nunique()} samples"
    )
    return adata
