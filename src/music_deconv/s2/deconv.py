# src/music_deconv/s2/deconv.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional, Sequence, Union

import pandas as pd

from ..s1.expression import ExpressionMatrix
from .music import MusicResult, music_prop

logger = logging.getLogger(__name__)

DEF_PROPORTIONS_NAME = "est_cell_types.tsv"


def run_music(
    bulk: Union[ExpressionMatrix, pd.DataFrame],
    reference,
    clusters: str = "celltypes",
    samples: str = "sampleIDs",
    select_ct: Optional[Sequence[str]] = None,
    verbose: bool = True,
) -> MusicResult:
    """Call MuSiC; errors propagate to the caller untouched."""
    frame = bulk.to_frame() if isinstance(bulk, ExpressionMatrix) else bulk
    return music_prop(
        bulk=frame.copy(),
        reference=reference,
        clusters=clusters,
        samples=samples,
        select_ct=select_ct,
        verbose=verbose,
    )


def estimate_cell_type_proportions(
    bulk: Union[ExpressionMatrix, pd.DataFrame],
    reference,
    clusters: str = "celltypes",
    samples: str = "sampleIDs",
    select_ct: Optional[Sequence[str]] = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Stage 2: weighted MuSiC proportions as samples × cell types.

    All cell types in the reference are estimated unless `select_ct` is given.
    """
    result = run_music(bulk, reference, clusters=clusters, samples=samples,
                       select_ct=select_ct, verbose=verbose)
    return proportions_from_result(result)


def proportions_from_result(result: MusicResult) -> pd.DataFrame:
    est = result.est_prop_weighted.T
    est.index.name = "sample"
    return est


def write_proportions(est_cell_types: pd.DataFrame, path: str = DEF_PROPORTIONS_NAME) -> str:
    est_cell_types.to_csv(path, sep="\t", encoding="utf-8")
    logger.info(f"[S2] Wrote {path}")
    return path


def write_summary(result: MusicResult, path: str, **extra) -> str:
    """JSON side-car with fit diagnostics (R², shapes)."""
    summary = {
        "shape_est_prop_weighted": list(map(int, result.est_prop_weighted.shape)),
        "index_is_cell_type": True,
        "cell_types": list(map(str, result.est_prop_weighted.index)),
        "samples": list(map(str, result.est_prop_weighted.columns)),
        "r_squared_full": {str(k): (None if pd.isna(v) else float(v))
                           for k, v in result.r_squared_full.items()},
    }
    summary.update(extra)
    with open(Path(path), "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    return path
