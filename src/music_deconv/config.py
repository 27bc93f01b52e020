#!/usr/bin/env python3
"""
music_deconv.config

Contains:
- USER_DEFAULTS: baseline defaults for CLI & drivers
- SPECIES_DATASETS: Ensembl BioMart dataset per species
- resolve_paths(args): expand user paths, normalize relative ones
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional


BIOMART_SERVER = "https://www.ensembl.org/biomart/martservice"

SPECIES_DATASETS = {
    "human": "hsapiens_gene_ensembl",
    "mouse": "mmusculus_gene_ensembl",
    "rat": "rnorvegicus_gene_ensembl",
}

# -------------------------------------------------------------
# Default user-configurable parameters (used by CLI & drivers)
# -------------------------------------------------------------
# Every key the CLI reads must exist here.
USER_DEFAULTS = {
    # Inputs
    "tx2gene":  os.environ.get("MUSIC_DECONV_TX2GENE", "transcripts2genes.tsv"),
    "gene_map": "",  # local ensembl_gene_id -> symbol table; empty means query BioMart
    "abundance_suffix": "abundance.tsv",

    # Annotation lookup
    "dataset":      os.environ.get("MUSIC_DECONV_DATASET", SPECIES_DATASETS["mouse"]),
    "biomart_host": BIOMART_SERVER,
    "biomart_timeout": 600,
    "biomart_batch_size": 500,
    "legacy_drop_first_row": False,

    # Reference labels (obs columns of the h5ad)
    "cluster_col": "celltypes",
    "sample_col":  "sampleIDs",

    # Outputs
    "outdir": ".",
    "counts_name": "counts.tsv",
    "proportions_name": "est_cell_types.tsv",
    "summary_name": "music_summary.json",

    "verbose": True,
}


# -------------------------------------------------------------
# Helper: normalize and expand paths
# -------------------------------------------------------------
def _expand_path(p: Optional[str]) -> Optional[str]:
    """Expand ~ and make absolute, or None if blank."""
    if p is None:
        return None
    p = str(p).strip()
    if not p:
        return None
    path = Path(p).expanduser()
    return str(path if path.is_absolute() else path.resolve())


def resolve_paths(args: Any) -> Dict[str, Optional[str]]:
    """
    Normalize all input/output paths in a CLI namespace or dict.

    Works with argparse.Namespace or plain dict.
    Returns a dict of resolved absolute paths.

    Examples
    --------
    >>> from argparse import Namespace
    >>> ns = Namespace(sce='ref.h5ad', bulk='kallisto', outdir='out')
    >>> paths = resolve_paths(ns)  # paths["bulk"] -> <cwd>/kallisto
    """
    if hasattr(args, "__dict__"):
        items = vars(args)
    elif isinstance(args, dict):
        items = args
    else:
        raise TypeError("resolve_paths() expects dict or argparse.Namespace")

    keys = ["sce", "bulk", "tx2gene", "gene_map", "outdir"]
    return {k: _expand_path(items.get(k)) for k in keys}


if __name__ == "__main__":
    import json
    print(json.dumps(USER_DEFAULTS, indent=2))
