#!/usr/bin/env python3
"""
S1 (bulk prep): kallisto transcripts -> gene counts
summarize_to_gene, length_scaled_tpm, convert_to_counts, read_counts

Gene-level summarisation follows tximport with countsFromAbundance =
"lengthScaledTPM": transcript TPMs are summed per gene, multiplied by the
gene's average effective length across samples, then rescaled so each
sample keeps its original estimated-count library size.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..errors import MappingError
from .io import ABUNDANCE_SUFFIX, find_abundance_files, read_abundance, read_tx2gene

logger = logging.getLogger(__name__)

DEF_COUNTS_NAME = "counts.tsv"
COUNTS_FLOAT_FORMAT = "%.10g"


def _stack(abundances: Mapping[str, pd.DataFrame], column: str) -> pd.DataFrame:
    """transcripts × samples matrix of one kallisto column."""
    return pd.DataFrame({s: df[column] for s, df in abundances.items()})


def strip_gene_version(index: pd.Index) -> pd.Index:
    """'ENSMUSG00000000001.4' -> 'ENSMUSG00000000001' (everything from the first '.')."""
    return pd.Index(index.astype(str).str.replace(r"\..*", "", regex=True))


def summarize_to_gene(
    abundances: Mapping[str, pd.DataFrame],
    tx2gene: pd.DataFrame,
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """
    Collapse per-sample kallisto tables to gene level.

    Returns
    -------
    (abundance, counts, length) : genes × samples DataFrames
        abundance = summed TPM, counts = summed est_counts,
        length = TPM-weighted mean effective length (gene average where
        the gene has no abundance in a sample).
    """
    if not abundances:
        raise MappingError("No abundance tables to summarise.")

    tpm = _stack(abundances, "tpm")
    est = _stack(abundances, "est_counts")
    eff = _stack(abundances, "eff_length")

    if tpm.isna().any(axis=None):
        logger.warning("[S1] Abundance files do not share one transcript set; missing entries set to 0")
        tpm = tpm.fillna(0.0)
        est = est.fillna(0.0)
        eff = eff.apply(lambda col: col.fillna(eff.mean(axis=1)))

    tx_gene = tx2gene.set_index("transcript_id")["gene_id"]
    mapped = tpm.index.isin(tx_gene.index)
    n_missing = int((~mapped).sum())
    if n_missing:
        logger.info(f"[S1] transcripts missing from tx2gene: {n_missing}")
    if not mapped.any():
        raise MappingError(
            "None of the quantified transcripts are present in the transcript mapping. "
            "Check that the mapping uses the same transcript ids as the kallisto index."
        )

    tpm, est, eff = tpm[mapped], est[mapped], eff[mapped]
    gene = tx_gene.reindex(tpm.index)

    abundance = tpm.groupby(gene).sum()
    counts = est.groupby(gene).sum()
    weighted = (tpm * eff).groupby(gene).sum()

    with np.errstate(divide="ignore", invalid="ignore"):
        length = weighted / abundance

    # genes with zero abundance in a sample take the gene's average length
    ave_len_gene = eff.mean(axis=1).groupby(gene).mean()
    length = length.apply(lambda col: col.fillna(ave_len_gene))

    for df in (abundance, counts, length):
        df.index.name = "gene_id"
    return abundance, counts, length


def length_scaled_tpm(
    abundance: pd.DataFrame,
    counts: pd.DataFrame,
    length: pd.DataFrame,
) -> pd.DataFrame:
    """
    counts = abundance * rowMeans(length), rescaled per sample to the
    original est_counts library size.
    """
    counts_sum = counts.sum(axis=0)
    new_counts = abundance.mul(length.mean(axis=1), axis=0)
    new_sum = new_counts.sum(axis=0)
    ratio = (counts_sum / new_sum.where(new_sum > 0)).fillna(0.0)
    return new_counts.mul(ratio, axis=1)


def build_count_matrix(
    sample_files: Mapping[str, str],
    tx2gene: pd.DataFrame,
) -> pd.DataFrame:
    """Read every sample file and return the genes × samples CountMatrix."""
    abundances: Dict[str, pd.DataFrame] = {s: read_abundance(p) for s, p in sample_files.items()}
    abundance, counts, length = summarize_to_gene(abundances, tx2gene)
    scaled = length_scaled_tpm(abundance, counts, length)

    scaled.index = strip_gene_version(scaled.index)
    if scaled.index.has_duplicates:
        n_dup = int(scaled.index.duplicated().sum())
        logger.info(f"[S1] {n_dup} gene id(s) collide after version stripping; summing")
        scaled = scaled.groupby(level=0, sort=False).sum()
    scaled.index.name = "gene_id"
    scaled.columns = list(sample_files.keys())
    return scaled.astype(float)


def write_counts(counts: pd.DataFrame, path: str) -> str:
    counts.to_csv(path, sep="\t", float_format=COUNTS_FLOAT_FORMAT, encoding="utf-8")
    return path


def read_counts(path: str) -> pd.DataFrame:
    """Read a counts.tsv checkpoint back into a CountMatrix."""
    df = pd.read_csv(path, sep="\t", index_col=0, encoding="utf-8")
    df.index = df.index.astype(str)
    return df.astype(float)


def convert_to_counts(
    transcript_mapping_file: str,
    input_directory: str,
    out_path: Optional[str] = None,
    suffix: str = ABUNDANCE_SUFFIX,
) -> pd.DataFrame:
    """
    kallisto abundance directory -> gene-level CountMatrix.

    The matrix is written to `out_path` (default ./counts.tsv) before it is
    returned, so the checkpoint survives failures in later stages.
    """
    tx2gene = read_tx2gene(transcript_mapping_file)
    files = find_abundance_files(input_directory, suffix=suffix)
    counts = build_count_matrix(files, tx2gene)

    out_path = out_path or os.path.join(os.getcwd(), DEF_COUNTS_NAME)
    write_counts(counts, out_path)
    logger.info(f"[S1] Count matrix {counts.shape[0]:,} genes × {counts.shape[1]} samples -> {out_path}")
    return counts
