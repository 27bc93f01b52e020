# src/music_deconv/s1/io.py
from __future__ import annotations
import logging
import os
from typing import Dict

import pandas as pd

from ..errors import InputError, MappingError
from ..utils import working_directory

logger = logging.getLogger(__name__)

ABUNDANCE_SUFFIX = "abundance.tsv"
KALLISTO_COLUMNS = ["target_id", "length", "eff_length", "est_counts", "tpm"]


def sample_id_from_name(filename: str, suffix: str = ABUNDANCE_SUFFIX) -> str:
    """'A_abundance.tsv' -> 'A' (suffix and a trailing '_' / '.' separator removed)."""
    stem = filename[: -len(suffix)] if filename.endswith(suffix) else filename
    return stem.rstrip("_.")


def find_abundance_files(input_directory: str, suffix: str = ABUNDANCE_SUFFIX) -> Dict[str, str]:
    """
    Map sample id -> absolute path for every `*abundance.tsv` in a directory.

    Discovery happens inside the directory; the caller's cwd is restored
    whatever happens. Samples keep the sorted order of the listing.
    """
    if not os.path.isdir(input_directory):
        raise InputError(f"Abundance directory not found: {input_directory}")

    files: Dict[str, str] = {}
    with working_directory(input_directory) as here:
        for name in sorted(os.listdir(".")):
            if not name.endswith(suffix) or not os.path.isfile(name):
                continue
            sample = sample_id_from_name(name, suffix)
            if not sample:
                raise InputError(f"Cannot derive a sample id from file name: {name}")
            if sample in files:
                raise InputError(f"Duplicate sample id '{sample}' in {input_directory}")
            files[sample] = os.path.join(here, name)

    if not files:
        raise InputError(f"No files ending in '{suffix}' found in: {input_directory}")
    logger.info(f"[S1] Found {len(files)} abundance file(s) in {input_directory}")
    return files


def read_abundance(path: str) -> pd.DataFrame:
    """Read one kallisto abundance.tsv; index = target_id."""
    if not os.path.isfile(path):
        raise InputError(f"Abundance file not found: {path}")
    try:
        df = pd.read_csv(path, sep="\t", encoding="utf-8")
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise InputError(f"Could not parse abundance file {path}: {e}") from e

    missing = [c for c in KALLISTO_COLUMNS if c not in df.columns]
    if missing:
        raise InputError(f"Abundance file {path} is missing column(s): {', '.join(missing)}")

    df["target_id"] = df["target_id"].astype(str)
    for c in ("length", "eff_length", "est_counts", "tpm"):
        df[c] = pd.to_numeric(df[c], errors="coerce").fillna(0.0)
    return df.set_index("target_id")[["length", "eff_length", "est_counts", "tpm"]]


def read_tx2gene(path: str) -> pd.DataFrame:
    """
    Read the transcript -> gene table (tab-delimited, header row).

    Only the first two columns are used, whatever they are called.
    """
    if not os.path.isfile(path):
        raise MappingError(f"Transcript mapping file not found: {path}")
    try:
        df = pd.read_csv(path, sep="\t", dtype=str, encoding="utf-8")
    except pd.errors.EmptyDataError as e:
        raise MappingError(f"Transcript mapping file is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise MappingError(f"Malformed transcript mapping file {path}: {e}") from e

    if df.shape[1] < 2:
        raise MappingError(
            f"Transcript mapping needs at least 2 columns (transcript_id, gene_id); "
            f"found {df.shape[1]} in {path}"
        )

    tx2gene = df.iloc[:, :2].copy()
    tx2gene.columns = ["transcript_id", "gene_id"]
    tx2gene = tx2gene.dropna()
    tx2gene["transcript_id"] = tx2gene["transcript_id"].str.strip()
    tx2gene["gene_id"] = tx2gene["gene_id"].str.strip()
    tx2gene = tx2gene[(tx2gene["transcript_id"] != "") & (tx2gene["gene_id"] != "")]
    if tx2gene.empty:
        raise MappingError(f"Transcript mapping has no rows: {path}")

    dup = tx2gene["transcript_id"].duplicated(keep="first")
    if dup.any():
        logger.warning(f"[S1] {int(dup.sum())} duplicated transcript id(s) in mapping; keeping first")
        tx2gene = tx2gene[~dup]
    return tx2gene.reset_index(drop=True)
