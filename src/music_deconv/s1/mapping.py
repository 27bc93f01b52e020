#!/usr/bin/env python3
"""
S1 (bulk prep): Ensembl gene id -> gene symbol resolution
query_biomart, lookup_from_table, aggregate_counts_by_gene_name
"""

from __future__ import annotations

import io
import logging
import os
import time
from typing import Callable, Iterable, List, Optional

import pandas as pd
import requests

from ..config import BIOMART_SERVER, SPECIES_DATASETS
from ..errors import ResolutionError

logger = logging.getLogger(__name__)

ID_ATTR = "ensembl_gene_id"
NAME_ATTR = "external_gene_name"
DEF_DATASET = SPECIES_DATASETS["mouse"]
DEF_BATCH_SIZE = 500

Lookup = Callable[[List[str], str], pd.DataFrame]


def build_query(gene_ids: Iterable[str], dataset: str) -> str:
    """BioMart XML query: ensembl_gene_id + external_gene_name, filtered by id."""
    values = ",".join(gene_ids)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE Query>
<Query virtualSchemaName="default" formatter="TSV" header="1" uniqueRows="1" count="" datasetConfigVersion="0.6">
    <Dataset name="{dataset}" interface="default">
        <Filter name="{ID_ATTR}" value="{values}"/>
        <Attribute name="{ID_ATTR}"/>
        <Attribute name="{NAME_ATTR}"/>
    </Dataset>
</Query>"""


def _parse_biomart_tsv(text: str) -> pd.DataFrame:
    if not text.strip():
        return pd.DataFrame(columns=[ID_ATTR, NAME_ATTR])
    df = pd.read_csv(io.StringIO(text), sep="\t", dtype=str, keep_default_na=False)
    if df.shape[1] < 2:
        raise ResolutionError(f"Unexpected BioMart response: {text[:200]!r}")
    df = df.iloc[:, :2]
    df.columns = [ID_ATTR, NAME_ATTR]
    return df


def query_biomart(
    gene_ids: List[str],
    dataset: str = DEF_DATASET,
    host: str = BIOMART_SERVER,
    timeout: int = 600,
    batch_size: int = DEF_BATCH_SIZE,
) -> pd.DataFrame:
    """
    Fetch (ensembl_gene_id, external_gene_name) for `gene_ids` from BioMart.

    The XML query is POSTed in batches of ids; a long id filter does not
    fit in a GET URL. Any network failure or BioMart-side error raises
    ResolutionError.
    """
    ids = list(dict.fromkeys(map(str, gene_ids)))
    frames = []
    for start in range(0, len(ids), batch_size):
        batch = ids[start:start + batch_size]
        logger.info(f"[S1] Querying BioMart {dataset}: ids {start + 1}-{start + len(batch)} of {len(ids)}")
        t0 = time.time()
        try:
            resp = requests.post(host, data={"query": build_query(batch, dataset)}, timeout=timeout)
            resp.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ResolutionError(f"BioMart request failed ({host}): {e}") from e

        if resp.text.startswith("Query ERROR"):
            raise ResolutionError(f"BioMart error: {resp.text[:500]}")
        frames.append(_parse_biomart_tsv(resp.text))
        logger.debug(f"  got {len(frames[-1]):,} rows in {time.time() - t0:.1f}s")

    if not frames:
        return pd.DataFrame(columns=[ID_ATTR, NAME_ATTR])
    return pd.concat(frames, ignore_index=True).drop_duplicates()


def lookup_from_table(path: str) -> Lookup:
    """
    Offline lookup from a local TSV (first two columns: gene id, symbol).
    """
    if not os.path.isfile(path):
        raise ResolutionError(f"Gene map table not found: {path}")
    table = pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
    if table.shape[1] < 2:
        raise ResolutionError(f"Gene map table needs 2 columns (gene id, symbol): {path}")
    table = table.iloc[:, :2]
    table.columns = [ID_ATTR, NAME_ATTR]

    def _lookup(gene_ids: List[str], dataset: str) -> pd.DataFrame:
        return table[table[ID_ATTR].isin(set(gene_ids))].drop_duplicates()

    return _lookup


def aggregate_counts_by_gene_name(
    counts: pd.DataFrame,
    dataset: str = DEF_DATASET,
    lookup: Optional[Lookup] = None,
    drop_first_row: bool = False,
) -> pd.DataFrame:
    """
    Re-key a CountMatrix from Ensembl gene ids to gene symbols.

    Steps
    -----
    1) Look up symbols for exactly the ids in `counts.index`.
    2) Drop ids without a result; align rows to the lookup (an id listed
       under two symbols contributes to both).
    3) Sum rows sharing a symbol; sort by symbol.
    4) Remove the empty-symbol group. With `drop_first_row=True` the first
       sorted row is removed instead, whatever its label.

    Raises
    ------
    ResolutionError
        If the lookup fails or resolves none of the ids.
    """
    lookup = lookup or query_biomart
    gene_ids = list(map(str, counts.index))
    gene_info = lookup(gene_ids, dataset)

    if gene_info is None or gene_info.empty:
        raise ResolutionError(f"BioMart returned no rows for {len(gene_ids):,} gene ids ({dataset}).")

    gene_info = gene_info[gene_info[ID_ATTR].isin(counts.index)]
    if gene_info.empty:
        raise ResolutionError("None of the count-matrix gene ids were resolved to gene symbols.")

    n_unresolved = len(set(gene_ids) - set(gene_info[ID_ATTR]))
    if n_unresolved:
        logger.info(f"[S1] {n_unresolved:,} gene id(s) without a symbol were dropped")

    aligned = counts.loc[gene_info[ID_ATTR].values]
    symbols = gene_info[NAME_ATTR].fillna("").astype(str).str.strip().values
    grouped = aligned.groupby(symbols, sort=True).sum()

    if drop_first_row:
        grouped = grouped.iloc[1:]
    else:
        grouped = grouped[grouped.index != ""]

    if grouped.empty:
        raise ResolutionError("No gene symbols left after aggregation.")
    grouped.index.name = "gene_symbol"
    logger.info(f"[S1] Aggregated {counts.shape[0]:,} gene ids into {grouped.shape[0]:,} symbols")
    return grouped
