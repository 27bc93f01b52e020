"""
pytest configuration and synthetic data for music-deconv tests.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add the src directory to the Python path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

CELL_TYPES = ["Tcell", "Bcell", "Mono"]
SUBJECTS = ["donor1", "donor2", "donor3"]
N_GENES = 30
GENES = [f"Gene{i:02d}" for i in range(1, N_GENES + 1)]
ENSEMBL = [f"ENSMUSG{i:011d}" for i in range(1, N_GENES + 1)]

TRUE_PROPS = {
    "S1": [0.6, 0.3, 0.1],
    "S2": [0.2, 0.5, 0.3],
    "S3": [0.1, 0.1, 0.8],
}


def write_abundance(path, rows):
    """rows: iterable of (target_id, eff_length, est_counts, tpm)."""
    df = pd.DataFrame(rows, columns=["target_id", "eff_length", "est_counts", "tpm"])
    df.insert(1, "length", df["eff_length"] + 50)
    df.to_csv(path, sep="\t", index=False)
    return path


def write_tx2gene(path, pairs):
    pd.DataFrame(pairs, columns=["transcript_id", "gene_id"]).to_csv(path, sep="\t", index=False)
    return path


def _make_reference(seed=0, n_cells=20):
    import anndata as ad

    rng = np.random.default_rng(seed)
    blocks, obs = [], []
    for k, ct in enumerate(CELL_TYPES):
        profile = np.full(N_GENES, 5.0)
        profile[k * 10:(k + 1) * 10] = 200.0
        for sid in SUBJECTS:
            blocks.append(rng.poisson(profile, size=(n_cells, N_GENES)))
            obs += [(ct, sid)] * n_cells
    X = np.vstack(blocks).astype(np.float32)
    obs = pd.DataFrame(obs, columns=["celltypes", "sampleIDs"])
    obs.index = [f"cell{i}" for i in range(len(obs))]
    return ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=GENES))


def _mixture_bulk(adata, props=TRUE_PROPS, depth=1000.0):
    """genes × samples bulk counts built from pooled mean cells per type."""
    X = np.asarray(adata.X)
    labels = adata.obs["celltypes"].to_numpy()
    means = np.vstack([X[labels == ct].mean(axis=0) for ct in CELL_TYPES])
    data = {s: np.asarray(p) @ means * depth for s, p in props.items()}
    return pd.DataFrame(data, index=GENES)


@pytest.fixture
def reference():
    return _make_reference()


@pytest.fixture
def reference_h5ad(tmp_path, reference):
    path = tmp_path / "reference.h5ad"
    reference.write_h5ad(path)
    return str(path)


@pytest.fixture
def mixture_bulk(reference):
    return _mixture_bulk(reference)


@pytest.fixture
def kallisto_dir(tmp_path, mixture_bulk):
    """
    One <sample>_abundance.tsv per mixture sample; transcript T<i> -> gene i,
    constant effective length so length-scaled counts equal est_counts.
    """
    d = tmp_path / "kallisto"
    d.mkdir()
    eff = 1000.0
    for sample in mixture_bulk.columns:
        est = mixture_bulk[sample].to_numpy()
        tpm = est / eff
        tpm = tpm / tpm.sum() * 1e6
        rows = [(f"T{i + 1}", eff, est[i], tpm[i]) for i in range(N_GENES)]
        write_abundance(d / f"{sample}_abundance.tsv", rows)
    return str(d)


@pytest.fixture
def tx2gene_file(tmp_path):
    pairs = [(f"T{i + 1}", f"{ENSEMBL[i]}.{i % 3 + 1}") for i in range(N_GENES)]
    return str(write_tx2gene(tmp_path / "transcripts2genes.tsv", pairs))


@pytest.fixture
def symbol_lookup():
    """Offline stand-in for BioMart: every gene resolves, plus one empty-symbol id."""
    table = pd.DataFrame({
        "ensembl_gene_id": ENSEMBL + ["ENSMUSG99999999999"],
        "external_gene_name": GENES + [""],
    })

    def _lookup(gene_ids, dataset):
        return table[table["ensembl_gene_id"].isin(set(gene_ids))].reset_index(drop=True)

    return _lookup
