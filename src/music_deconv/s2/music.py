#!/usr/bin/env python3
"""
S2 (deconvolution): MuSiC multi-subject single-cell deconvolution
music_basis, music_prop

Python port of the weighted non-negative least squares estimator of
Wang et al. (2019), https://doi.org/10.1038/s41467-018-08023-x.

The single-cell reference supplies, per cell type:
  - M.theta : mean (over subjects) relative abundance of each gene
  - Sigma   : cross-subject variance of that relative abundance
  - M.S     : mean library size per cell
and the design matrix is M.theta scaled by M.S. Each bulk sample is fitted
by NNLS, then refitted with gene weights 1/(nu + r^2 + sum_k (x_k S_k)^2 Sigma_gk)
until the proportions stop moving.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.optimize import nnls

from ..errors import DeconvolutionError

logger = logging.getLogger(__name__)

DEF_ITER_MAX = 1000
DEF_NU = 1e-4
DEF_EPS = 0.01


@dataclass
class MusicBasis:
    disgn_mtx: pd.DataFrame   # genes × cell types
    m_theta: pd.DataFrame     # genes × cell types
    sigma: pd.DataFrame       # genes × cell types
    s: pd.DataFrame           # subjects × cell types (mean library size per cell)
    m_s: pd.Series            # cell types


@dataclass
class MusicFit:
    p_nnls: np.ndarray
    p_weight: np.ndarray
    q_weight: np.ndarray
    weight_gene: np.ndarray
    r_squared: float
    var_p: np.ndarray
    converged: bool
    n_iter: int


@dataclass
class MusicResult:
    """All matrices are cell types × samples except weight_gene (genes × samples)."""
    est_prop_weighted: pd.DataFrame
    est_prop_allgene: pd.DataFrame
    weight_gene: pd.DataFrame
    r_squared_full: pd.Series
    var_prop: pd.DataFrame


def _group_sums(X, mask: np.ndarray) -> np.ndarray:
    sub = X[mask]
    if sp.issparse(sub):
        return np.asarray(sub.sum(axis=0)).ravel().astype(float)
    return np.asarray(sub, dtype=float).sum(axis=0)


def _var_across_rows(m: np.ndarray) -> np.ndarray:
    """Sample variance (n-1) per column ignoring NaN rows; NaN with < 2 rows."""
    ok = ~np.isnan(m)
    n = ok.sum(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = np.where(ok, m, 0.0).sum(axis=0) / n
        ss = np.where(ok, (m - mean) ** 2, 0.0).sum(axis=0)
        var = ss / (n - 1)
    var[n < 2] = np.nan
    return var


def _nanmean_rows(m: np.ndarray) -> np.ndarray:
    ok = ~np.isnan(m)
    n = ok.sum(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        out = np.where(ok, m, 0.0).sum(axis=0) / n
    out[n == 0] = np.nan
    return out


def music_basis(
    reference,
    clusters: str,
    samples: str,
    select_ct: Optional[Sequence[str]] = None,
    non_zero: bool = True,
) -> MusicBasis:
    """
    Build the MuSiC design matrix from an AnnData reference (cells × genes).
    """
    obs = reference.obs
    ct_labels = obs[clusters].astype(str).to_numpy()
    sid_labels = obs[samples].astype(str).to_numpy()
    X = reference.X
    genes = pd.Index(reference.var_names.astype(str))

    if select_ct is not None:
        keep = np.isin(ct_labels, [str(c) for c in select_ct])
        if not keep.any():
            raise DeconvolutionError(f"None of the selected cell types are in the reference: {list(select_ct)}")
        X, ct_labels, sid_labels = X[keep], ct_labels[keep], sid_labels[keep]

    if sp.issparse(X):
        X = X.tocsr()

    if non_zero:
        gene_tot = _group_sums(X, np.ones(X.shape[0], dtype=bool))
        nz = gene_tot != 0
        X = X[:, nz]
        genes = genes[nz]

    cell_types = list(pd.unique(ct_labels))
    subjects = list(pd.unique(sid_labels))

    theta = np.full((len(genes), len(cell_types)), np.nan)
    sigma = np.full((len(genes), len(cell_types)), np.nan)
    libsize = np.full((len(subjects), len(cell_types)), np.nan)

    for j, ct in enumerate(cell_types):
        rel = np.full((len(subjects), len(genes)), np.nan)
        for i, sid in enumerate(subjects):
            mask = (ct_labels == ct) & (sid_labels == sid)
            n_cells = int(mask.sum())
            if n_cells == 0:
                continue
            row = _group_sums(X, mask)
            total = row.sum()
            if total > 0:
                rel[i] = row / total
            libsize[i, j] = total / n_cells
        theta[:, j] = _nanmean_rows(rel)
        sigma[:, j] = _var_across_rows(rel)

    libsize[libsize == 0] = np.nan
    m_s = _nanmean_rows(libsize)

    m_theta = pd.DataFrame(theta, index=genes, columns=cell_types)
    return MusicBasis(
        disgn_mtx=m_theta * m_s,
        m_theta=m_theta,
        sigma=pd.DataFrame(sigma, index=genes, columns=cell_types),
        s=pd.DataFrame(libsize, index=subjects, columns=cell_types),
        m_s=pd.Series(m_s, index=cell_types),
    )


def _nnls(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    try:
        x, _ = nnls(A, b)
    except RuntimeError as e:
        raise DeconvolutionError(f"NNLS failed: {e}") from e
    if x.sum() <= 0:
        raise DeconvolutionError("NNLS returned an all-zero solution; no cell type explains this sample.")
    return x


def music_basic(
    Y: np.ndarray,
    X: np.ndarray,
    S: np.ndarray,
    Sigma: np.ndarray,
    iter_max: int = DEF_ITER_MAX,
    nu: float = DEF_NU,
    eps: float = DEF_EPS,
) -> MusicFit:
    """Iteratively reweighted NNLS for one bulk sample (Y already scaled)."""

    def gene_weights(x: np.ndarray, r: np.ndarray) -> np.ndarray:
        return 1.0 / (nu + r ** 2 + (((x * S) ** 2) * Sigma).sum(axis=1))

    x0 = _nnls(X, Y)
    p_nnls = x0 / x0.sum()
    r = Y - X @ x0

    w = gene_weights(x0, r)
    sw = np.sqrt(w)
    Dw = X * sw[:, None]
    xw = _nnls(Dw, Y * sw)
    p_weight = xw / xw.sum()
    r = Y * sw - Dw @ xw

    converged = False
    n_iter = 0
    for n_iter in range(1, iter_max + 1):
        w = gene_weights(xw, r)
        sw = np.sqrt(w)
        Dw = X * sw[:, None]
        xw = _nnls(Dw, Y * sw)
        p_new = xw / xw.sum()
        r_new = Y * sw - Dw @ xw
        done = np.abs(p_new - p_weight).sum() < eps
        p_weight, r = p_new, r_new
        if done:
            converged = True
            break

    fitted = X @ xw
    var_y = np.var(Y, ddof=1) if Y.size > 1 else 0.0
    r_squared = float(1.0 - np.var(Y - fitted, ddof=1) / var_y) if var_y > 0 else float("nan")
    try:
        var_p = np.diag(np.linalg.inv(Dw.T @ Dw)) * np.mean(r ** 2) / xw.sum() ** 2
    except np.linalg.LinAlgError as e:
        raise DeconvolutionError(f"Singular weighted design matrix: {e}") from e

    return MusicFit(
        p_nnls=p_nnls,
        p_weight=p_weight,
        q_weight=xw,
        weight_gene=w,
        r_squared=r_squared,
        var_p=var_p,
        converged=converged,
        n_iter=n_iter,
    )


def music_prop(
    bulk: pd.DataFrame,
    reference,
    clusters: str = "celltypes",
    samples: str = "sampleIDs",
    select_ct: Optional[Sequence[str]] = None,
    iter_max: int = DEF_ITER_MAX,
    nu: float = DEF_NU,
    eps: float = DEF_EPS,
    verbose: bool = False,
) -> MusicResult:
    """
    Estimate cell-type proportions of each bulk sample.

    Parameters
    ----------
    bulk : DataFrame
        genes × samples counts; gene labels must share the reference's namespace.
    reference : AnnData
        cells × genes counts with `obs[clusters]` and `obs[samples]`.
    select_ct : list[str] | None
        Restrict the reference to these cell types; None uses all of them.

    Returns
    -------
    MusicResult with est_prop_weighted as cell types × samples.
    """
    log = logger.info if verbose else logger.debug

    bulk = bulk.astype(float)
    bulk.index = bulk.index.astype(str)
    bulk = bulk[~bulk.index.duplicated(keep="first")]
    bulk_gene = bulk.index[bulk.mean(axis=1) != 0]
    bulk = bulk.loc[bulk_gene]

    basis = music_basis(reference, clusters=clusters, samples=samples, select_ct=select_ct)
    n_sc_genes = int(reference.n_vars)

    cm_gene = basis.disgn_mtx.index[basis.disgn_mtx.index.isin(bulk_gene)]
    if len(cm_gene) == 0 or len(cm_gene) < 0.2 * min(len(bulk_gene), n_sc_genes):
        raise DeconvolutionError(
            f"Too few common genes! {len(cm_gene)} shared between bulk ({len(bulk_gene)}) "
            f"and reference ({n_sc_genes})."
        )
    log(f"[S2] Used {len(cm_gene)} common genes...")

    D1 = basis.disgn_mtx.loc[cm_gene]
    Sigma = basis.sigma.loc[cm_gene]
    M_S = basis.m_s
    Yjg = bulk.loc[cm_gene]
    lib = Yjg.sum(axis=0)
    if (lib <= 0).any():
        empty = ", ".join(map(str, lib.index[lib <= 0]))
        raise DeconvolutionError(f"Bulk sample(s) with no expression over the common genes: {empty}")
    Yjg = Yjg / lib

    valid_ct = (Sigma.isna().sum(axis=0) == 0) & (D1.isna().sum(axis=0) == 0) & M_S.notna()
    if int(valid_ct.sum()) <= 1:
        raise DeconvolutionError("Not enough valid cell type!")
    cell_types = list(valid_ct.index[valid_ct])
    log(f"[S2] Used {', '.join(map(str, cell_types))} in analysis")

    D = D1[cell_types].to_numpy()
    Sg = Sigma[cell_types].to_numpy()
    S = M_S[cell_types].to_numpy()

    sample_names = list(map(str, Yjg.columns))
    weighted, allgene, var_prop, r2 = {}, {}, {}, {}
    weight_gene = pd.DataFrame(np.nan, index=cm_gene, columns=sample_names)

    for name in sample_names:
        y = Yjg[name].to_numpy()
        nz = y != 0
        fit = music_basic(y[nz] * 100, D[nz], S, Sg[nz], iter_max=iter_max, nu=nu, eps=eps)
        weighted[name] = fit.p_weight
        allgene[name] = fit.p_nnls
        var_prop[name] = fit.var_p
        r2[name] = fit.r_squared
        weight_gene.loc[cm_gene[nz], name] = fit.weight_gene
        state = f"converged at {fit.n_iter}" if fit.converged else "reached iter_max"
        log(f"[S2] {name} has common genes {int(nz.sum())}; {state}")

    return MusicResult(
        est_prop_weighted=pd.DataFrame(weighted, index=cell_types),
        est_prop_allgene=pd.DataFrame(allgene, index=cell_types),
        weight_gene=weight_gene,
        r_squared_full=pd.Series(r2, name="r_squared"),
        var_prop=pd.DataFrame(var_prop, index=cell_types),
    )
