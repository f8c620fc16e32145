"""
Differential abundance between conditions.

Two resolutions are offered:

  • **Cluster level** — cells per label and sample form a count table that
    is tested with the same negative-binomial GLM as pseudo-bulk DE.
  • **Neighbourhood level** — index cells are sampled on the k-NN graph,
    each index cell plus its neighbours forms a neighbourhood, cells per
    neighbourhood and sample are counted and tested, and the p-values are
    adjusted with a spatial FDR that down-weights overlapping
    neighbourhoods. This detects shifts that cut across cluster borders.

The GLM fits use pyDESeq2 with a mean dispersion trend, since there are
far fewer neighbourhoods or clusters than genes.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd
from anndata import AnnData
from scipy import sparse

from scworkflow.de import resolve_contrast, run_deseq
from scworkflow.utils import get_logger, require_obs, require_obsm

DA_COLUMNS = ["baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj"]


def _sample_metadata(
    adata: AnnData, sample_key: str, columns: Sequence[str]
) -> pd.DataFrame:
    """One row per sample with *columns*, which must be constant within a sample."""
    require_obs(adata, sample_key, *columns)
    obs = adata.obs[[sample_key, *columns]].astype(str)
    varying = [c for c in columns if obs.groupby(sample_key)[c].nunique().max() > 1]
    if varying:
        raise ValueError(f"Column(s) {varying} vary within a sample; cannot use them in the design")
    return obs.groupby(sample_key).first()


def label_abundance_table(adata: AnnData, sample_key: str, label_key: str) -> pd.DataFrame:
    """Number of cells per label (rows) and sample (columns)."""
    require_obs(adata, sample_key, label_key)
    return pd.crosstab(adata.obs[label_key].astype(str), adata.obs[sample_key].astype(str))


def cluster_da(
    adata: AnnData,
    *,
    sample_key: str,
    label_key: str,
    condition_key: str,
    contrast: Optional[Sequence[str]] = None,
    covariates: Sequence[str] = (),
    alpha: float = 0.05,
    threads: int = 1,
) -> pd.DataFrame:
    """
    Test every label for a change in abundance between conditions.

    Returns one row per label with pyDESeq2's statistics plus the label's
    cell count in each condition.
    """
    log = get_logger()
    metadata = _sample_metadata(adata, sample_key, [condition_key, *covariates])
    test, ref = resolve_contrast(metadata[condition_key], contrast)
    metadata = metadata[metadata[condition_key].isin([test, ref])]

    table = label_abundance_table(adata, sample_key, label_key)
    counts = table.T.loc[metadata.index]
    if counts.shape[1] < 2:
        raise ValueError(f"Differential abundance needs at least two labels in obs['{label_key}']")

    res = run_deseq(
        counts,
        metadata,
        condition_key,
        (test, ref),
        covariates=covariates,
        alpha=alpha,
        fit_type="mean",
        threads=threads,
    )
    res.index.name = label_key
    res = res[DA_COLUMNS].reset_index()
    for level in (test, ref):
        cols = metadata.index[metadata[condition_key] == level]
        res[f"n_cells_{level}"] = table.loc[res[label_key], cols].sum(axis=1).to_numpy()
    n_sig = int((res["padj"] < alpha).sum())
    log.info(f"Cluster-level DA: {n_sig} of {len(res)} label(s) at FDR < {alpha}")
    return res


# ---------------------------------------------------------------------------
# Neighbourhoods
# ---------------------------------------------------------------------------


def make_neighbourhoods(
    adata: AnnData,
    *,
    prop: float = 0.1,
    use_rep: str = "X_pca",
    n_pcs: Optional[int] = None,
    refined: bool = True,
    seed: int = 0,
) -> sparse.csr_matrix:
    """
    Define neighbourhoods on the k-NN graph in ``obsp["distances"]``.

    A share *prop* of cells is drawn as index cells. With *refined*, each
    draw is replaced by the member of its neighbourhood nearest to the
    neighbourhood's median position in *use_rep*, which spreads index cells
    over the graph and avoids tiny neighbourhoods; duplicates collapse.

    Membership (cells × neighbourhoods) is stored in ``obsm["nhoods"]``;
    index cell positions and their distance to the k-th neighbour go to
    ``uns["nhoods"]``.
    """
    log = get_logger()
    if not 0 < prop <= 1:
        raise ValueError(f"prop must be in (0, 1], got {prop}")
    if "distances" not in adata.obsp:
        raise KeyError("No k-NN graph in adata.obsp['distances']; run compute_neighbors first")
    require_obsm(adata, use_rep)

    knn = sparse.csr_matrix(adata.obsp["distances"])
    x = np.asarray(adata.obsm[use_rep])
    if n_pcs:
        x = x[:, :n_pcs]

    rng = np.random.default_rng(seed)
    n_index = max(1, int(round(prop * adata.n_obs)))
    drawn = rng.choice(adata.n_obs, size=n_index, replace=False)

    def members(i: int) -> np.ndarray:
        return np.append(knn.indices[knn.indptr[i] : knn.indptr[i + 1]], i)

    if refined:
        picked = []
        for i in drawn:
            nbrs = members(i)
            centre = np.median(x[nbrs], axis=0)
            picked.append(nbrs[np.argmin(np.linalg.norm(x[nbrs] - centre, axis=1))])
        index_cells = np.unique(picked)
    else:
        index_cells = np.sort(drawn)

    rows, cols, kth = [], [], []
    for j, i in enumerate(index_cells):
        nbrs = members(i)
        rows.extend(nbrs.tolist())
        cols.extend([j] * len(nbrs))
        dists = knn.data[knn.indptr[i] : knn.indptr[i + 1]]
        kth.append(float(dists.max()) if dists.size else 0.0)

    nhoods = sparse.csr_matrix(
        (np.ones(len(rows), dtype=np.float32), (rows, cols)),
        shape=(adata.n_obs, len(index_cells)),
    )
    adata.obsm["nhoods"] = nhoods
    adata.uns["nhoods"] = {
        "index_cells": np.asarray(index_cells, dtype=int),
        "kth_distance": np.asarray(kth, dtype=float),
    }
    sizes = np.asarray(nhoods.sum(axis=0)).ravel()
    log.info(
        f"Defined {len(index_cells)} neighbourhoods "
        f"(median size {np.median(sizes):.0f} cells)"
    )
    return nhoods


def count_neighbourhoods(adata: AnnData, sample_key: str) -> pd.DataFrame:
    """Cells per neighbourhood (rows) and sample (columns)."""
    require_obs(adata, sample_key)
    if "nhoods" not in adata.obsm:
        raise KeyError("No neighbourhoods found; run make_neighbourhoods first")

    samples = pd.Categorical(adata.obs[sample_key].astype(str))
    onehot = sparse.csr_matrix(
        (np.ones(adata.n_obs), (np.arange(adata.n_obs), samples.codes)),
        shape=(adata.n_obs, len(samples.categories)),
    )
    nhoods = sparse.csr_matrix(adata.obsm["nhoods"])
    counts = (nhoods.T @ onehot).toarray()
    index = [f"nhood_{j}" for j in range(nhoods.shape[1])]
    return pd.DataFrame(counts.astype(int), index=index, columns=list(samples.categories))


def spatial_fdr(pvalues, weights) -> np.ndarray:
    """
    Weighted Benjamini–Hochberg adjustment.

    Each p-value carries a weight (the inverse of its neighbourhood's
    distance to the k-th neighbour); with equal weights this is plain BH.
    NaN p-values stay NaN.
    """
    p = np.asarray(pvalues, dtype=float)
    w = np.asarray(weights, dtype=float)
    if p.shape != w.shape:
        raise ValueError("pvalues and weights must have the same length")

    out = np.full(p.shape, np.nan)
    ok = ~np.isnan(p)
    if not ok.any():
        return out

    pv, wv = p[ok], w[ok]
    order = np.argsort(pv, kind="mergesort")
    ps, ws = pv[order], wv[order]
    adj = ws.sum() * ps / np.cumsum(ws)
    adj = np.minimum.accumulate(adj[::-1])[::-1]
    adj = np.minimum(adj, 1.0)

    result = np.empty_like(adj)
    result[order] = adj
    out[ok] = result
    return out


def annotate_neighbourhoods(adata: AnnData, label_key: str) -> pd.DataFrame:
    """Majority label of each neighbourhood and the share of its cells carrying it."""
    require_obs(adata, label_key)
    labels = pd.Categorical(adata.obs[label_key].astype(str))
    onehot = sparse.csr_matrix(
        (np.ones(adata.n_obs), (np.arange(adata.n_obs), labels.codes)),
        shape=(adata.n_obs, len(labels.categories)),
    )
    nhoods = sparse.csr_matrix(adata.obsm["nhoods"])
    per_label = (nhoods.T @ onehot).toarray()
    totals = per_label.sum(axis=1)
    best = per_label.argmax(axis=1)
    return pd.DataFrame(
        {
            label_key: np.asarray(labels.categories)[best],
            f"{label_key}_fraction": per_label[np.arange(len(best)), best] / np.maximum(totals, 1),
        },
        index=[f"nhood_{j}" for j in range(nhoods.shape[1])],
    )


def neighbourhood_da(
    adata: AnnData,
    *,
    sample_key: str,
    condition_key: str,
    contrast: Optional[Sequence[str]] = None,
    covariates: Sequence[str] = (),
    label_key: Optional[str] = None,
    alpha: float = 0.1,
    threads: int = 1,
) -> pd.DataFrame:
    """
    Test every neighbourhood for a change in abundance between conditions.

    Returns one row per neighbourhood with its size, index cell, pyDESeq2
    statistics, the spatial FDR and, with *label_key*, its majority label.
    """
    log = get_logger()
    metadata = _sample_metadata(adata, sample_key, [condition_key, *covariates])
    test, ref = resolve_contrast(metadata[condition_key], contrast)
    metadata = metadata[metadata[condition_key].isin([test, ref])]

    table = count_neighbourhoods(adata, sample_key)
    counts = table.T.loc[metadata.index]
    res = run_deseq(
        counts,
        metadata,
        condition_key,
        (test, ref),
        covariates=covariates,
        alpha=alpha,
        fit_type="mean",
        threads=threads,
    )
    res = res.reindex(table.index)[DA_COLUMNS]

    info = adata.uns["nhoods"]
    kth = np.asarray(info["kth_distance"], dtype=float)
    positive = kth[kth > 0]
    kth = np.where(kth > 0, kth, positive.min() if positive.size else 1.0)
    weights = 1.0 / kth
    res["SpatialFDR"] = spatial_fdr(res["pvalue"].to_numpy(), weights)
    res.insert(0, "n_cells", table.sum(axis=1).to_numpy())
    res.insert(1, "index_cell", np.asarray(adata.obs_names)[np.asarray(info["index_cells"], dtype=int)])

    if label_key is not None:
        res = res.join(annotate_neighbourhoods(adata, label_key))
    res.index.name = "nhood"
    n_sig = int((res["SpatialFDR"] < alpha).sum())
    log.info(f"Neighbourhood DA: {n_sig} of {len(res)} neighbourhood(s) at SpatialFDR < {alpha}")
    return res.reset_index()
