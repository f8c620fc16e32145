"""
Dimensionality reduction: PCA, choice of the number of PCs, the k-NN
graph, t-SNE and UMAP.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import scanpy as sc
from anndata import AnnData

from scworkflow.utils import get_logger, require_obsm


def run_pca(
    adata: AnnData,
    *,
    n_comps: int = 50,
    use_hvgs: bool = True,
    seed: int = 0,
) -> AnnData:
    """
    PCA on the (log-normalised) expression of the highly variable genes.

    The number of components is capped by the number of cells and genes
    available.
    """
    log = get_logger()
    mask = None
    n_features = adata.n_vars
    if use_hvgs:
        if "highly_variable" not in adata.var.columns:
            raise KeyError("No 'highly_variable' column in adata.var; run select_hvgs first")
        mask = "highly_variable"
        n_features = int(adata.var["highly_variable"].sum())

    n_comps = max(1, min(n_comps, adata.n_obs - 1, n_features - 1))
    sc.tl.pca(adata, n_comps=n_comps, mask_var=mask, random_state=seed)
    explained = float(np.sum(adata.uns["pca"]["variance_ratio"]))
    log.info(f"PCA: {n_comps} components explain {explained:.1%} of the variance")
    return adata


def choose_n_pcs(
    adata: AnnData,
    *,
    method: str = "elbow",
    min_variance: float = 0.8,
    n_pcs: Optional[int] = None,
) -> int:
    """
    Choose how many PCs to keep downstream.

    ``elbow`` takes the point of the variance-explained curve farthest from
    the chord joining its ends; ``variance`` the fewest PCs whose
    cumulative share of the computed variance reaches *min_variance*;
    ``fixed`` returns *n_pcs*. The answer is at least 2 (when available) and
    at most the number of computed PCs.
    """
    if "pca" not in adata.uns:
        raise KeyError("PCA has not been computed; run run_pca first")
    ratio = np.asarray(adata.uns["pca"]["variance_ratio"], dtype=float)
    total = len(ratio)

    if method == "fixed":
        if n_pcs is None:
            raise ValueError("method 'fixed' needs n_pcs")
        chosen = n_pcs
    elif method == "elbow":
        if total < 3:
            chosen = total
        else:
            x = np.arange(1, total + 1, dtype=float)
            x0, y0, x1, y1 = x[0], ratio[0], x[-1], ratio[-1]
            norm = np.hypot(x1 - x0, y1 - y0)
            dist = np.abs((y1 - y0) * x - (x1 - x0) * ratio + x1 * y0 - y1 * x0) / norm
            chosen = int(np.argmax(dist)) + 1
    elif method == "variance":
        if not 0 < min_variance <= 1:
            raise ValueError(f"min_variance must be in (0, 1], got {min_variance}")
        cumulative = np.cumsum(ratio) / ratio.sum()
        chosen = int(np.searchsorted(cumulative, min_variance) + 1)
    else:
        raise ValueError(f"Unknown method '{method}'. Choose from: ['elbow', 'variance', 'fixed']")

    chosen = int(min(max(chosen, min(2, total)), total))
    adata.uns["n_pcs"] = chosen
    get_logger().info(f"Keeping {chosen} of {total} PCs ({method})")
    return chosen


def compute_neighbors(
    adata: AnnData,
    *,
    n_neighbors: int = 10,
    n_pcs: Optional[int] = None,
    use_rep: str = "X_pca",
    seed: int = 0,
) -> AnnData:
    """Build the k-NN graph (``obsp["distances"]``/``obsp["connectivities"]``)."""
    require_obsm(adata, use_rep)
    n_neighbors = max(2, min(n_neighbors, adata.n_obs - 1))
    sc.pp.neighbors(
        adata,
        n_neighbors=n_neighbors,
        n_pcs=n_pcs,
        use_rep=use_rep,
        random_state=seed,
    )
    return adata


def run_tsne(
    adata: AnnData,
    *,
    perplexity: float = 30.0,
    use_rep: str = "X_pca",
    n_pcs: Optional[int] = None,
    seed: int = 0,
) -> AnnData:
    """t-SNE embedding into ``obsm["X_tsne"]``; perplexity is capped for small data."""
    require_obsm(adata, use_rep)
    perplexity = min(perplexity, max(1.0, (adata.n_obs - 1) / 3))
    sc.tl.tsne(adata, perplexity=perplexity, use_rep=use_rep, n_pcs=n_pcs, random_state=seed)
    return adata


def run_umap(adata: AnnData, *, min_dist: float = 0.5, seed: int = 0) -> AnnData:
    """UMAP embedding into ``obsm["X_umap"]`` from the current k-NN graph."""
    if "neighbors" not in adata.uns:
        raise KeyError("No neighbour graph found; run compute_neighbors first")
    sc.tl.umap(adata, min_dist=min_dist, random_state=seed)
    return adata
