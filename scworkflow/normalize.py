"""
Normalisation module.

Two methods are offered:
  • ``library_size`` — size factors proportional to each cell's total
    count (centred to mean 1), scaling to a common total, then ``log1p``.
    This is the course default.
  • ``pearson_residuals`` — analytic Pearson residuals of a
    negative-binomial null model (the sctransform approach), through
    scanpy's experimental API.

Raw counts stay in ``layers["counts"]``; ``.X`` holds the normalised values.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
import scanpy as sc
from anndata import AnnData
from scipy import sparse

from scworkflow.utils import get_logger

METHODS = ("library_size", "pearson_residuals")


def library_size_factors(counts) -> np.ndarray:
    """Per-cell library sizes scaled to a mean of one."""
    totals = np.asarray(counts.sum(axis=1), dtype=float).ravel()
    mean = totals.mean() if totals.size else 0.0
    if mean <= 0:
        raise ValueError("All cells have zero counts; cannot compute size factors")
    return totals / mean


def normalize(
    adata: AnnData,
    *,
    method: str = "library_size",
    target_sum: Optional[float] = None,
    theta: float = 100.0,
) -> AnnData:
    """
    Normalise ``adata`` in place from the counts layer.

    Parameters
    ----------
    method : {"library_size", "pearson_residuals"}
        Normalisation strategy.
    target_sum : float, optional
        Library-size method only: total each cell is scaled to. Defaults to
        the mean library size, so normalised values stay on the count scale.
    theta : float
        Pearson residuals only: overdispersion of the null model.
    """
    log = get_logger()
    if method not in METHODS:
        raise ValueError(f"Unknown normalisation method '{method}'. Choose from: {list(METHODS)}")

    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()
    counts = adata.layers["counts"]

    size_factors = library_size_factors(counts)
    adata.obs["size_factor"] = size_factors

    adata.X = counts.astype(np.float32) if sparse.issparse(counts) else np.array(
        counts, dtype=np.float32
    )
    if method == "library_size":
        if target_sum is None:
            target_sum = float(np.asarray(counts.sum(axis=1)).mean())
        sc.pp.normalize_total(adata, target_sum=target_sum)
        sc.pp.log1p(adata)
        log.info(f"Library-size normalised {adata.n_obs:,} cells (target sum {target_sum:,.0f})")
    else:
        sc.experimental.pp.normalize_pearson_residuals(adata, theta=theta)
        log.info(f"Computed Pearson residuals for {adata.n_obs:,} cells (theta={theta})")

    adata.uns["normalization"] = {"method": method}
    return adata
