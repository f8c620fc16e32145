"""
Feature selection: highly variable genes.
"""

from __future__ import annotations

from typing import Optional

import pandas as pd
import scanpy as sc
from anndata import AnnData

from scworkflow.utils import get_logger, require_obs

FLAVORS = ("seurat", "cell_ranger", "seurat_v3", "pearson_residuals")

# Columns scanpy writes for each flavour; the first present one ranks genes.
_RANK_COLUMNS = ("highly_variable_rank", "dispersions_norm", "residual_variances", "variances_norm")


def select_hvgs(
    adata: AnnData,
    *,
    n_top_genes: Optional[int] = 2000,
    fraction: Optional[float] = None,
    flavor: str = "seurat",
    batch_key: Optional[str] = None,
    layer: str = "counts",
) -> pd.DataFrame:
    """
    Mark highly variable genes in ``var["highly_variable"]``.

    Either *n_top_genes* or *fraction* (share of all genes) sets how many
    genes are kept; *fraction* wins when both are given. Asking for more
    genes than exist keeps every gene. ``seurat_v3`` and
    ``pearson_residuals`` model raw counts from *layer*; the other
    flavours expect log-normalised ``.X``.

    Returns the per-gene variance table, most variable first.
    """
    log = get_logger()
    if flavor not in FLAVORS:
        raise ValueError(f"Unknown HVG flavor '{flavor}'. Choose from: {list(FLAVORS)}")
    if batch_key is not None:
        require_obs(adata, batch_key)

    if fraction is not None:
        if not 0 < fraction <= 1:
            raise ValueError(f"fraction must be in (0, 1], got {fraction}")
        n_top_genes = max(1, int(round(fraction * adata.n_vars)))
    if n_top_genes is not None:
        if n_top_genes <= 0:
            raise ValueError(f"n_top_genes must be positive, got {n_top_genes}")
        n_top_genes = min(n_top_genes, adata.n_vars)
    elif flavor in ("seurat_v3", "pearson_residuals"):
        raise ValueError(f"flavor '{flavor}' needs n_top_genes or fraction")

    if flavor == "pearson_residuals":
        sc.experimental.pp.highly_variable_genes(
            adata,
            flavor="pearson_residuals",
            n_top_genes=n_top_genes,
            batch_key=batch_key,
            layer=layer,
        )
    else:
        sc.pp.highly_variable_genes(
            adata,
            n_top_genes=n_top_genes,
            flavor=flavor,
            batch_key=batch_key,
            layer=layer if flavor == "seurat_v3" else None,
        )

    rank_col = next((c for c in _RANK_COLUMNS if c in adata.var.columns), None)
    keep = [c for c in adata.var.columns if c in (
        "means", "dispersions", "dispersions_norm", "variances", "variances_norm",
        "residual_variances", "highly_variable_rank", "highly_variable",
    )]
    table = adata.var[keep].copy()
    if rank_col == "highly_variable_rank":
        table = table.sort_values(rank_col, na_position="last")
    elif rank_col is not None:
        table = table.sort_values(rank_col, ascending=False, na_position="last")
    table.index.name = "gene"

    n_hvg = int(adata.var["highly_variable"].sum())
    log.info(f"Selected {n_hvg:,} highly variable genes ({flavor})")
    return table
