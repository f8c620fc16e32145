"""
Marker genes and cell-type annotation.

Markers come from scanpy's ``rank_genes_groups`` (each cluster against the
rest) and are returned as one tidy table. Annotation scores known marker
sets per cell and gives each cluster the label of its best-scoring set.
"""

from __future__ import annotations

from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from scworkflow.utils import get_logger, require_obs

METHODS = ("wilcoxon", "t-test", "t-test_overestim_var", "logreg")

_COLUMN_MAP = {
    "names": "gene",
    "scores": "score",
    "logfoldchanges": "logfc",
    "pvals": "pval",
    "pvals_adj": "padj",
    "pct_nz_group": "pct_in",
    "pct_nz_reference": "pct_out",
}
MARKER_COLUMNS = ["group", *_COLUMN_MAP.values()]


def find_markers(
    adata: AnnData,
    groupby: str,
    *,
    method: str = "wilcoxon",
    layer: Optional[str] = None,
    key_added: str = "rank_genes_groups",
) -> pd.DataFrame:
    """
    Rank marker genes for every group of ``obs[groupby]`` against the rest.

    Returns a tidy table with columns ``group, gene, score, logfc, pval,
    padj, pct_in, pct_out`` ordered by group then score. Statistics a
    method does not produce (``logreg`` has no p-values) are NaN.
    """
    log = get_logger()
    if method not in METHODS:
        raise ValueError(f"Unknown marker method '{method}'. Choose from: {list(METHODS)}")
    require_obs(adata, groupby)
    if not isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        adata.obs[groupby] = adata.obs[groupby].astype(str).astype("category")
    adata.obs[groupby] = adata.obs[groupby].cat.remove_unused_categories()

    sizes = adata.obs[groupby].value_counts()
    tiny = sizes[sizes < 2].index.tolist()
    if tiny:
        raise ValueError(f"Groups {tiny} in obs['{groupby}'] have fewer than two cells")

    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        use_raw=False,
        layer=layer,
        pts=method != "logreg",
        key_added=key_added,
    )
    df = sc.get.rank_genes_groups_df(adata, group=None, key=key_added)
    if "group" not in df.columns:
        # single-group results come back without the group column
        df.insert(0, "group", adata.obs[groupby].cat.categories[0])
    df = df.rename(columns=_COLUMN_MAP)
    for col in MARKER_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan
    df["group"] = df["group"].astype(str)
    df = df[MARKER_COLUMNS].sort_values(["group", "score"], ascending=[True, False])
    log.info(
        f"Ranked markers for {df['group'].nunique()} group(s) of obs['{groupby}'] ({method})"
    )
    return df.reset_index(drop=True)


def top_markers(
    markers: pd.DataFrame,
    n: int = 10,
    *,
    min_logfc: Optional[float] = None,
) -> dict[str, list[str]]:
    """Top *n* genes per group from a :func:`find_markers` table."""
    df = markers
    if min_logfc is not None:
        df = df[df["logfc"] >= min_logfc]
    df = df.sort_values(["group", "score"], ascending=[True, False])
    return {
        str(group): sub["gene"].head(n).tolist()
        for group, sub in df.groupby("group", sort=True)
    }


def annotate_clusters(
    adata: AnnData,
    marker_sets: Mapping[str, Sequence[str]],
    groupby: str,
    *,
    key_added: str = "cell_type",
    seed: int = 0,
) -> pd.DataFrame:
    """
    Label clusters by the marker set scoring highest on average.

    Each set is scored per cell with ``scanpy.tl.score_genes`` into
    ``obs[f"score_{name}"]``. Genes missing from the data are dropped; sets
    left empty are skipped. Returns the cluster × set table of mean scores
    with the assigned label in its last column.
    """
    log = get_logger()
    require_obs(adata, groupby)

    score_cols: dict[str, str] = {}
    for name, genes in marker_sets.items():
        present = [g for g in genes if g in adata.var_names]
        missing = sorted(set(genes) - set(present))
        if missing:
            log.warning(f"Marker set '{name}': {len(missing)} gene(s) not found: {missing[:10]}")
        if not present:
            log.warning(f"Marker set '{name}' has no genes in the data; skipped")
            continue
        col = f"score_{name}"
        sc.tl.score_genes(adata, present, score_name=col, random_state=seed, use_raw=False)
        score_cols[name] = col

    if not score_cols:
        raise ValueError("None of the marker sets has genes present in the data")

    scores = adata.obs[list(score_cols.values())].copy()
    scores.columns = list(score_cols.keys())
    table = scores.groupby(adata.obs[groupby], observed=True).mean()
    table[key_added] = table.idxmax(axis=1)

    mapping = table[key_added].to_dict()
    adata.obs[key_added] = pd.Categorical(adata.obs[groupby].map(mapping).astype(str))
    log.info(f"Annotated {len(mapping)} clusters into {table[key_added].nunique()} cell type(s)")
    table.index = table.index.astype(str)
    table.index.name = groupby
    return table
