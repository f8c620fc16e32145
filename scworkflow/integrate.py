"""
Batch correction.

Harmony corrects the PCA embedding (``obsm["X_pca_harmony"]``) and leaves
expression values untouched. ComBat corrects the expression matrix; the
corrected values go to ``layers["combat"]`` and the PCA computed from them
to ``obsm["X_pca_combat"]``, while ``.X`` is restored afterwards so that
markers and differential expression keep using uncorrected values.
"""

from __future__ import annotations

from typing import Optional

import pandas as pd
import scanpy as sc
from anndata import AnnData

from scworkflow.reduce import run_pca
from scworkflow.utils import get_logger, require_obs, require_obsm

METHODS = ("harmony", "combat", "none")


def correct_batch(
    adata: AnnData,
    batch_key: str,
    *,
    method: str = "harmony",
    basis: str = "X_pca",
    n_comps: Optional[int] = None,
    seed: int = 0,
) -> str:
    """
    Remove batch effects and return the ``obsm`` key of the corrected embedding.

    With a single batch, or ``method="none"``, nothing is changed and
    *basis* is returned.
    """
    log = get_logger()
    if method not in METHODS:
        raise ValueError(f"Unknown batch correction '{method}'. Choose from: {list(METHODS)}")
    if method == "none":
        return basis

    require_obs(adata, batch_key)
    n_batches = adata.obs[batch_key].nunique()
    if n_batches < 2:
        log.warning(f"Only one batch in obs['{batch_key}']; skipping batch correction")
        return basis

    if method == "harmony":
        require_obsm(adata, basis)
        key = f"{basis}_harmony"
        sc.external.pp.harmony_integrate(
            adata,
            key=batch_key,
            basis=basis,
            adjusted_basis=key,
            random_state=seed,
        )
        log.info(f"Harmony corrected {basis} across {n_batches} batches → obsm['{key}']")
        return key

    # ComBat
    original_x = adata.X.copy()
    original_pca = adata.obsm.get("X_pca")
    original_uns = adata.uns.get("pca")
    original_pcs = adata.varm.get("PCs")
    if n_comps is None:
        n_comps = adata.obsm["X_pca"].shape[1] if "X_pca" in adata.obsm else 50

    adata.obs[batch_key] = adata.obs[batch_key].astype("category")
    sc.pp.combat(adata, key=batch_key)
    adata.layers["combat"] = adata.X.copy()
    run_pca(adata, n_comps=n_comps, use_hvgs="highly_variable" in adata.var.columns, seed=seed)
    adata.obsm["X_pca_combat"] = adata.obsm["X_pca"]

    adata.X = original_x
    if original_pca is not None:
        adata.obsm["X_pca"] = original_pca
        adata.uns["pca"] = original_uns
        if original_pcs is not None:
            adata.varm["PCs"] = original_pcs
    log.info(f"ComBat corrected expression across {n_batches} batches → obsm['X_pca_combat']")
    return "X_pca_combat"


def batch_composition(
    adata: AnnData,
    batch_key: str,
    groupby: str,
    *,
    normalize: bool = True,
) -> pd.DataFrame:
    """
    Cells per cluster (rows) and batch (columns).

    With *normalize*, every row sums to one: clusters made of a single
    batch point at residual batch effects.
    """
    require_obs(adata, batch_key, groupby)
    return pd.crosstab(
        adata.obs[groupby],
        adata.obs[batch_key],
        normalize="index" if normalize else False,
    )
