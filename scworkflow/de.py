"""
Pseudo-bulk differential expression between conditions.

Counts of every cell sharing a sample and a label (cluster or cell type)
are summed into one pseudo-bulk profile. Each label is then tested
separately with **pyDESeq2**: negative-binomial GLM, shrunk dispersion
estimates, Wald test and Benjamini–Hochberg adjustment. Samples, not
cells, are the replicates.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import pandas as pd
from anndata import AnnData
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats
from scipy import sparse

from scworkflow.utils import counts_matrix, get_logger, require_obs

DE_COLUMNS = [
    "label",
    "gene",
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
]


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _sample_level_columns(obs: pd.DataFrame, sample_key: str) -> list[str]:
    """obs columns holding a single value per sample (condition, batch, ...)."""
    cols = []
    for col in obs.columns:
        if col == sample_key:
            continue
        if obs.groupby(sample_key, observed=True)[col].nunique(dropna=False).max() <= 1:
            cols.append(col)
    return cols


def aggregate_pseudobulk(
    adata: AnnData,
    sample_key: str,
    label_key: str,
    *,
    layer: Optional[str] = "counts",
    min_cells: int = 10,
) -> AnnData:
    """
    Sum raw counts per sample × label combination.

    Returns an AnnData with one observation per combination holding at
    least *min_cells* cells. ``obs`` carries the sample, the label, the
    number of summed cells (``n_cells``) and every sample-level metadata
    column of the input.
    """
    log = get_logger()
    require_obs(adata, sample_key, label_key)

    obs = adata.obs
    samples = obs[sample_key].astype(str).to_numpy()
    labels = obs[label_key].astype(str).to_numpy()
    groups = pd.MultiIndex.from_arrays([samples, labels], names=[sample_key, label_key])
    codes, uniques = groups.factorize(sort=True)

    indicator = sparse.csr_matrix(
        (np.ones(adata.n_obs), (codes, np.arange(adata.n_obs))),
        shape=(len(uniques), adata.n_obs),
    )
    summed = indicator @ sparse.csr_matrix(counts_matrix(adata, layer))
    n_cells = np.asarray(indicator.sum(axis=1)).ravel().astype(int)

    pb_obs = pd.DataFrame(
        {
            sample_key: [u[0] for u in uniques],
            label_key: [u[1] for u in uniques],
            "n_cells": n_cells,
        }
    )
    meta_cols = _sample_level_columns(obs, sample_key)
    if meta_cols:
        per_sample = obs.groupby(sample_key, observed=True)[meta_cols].first()
        per_sample.index = per_sample.index.astype(str)
        for col in meta_cols:
            if col == label_key:
                continue
            pb_obs[col] = pb_obs[sample_key].map(per_sample[col].astype(str)).to_numpy()
    pb_obs.index = [f"{s}_{l}" for s, l in uniques]

    pb = AnnData(
        X=sparse.csr_matrix(np.rint(summed.toarray())),
        obs=pb_obs,
        var=pd.DataFrame(index=adata.var_names.copy()),
    )
    pb.obs_names_make_unique()
    keep = pb.obs["n_cells"].to_numpy() >= min_cells
    dropped = int((~keep).sum())
    if dropped:
        log.info(f"Dropped {dropped} pseudo-bulk profile(s) with fewer than {min_cells} cells")
    pb = pb[keep].copy()
    log.info(
        f"Aggregated {adata.n_obs:,} cells into {pb.n_obs} pseudo-bulk profiles "
        f"({pb.obs[sample_key].nunique()} samples × {pb.obs[label_key].nunique()} labels)"
    )
    return pb


# ---------------------------------------------------------------------------
# pyDESeq2
# ---------------------------------------------------------------------------


def resolve_contrast(values: pd.Series, contrast: Optional[Sequence[str]] = None) -> tuple[str, str]:
    """
    Return ``(test, reference)`` levels.

    Without an explicit contrast the condition must have exactly two
    levels; the alphabetically first becomes the reference.
    """
    levels = sorted(pd.Series(values).astype(str).unique())
    if contrast is not None:
        test, ref = (str(c) for c in contrast)
        missing = [c for c in (test, ref) if c not in levels]
        if missing:
            raise ValueError(f"Contrast level(s) {missing} not found. Available levels: {levels}")
        return test, ref
    if len(levels) != 2:
        raise ValueError(
            f"Condition has {len(levels)} levels {levels}; pass contrast=(test, reference)"
        )
    return levels[1], levels[0]


def run_deseq(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    condition_key: str,
    contrast: tuple[str, str],
    *,
    covariates: Sequence[str] = (),
    alpha: float = 0.05,
    fit_type: str = "parametric",
    threads: int = 1,
) -> pd.DataFrame:
    """
    Fit a negative-binomial GLM with pyDESeq2 and run the Wald test.

    *counts* is samples × features (integers); *metadata* is indexed like
    *counts*. The design is ``~ covariates + condition``. Returns pyDESeq2's
    results table indexed by feature.
    """
    design = "~" + " + ".join([*covariates, condition_key])
    inference = DefaultInference(n_cpus=threads)
    dds = DeseqDataSet(
        counts=counts.astype(int),
        metadata=metadata.astype(str),
        design=design,
        fit_type=fit_type,
        refit_cooks=True,
        inference=inference,
        quiet=True,
    )
    dds.deseq2()

    test, ref = contrast
    stats = DeseqStats(
        dds,
        contrast=[condition_key, test, ref],
        alpha=alpha,
        inference=inference,
        quiet=True,
    )
    stats.summary()
    return stats.results_df.copy()


def pseudobulk_de(
    pb: AnnData,
    label: str,
    *,
    label_key: str,
    condition_key: str,
    contrast: Optional[Sequence[str]] = None,
    covariates: Sequence[str] = (),
    min_samples: int = 2,
    min_total_counts: int = 10,
    alpha: float = 0.05,
    threads: int = 1,
) -> pd.DataFrame:
    """
    Test one label of a pseudo-bulk AnnData between two conditions.

    Genes with fewer than *min_total_counts* counts across the label's
    samples are not tested. A label without *min_samples* replicates in both
    conditions is skipped with a warning and yields an empty table.
    """
    log = get_logger()
    require_obs(pb, label_key, condition_key, *covariates)
    test, ref = resolve_contrast(pb.obs[condition_key], contrast)

    sub = pb[(pb.obs[label_key].astype(str) == str(label)).to_numpy()]
    sub = sub[sub.obs[condition_key].astype(str).isin([test, ref]).to_numpy()]
    n_per_group = sub.obs[condition_key].astype(str).value_counts()
    if n_per_group.get(test, 0) < min_samples or n_per_group.get(ref, 0) < min_samples:
        log.warning(
            f"Label '{label}': needs {min_samples} samples per condition, "
            f"has {n_per_group.to_dict()}; skipped"
        )
        return pd.DataFrame(columns=DE_COLUMNS)

    x = sub.X.toarray() if sparse.issparse(sub.X) else np.asarray(sub.X)
    counts = pd.DataFrame(x.astype(int), index=sub.obs_names, columns=sub.var_names)
    counts = counts.loc[:, counts.sum(axis=0) >= min_total_counts]
    if counts.shape[1] == 0:
        log.warning(f"Label '{label}': no gene passes the expression filter; skipped")
        return pd.DataFrame(columns=DE_COLUMNS)

    metadata = sub.obs[[condition_key, *covariates]].copy()
    res = run_deseq(
        counts,
        metadata,
        condition_key,
        (test, ref),
        covariates=covariates,
        alpha=alpha,
        threads=threads,
    )
    res.index.name = "gene"
    res = res.reset_index()
    res.insert(0, "label", str(label))
    n_sig = int((res["padj"] < alpha).sum())
    log.info(f"Label '{label}': {n_sig} gene(s) at FDR < {alpha} ({test} vs {ref})")
    return res[DE_COLUMNS]


def run_all_labels(
    pb: AnnData,
    *,
    label_key: str,
    condition_key: str,
    contrast: Optional[Sequence[str]] = None,
    covariates: Sequence[str] = (),
    min_samples: int = 2,
    alpha: float = 0.05,
    threads: int = 1,
) -> pd.DataFrame:
    """Run :func:`pseudobulk_de` for every label and stack the results."""
    require_obs(pb, label_key)
    tables = [
        pseudobulk_de(
            pb,
            label,
            label_key=label_key,
            condition_key=condition_key,
            contrast=contrast,
            covariates=covariates,
            min_samples=min_samples,
            alpha=alpha,
            threads=threads,
        )
        for label in sorted(pb.obs[label_key].astype(str).unique())
    ]
    tables = [t for t in tables if not t.empty]
    if not tables:
        return pd.DataFrame(columns=DE_COLUMNS)
    return pd.concat(tables, ignore_index=True).sort_values(["label", "padj"], na_position="last")
