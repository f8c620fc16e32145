"""
Cell quality control module — per-cell metrics, adaptive outlier
thresholds, doublet detection and filtering.

Design choices:
  • Thresholds are adaptive: a cell is an outlier when a metric lies more
    than ``nmads`` median absolute deviations from the median, computed
    per batch when a batch column is given. Fixed cut-offs do not transfer
    between samples of different depth.
  • Library size and detected genes are judged on a log scale and only in
    the lower tail; mitochondrial percentage only in the upper tail.
  • Doublets are scored with Scrublet (through scanpy) on raw counts.
  • Raw counts in ``layers["counts"]`` are never modified.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from scworkflow.config import ScWorkflowConfig
from scworkflow.utils import counts_matrix, get_logger, require_obs

MAD_SCALE = 1.4826  # consistency constant for normally distributed data


@dataclass
class QCReport:
    """Summary of a cell QC run."""

    n_cells_before: int = 0
    n_cells_after: int = 0
    n_genes_before: int = 0
    n_genes_after: int = 0
    low_lib_size: int = 0
    low_n_features: int = 0
    high_mito: int = 0
    below_min_genes: int = 0
    doublets: int = 0

    @property
    def cells_retained_pct(self) -> float:
        if self.n_cells_before == 0:
            return 0.0
        return 100.0 * self.n_cells_after / self.n_cells_before

    def summary(self) -> str:
        return (
            f"Cells: {self.n_cells_before:,} → {self.n_cells_after:,} "
            f"({self.cells_retained_pct:.1f}% retained)\n"
            f"Genes: {self.n_genes_before:,} → {self.n_genes_after:,}\n"
            f"Low library size: {self.low_lib_size:,}  "
            f"Low detected genes: {self.low_n_features:,}  "
            f"High mito: {self.high_mito:,}\n"
            f"Below gene floor: {self.below_min_genes:,}  Doublets: {self.doublets:,}"
        )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _prefix_mask(names: pd.Index, prefixes: Sequence[str]) -> np.ndarray:
    upper = tuple(p.upper() for p in prefixes)
    return np.array([str(n).upper().startswith(upper) for n in names], dtype=bool)


def compute_qc_metrics(
    adata: AnnData,
    *,
    mito_prefix: str = "MT-",
    ribo_prefixes: Sequence[str] = ("RPS", "RPL"),
    layer: Optional[str] = "counts",
) -> AnnData:
    """
    Add per-cell and per-gene QC metrics in place.

    Adds ``var["mt"]``/``var["ribo"]`` flags and the scanpy metrics
    ``total_counts``, ``n_genes_by_counts``, ``pct_counts_mt`` and
    ``pct_counts_ribo`` to ``.obs``.
    """
    log = get_logger()
    adata.var["mt"] = _prefix_mask(adata.var_names, [mito_prefix])
    adata.var["ribo"] = _prefix_mask(adata.var_names, ribo_prefixes)
    if not adata.var["mt"].any():
        log.warning(f"No mitochondrial genes found with prefix '{mito_prefix}'")

    use_layer = layer if layer is not None and layer in adata.layers else None
    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt", "ribo"],
        percent_top=None,
        log1p=True,
        inplace=True,
        layer=use_layer,
    )
    return adata


def barcode_ranks(adata: AnnData, *, layer: Optional[str] = "counts") -> tuple[pd.DataFrame, dict]:
    """
    Rank barcodes by total UMI count.

    Returns the ``rank``/``total`` table (descending totals) and a dict
    with the ``knee`` and ``inflection`` totals. The knee is the point of
    the log-log curve farthest from the chord joining its ends; the
    inflection is where the log-log slope is steepest.
    """
    totals = np.asarray(counts_matrix(adata, layer).sum(axis=1)).ravel()
    totals = np.sort(totals)[::-1]
    table = pd.DataFrame({"rank": np.arange(1, len(totals) + 1), "total": totals})

    pos = table[table["total"] > 0]
    if len(pos) < 3:
        return table, {"knee": float("nan"), "inflection": float("nan")}

    x = np.log10(pos["rank"].to_numpy(dtype=float))
    y = np.log10(pos["total"].to_numpy(dtype=float))

    # Distance of each point to the chord between the first and last points
    x0, y0, x1, y1 = x[0], y[0], x[-1], y[-1]
    norm = np.hypot(x1 - x0, y1 - y0)
    dist = np.abs((y1 - y0) * x - (x1 - x0) * y + x1 * y0 - y1 * x0) / norm
    knee = float(pos["total"].iloc[int(np.argmax(dist))])

    slope = np.diff(y) / np.diff(x)
    inflection = float(pos["total"].iloc[int(np.argmin(slope)) + 1])
    return table, {"knee": knee, "inflection": inflection}


# ---------------------------------------------------------------------------
# Outliers
# ---------------------------------------------------------------------------


def is_outlier(
    values,
    *,
    nmads: float = 3.0,
    log: bool = False,
    type: str = "both",
    batch=None,
) -> pd.Series:
    """
    Flag values more than *nmads* MADs from the median.

    Parameters
    ----------
    values : array-like
        Metric values, one per cell.
    nmads : float
        Number of median absolute deviations defining the threshold.
    log : bool
        Judge ``log1p(values)`` instead of the raw values.
    type : {"both", "lower", "higher"}
        Which tail(s) count as outlying.
    batch : array-like, optional
        Batch labels; thresholds are computed separately per batch.

    Returns
    -------
    Boolean Series aligned with *values*. Its ``attrs["thresholds"]``
    holds the ``(lower, upper)`` limits per batch on the original scale.
    """
    if type not in ("both", "lower", "higher"):
        raise ValueError(f"type must be 'both', 'lower' or 'higher', got '{type}'")

    index = values.index if isinstance(values, pd.Series) else None
    x = pd.Series(np.asarray(values, dtype=float), index=index)
    scaled = np.log1p(x) if log else x
    groups = pd.Series("all", index=x.index) if batch is None else pd.Series(
        np.asarray(batch), index=x.index
    ).astype(str)

    out = pd.Series(False, index=x.index)
    thresholds: dict[str, tuple[float, float]] = {}
    for name, idx in groups.groupby(groups, sort=True).groups.items():
        sub = scaled.loc[idx]
        med = float(np.median(sub))
        mad = MAD_SCALE * float(np.median(np.abs(sub - med)))
        lower, upper = med - nmads * mad, med + nmads * mad
        flag = pd.Series(False, index=sub.index)
        if type in ("both", "lower"):
            flag |= sub < lower
        if type in ("both", "higher"):
            flag |= sub > upper
        out.loc[idx] = flag
        if log:
            lower, upper = float(np.expm1(lower)), float(np.expm1(upper))
        thresholds[str(name)] = (lower, upper)

    out.attrs["thresholds"] = thresholds
    return out


def flag_outliers(
    adata: AnnData,
    *,
    nmads: float = 3.0,
    batch_key: Optional[str] = None,
    min_genes: int = 0,
) -> pd.DataFrame:
    """
    Mark low-quality cells in ``obs["qc_outlier"]``.

    Returns the per-reason boolean table (also copied into ``.obs``).
    """
    require_obs(adata, "total_counts", "n_genes_by_counts", "pct_counts_mt")
    batch = None
    if batch_key is not None:
        require_obs(adata, batch_key)
        batch = adata.obs[batch_key]

    reasons = pd.DataFrame(index=adata.obs_names)
    reasons["low_lib_size"] = is_outlier(
        adata.obs["total_counts"], nmads=nmads, log=True, type="lower", batch=batch
    ).to_numpy()
    reasons["low_n_features"] = is_outlier(
        adata.obs["n_genes_by_counts"], nmads=nmads, log=True, type="lower", batch=batch
    ).to_numpy()
    reasons["high_mito"] = is_outlier(
        adata.obs["pct_counts_mt"], nmads=nmads, type="higher", batch=batch
    ).to_numpy()
    reasons["below_min_genes"] = (adata.obs["n_genes_by_counts"] < min_genes).to_numpy()

    for col in reasons.columns:
        adata.obs[col] = reasons[col].to_numpy()
    adata.obs["qc_outlier"] = reasons.any(axis=1).to_numpy()
    return reasons


def detect_doublets(
    adata: AnnData,
    *,
    batch_key: Optional[str] = None,
    seed: int = 0,
) -> AnnData:
    """
    Score doublets with Scrublet; adds ``doublet_score``/``predicted_doublet``.

    Expects raw counts in ``.X``.
    """
    log = get_logger()
    if batch_key is not None:
        require_obs(adata, batch_key)
    sc.pp.scrublet(adata, batch_key=batch_key, random_state=seed)
    if "predicted_doublet" not in adata.obs.columns:
        log.warning("Scrublet could not set a doublet score threshold; no cell is called a doublet")
        adata.obs["predicted_doublet"] = False
    adata.obs["predicted_doublet"] = adata.obs["predicted_doublet"].fillna(False).astype(bool)
    n = int(adata.obs["predicted_doublet"].sum())
    log.info(f"Scrublet predicted {n:,} doublet(s) among {adata.n_obs:,} cells")
    return adata


def qc_summary_table(adata: AnnData, sample_key: str = "sample") -> pd.DataFrame:
    """Per-sample medians of the QC metrics and the fraction of cells flagged."""
    require_obs(adata, sample_key, "total_counts", "n_genes_by_counts", "pct_counts_mt")
    obs = adata.obs
    agg = obs.groupby(sample_key, observed=True).agg(
        n_cells=("total_counts", "size"),
        median_total_counts=("total_counts", "median"),
        median_genes=("n_genes_by_counts", "median"),
        median_pct_mt=("pct_counts_mt", "median"),
    )
    if "qc_outlier" in obs.columns:
        agg["fraction_flagged"] = obs.groupby(sample_key, observed=True)["qc_outlier"].mean()
    return agg.reset_index()


def filter_cells_and_genes(
    adata: AnnData,
    *,
    cfg: Optional[ScWorkflowConfig] = None,
) -> AnnData:
    """
    Drop flagged cells, then genes detected in too few of the remaining cells.

    Cells go when ``obs["qc_outlier"]`` is set, or ``obs["predicted_doublet"]``
    when doublets are removed. Returns a new AnnData.
    """
    if cfg is None:
        cfg = ScWorkflowConfig()
    require_obs(adata, "qc_outlier")
    discard = adata.obs["qc_outlier"].to_numpy(dtype=bool).copy()
    if cfg.remove_doublets and "predicted_doublet" in adata.obs.columns:
        discard |= adata.obs["predicted_doublet"].to_numpy(dtype=bool)

    filtered = adata[~discard].copy()
    if filtered.n_obs == 0:
        raise ValueError("Every cell was discarded by QC; check thresholds and input data")
    sc.pp.filter_genes(filtered, min_cells=cfg.qc_min_cells_per_gene)
    return filtered


# ---------------------------------------------------------------------------
# Step entry point
# ---------------------------------------------------------------------------


def run_cell_qc(
    adata: AnnData,
    *,
    cfg: Optional[ScWorkflowConfig] = None,
) -> tuple[AnnData, QCReport]:
    """
    Compute metrics, flag outliers and doublets, and filter cells and genes.

    Returns
    -------
    (filtered AnnData, QCReport)
    """
    log = get_logger()
    if cfg is None:
        cfg = ScWorkflowConfig()
    if adata.n_obs == 0:
        raise ValueError("Cannot run QC on an AnnData with no cells")

    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    batch_key = cfg.batch_key if cfg.batch_key in adata.obs.columns else None
    compute_qc_metrics(adata, mito_prefix=cfg.mito_prefix, ribo_prefixes=cfg.ribo_prefixes)
    reasons = flag_outliers(
        adata, nmads=cfg.qc_nmads, batch_key=batch_key, min_genes=cfg.qc_min_genes
    )

    report = QCReport(
        n_cells_before=adata.n_obs,
        n_genes_before=adata.n_vars,
        low_lib_size=int(reasons["low_lib_size"].sum()),
        low_n_features=int(reasons["low_n_features"].sum()),
        high_mito=int(reasons["high_mito"].sum()),
        below_min_genes=int(reasons["below_min_genes"].sum()),
    )

    if cfg.detect_doublets:
        detect_doublets(adata, batch_key=batch_key, seed=cfg.seed)
        report.doublets = int(adata.obs["predicted_doublet"].sum())

    filtered = filter_cells_and_genes(adata, cfg=cfg)
    report.n_cells_after = filtered.n_obs
    report.n_genes_after = filtered.n_vars
    log.info(f"Cell QC summary:\n{report.summary()}")
    return filtered, report
