"""
Visualisation module for scworkflow.

Generates publication-quality plots for every course step:
  • QC violins per sample and QC scatter (library size vs detected genes)
  • Barcode-rank curve with knee and inflection
  • PCA variance-explained elbow
  • Embeddings (PCA / t-SNE / UMAP) coloured by metadata or expression
  • Marker dot plot
  • Cluster × batch composition heatmap
  • Volcano plot of pseudo-bulk DE results
  • Beeswarm of neighbourhood differential abundance

Every plot is saved as **both PNG (raster) and PDF (vector)**; SVG is
added when ``cfg.plot_format == "svg"``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

import matplotlib

matplotlib.use("Agg")  # non-interactive backend

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from anndata import AnnData
from scipy import sparse

from scworkflow.config import ScWorkflowConfig
from scworkflow.utils import get_logger, require_obs, require_obsm


# ---------------------------------------------------------------------------
# Global style
# ---------------------------------------------------------------------------

_STYLE_APPLIED = False


def _apply_style() -> None:
    """Apply publication-quality matplotlib defaults once."""
    global _STYLE_APPLIED
    if _STYLE_APPLIED:
        return
    plt.rcParams.update(
        {
            "font.family": "sans-serif",
            "font.sans-serif": ["Arial", "Helvetica", "DejaVu Sans"],
            "font.size": 12,
            "axes.titlesize": 15,
            "axes.titleweight": "bold",
            "axes.labelsize": 13,
            "xtick.labelsize": 11,
            "ytick.labelsize": 11,
            "legend.fontsize": 10,
            "figure.dpi": 150,
            "savefig.dpi": 300,
            "savefig.bbox": "tight",
            "savefig.facecolor": "white",
            "axes.spines.top": False,
            "axes.spines.right": False,
            "axes.grid": False,
        }
    )
    _STYLE_APPLIED = True


def _palette(n: int) -> list:
    """Distinct colours for *n* categories."""
    if n <= 10:
        return sns.color_palette("tab10", n)
    if n <= 20:
        return sns.color_palette("tab20", n)
    return sns.color_palette("husl", n)


def _save(fig: plt.Figure, path: Path, dpi: int = 300, fmt: str = "png") -> list[Path]:
    """Save figure as PNG and PDF (plus SVG on request). Returns saved paths."""
    _apply_style()
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    log = get_logger()
    saved: list[Path] = []

    suffixes = [".png", ".pdf"]
    if fmt == "svg":
        suffixes.append(".svg")
    for suffix in suffixes:
        out = path.with_suffix(suffix)
        fig.savefig(out, dpi=dpi, bbox_inches="tight", facecolor="white")
        saved.append(out)
        log.info(f"Saved plot → {out}")

    plt.close(fig)
    return saved


def _cfg(cfg: Optional[ScWorkflowConfig]) -> ScWorkflowConfig:
    return cfg if cfg is not None else ScWorkflowConfig()


# ---------------------------------------------------------------------------
# 1. Cell QC
# ---------------------------------------------------------------------------


QC_METRICS = ("total_counts", "n_genes_by_counts", "pct_counts_mt")
_QC_LABELS = {
    "total_counts": "UMI counts",
    "n_genes_by_counts": "Detected genes",
    "pct_counts_mt": "Mitochondrial %",
    "pct_counts_ribo": "Ribosomal %",
    "doublet_score": "Doublet score",
}


def plot_qc_violins(
    adata: AnnData,
    output_path: Path,
    *,
    groupby: str = "sample",
    metrics: Sequence[str] = QC_METRICS,
    hue: Optional[str] = "qc_outlier",
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """
    One violin panel per QC metric, grouped by *groupby*.

    Cells are overlaid as points coloured by *hue* (the QC outlier flag by
    default) so that discarded cells are visible against the distribution.
    """
    _apply_style()
    cfg = _cfg(cfg)
    require_obs(adata, groupby, *metrics)
    obs = adata.obs.copy()
    obs[groupby] = obs[groupby].astype(str)
    if hue is not None and hue not in obs.columns:
        hue = None
    elif hue is not None:
        obs[hue] = obs[hue].astype(str)

    n_groups = obs[groupby].nunique()
    fig, axes = plt.subplots(
        1, len(metrics), figsize=(max(4.5, 0.7 * n_groups + 2) * len(metrics), 4.5), squeeze=False
    )
    for ax, metric in zip(axes[0], metrics):
        sns.violinplot(
            data=obs, x=groupby, y=metric, color="#d9e3f0", inner=None, cut=0, linewidth=0.8, ax=ax
        )
        sns.stripplot(
            data=obs,
            x=groupby,
            y=metric,
            hue=hue,
            palette={"False": "#4c72b0", "True": "#dd3333"} if hue == "qc_outlier" else None,
            size=1.5,
            jitter=0.3,
            alpha=0.6,
            legend=ax is axes[0][-1],
            ax=ax,
        )
        if metric == "total_counts":
            ax.set_yscale("log")
        ax.set_ylabel(_QC_LABELS.get(metric, metric))
        ax.set_xlabel("")
        ax.tick_params(axis="x", rotation=45)
    if hue is not None and axes[0][-1].get_legend() is not None:
        axes[0][-1].legend(title=hue, bbox_to_anchor=(1.02, 1), loc="upper left", frameon=False)
    fig.suptitle("Cell QC metrics", fontsize=15, fontweight="bold")
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


def plot_qc_scatter(
    adata: AnnData,
    output_path: Path,
    *,
    x: str = "total_counts",
    y: str = "n_genes_by_counts",
    color: str = "pct_counts_mt",
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """Library size vs detected genes, coloured by mitochondrial share."""
    _apply_style()
    cfg = _cfg(cfg)
    require_obs(adata, x, y, color)
    obs = adata.obs

    fig, ax = plt.subplots(figsize=(6.5, 5))
    sc_ = ax.scatter(obs[x], obs[y], c=obs[color], cmap="viridis", s=4, alpha=0.8, linewidths=0)
    fig.colorbar(sc_, ax=ax, label=_QC_LABELS.get(color, color), shrink=0.8)
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel(_QC_LABELS.get(x, x))
    ax.set_ylabel(_QC_LABELS.get(y, y))
    ax.set_title("Library size vs detected genes", pad=10)
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


def plot_barcode_ranks(
    table: pd.DataFrame,
    thresholds: Mapping[str, float],
    output_path: Path,
    *,
    title: str = "Barcode rank plot",
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """Total UMIs against barcode rank on log-log axes with knee/inflection lines."""
    _apply_style()
    cfg = _cfg(cfg)
    data = table[table["total"] > 0]

    fig, ax = plt.subplots(figsize=(6.5, 5))
    ax.plot(data["rank"], data["total"], color="#333333", linewidth=1.5)
    styles = {"knee": ("#1a73e8", "--"), "inflection": ("#0d904f", ":")}
    for name, value in thresholds.items():
        if value is None or not np.isfinite(value):
            continue
        colour, ls = styles.get(name, ("#c5221f", "-."))
        ax.axhline(value, color=colour, linestyle=ls, linewidth=1.2, label=f"{name} ({value:,.0f})")
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Barcode rank")
    ax.set_ylabel("Total UMI count")
    ax.set_title(title, pad=10)
    if thresholds:
        ax.legend(frameon=False)
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


# ---------------------------------------------------------------------------
# 2. Dimensionality reduction
# ---------------------------------------------------------------------------


def plot_pca_variance(
    adata: AnnData,
    output_path: Path,
    *,
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """Variance explained per PC, with the retained number of PCs marked."""
    _apply_style()
    cfg = _cfg(cfg)
    if "pca" not in adata.uns:
        raise KeyError("PCA has not been computed; run run_pca first")
    ratio = np.asarray(adata.uns["pca"]["variance_ratio"], dtype=float) * 100
    pcs = np.arange(1, len(ratio) + 1)

    fig, ax = plt.subplots(figsize=(7, 4.5))
    ax.plot(pcs, ratio, marker="o", markersize=4, color="#4c72b0", linewidth=1.2)
    chosen = adata.uns.get("n_pcs")
    if chosen:
        ax.axvline(chosen, color="#dd3333", linestyle="--", linewidth=1.2, label=f"{chosen} PCs kept")
        ax.legend(frameon=False)
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance explained (%)")
    ax.set_title("PCA elbow plot", pad=10)
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


def _color_values(adata: AnnData, key: str, layer: Optional[str]) -> pd.Series:
    """obs column or gene expression used to colour an embedding."""
    if key in adata.obs.columns:
        return adata.obs[key]
    if key in adata.var_names:
        x = adata[:, key].layers[layer] if layer else adata[:, key].X
        x = x.toarray() if sparse.issparse(x) else np.asarray(x)
        return pd.Series(x.ravel(), index=adata.obs_names, name=key)
    raise KeyError(f"'{key}' is neither an obs column nor a gene name")


def plot_embedding(
    adata: AnnData,
    output_path: Path,
    *,
    basis: str = "X_umap",
    color: Union[str, Sequence[str]] = "leiden",
    layer: Optional[str] = None,
    point_size: Optional[float] = None,
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """
    Scatter of a 2-D embedding, one panel per entry of *color*.

    Categorical obs columns get a discrete palette and a legend; numeric
    columns and gene names a continuous colour bar.
    """
    _apply_style()
    cfg = _cfg(cfg)
    require_obsm(adata, basis)
    keys = [color] if isinstance(color, str) else list(color)
    coords = np.asarray(adata.obsm[basis])[:, :2]
    label = basis.replace("X_", "").split("_")[0].upper()
    size = point_size or max(1.0, min(20.0, 60000 / max(adata.n_obs, 1)))

    fig, axes = plt.subplots(1, len(keys), figsize=(6 * len(keys), 5), squeeze=False)
    for ax, key in zip(axes[0], keys):
        values = _color_values(adata, key, layer)
        if not pd.api.types.is_numeric_dtype(values) or pd.api.types.is_bool_dtype(values):
            cats = pd.Categorical(values.astype(str))
            colours = _palette(len(cats.categories))
            for i, cat in enumerate(cats.categories):
                mask = np.asarray(cats == cat)
                ax.scatter(
                    coords[mask, 0], coords[mask, 1], s=size, color=colours[i], label=cat, linewidths=0
                )
            ax.legend(
                bbox_to_anchor=(1.02, 1),
                loc="upper left",
                frameon=False,
                markerscale=max(1.0, 20 / size),
                ncol=1 if len(cats.categories) <= 16 else 2,
            )
        else:
            order = np.argsort(values.to_numpy())
            sc_ = ax.scatter(
                coords[order, 0],
                coords[order, 1],
                c=values.to_numpy()[order],
                cmap="viridis",
                s=size,
                linewidths=0,
            )
            fig.colorbar(sc_, ax=ax, shrink=0.7)
        ax.set_xticks([])
        ax.set_yticks([])
        ax.set_xlabel(f"{label} 1")
        ax.set_ylabel(f"{label} 2")
        ax.set_title(key, pad=8)
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


# ---------------------------------------------------------------------------
# 3. Clusters and markers
# ---------------------------------------------------------------------------


def marker_dot_table(
    adata: AnnData,
    genes: Sequence[str],
    groupby: str,
    *,
    layer: Optional[str] = None,
) -> pd.DataFrame:
    """Mean expression and fraction of expressing cells per group and gene."""
    require_obs(adata, groupby)
    genes = [g for g in dict.fromkeys(genes) if g in adata.var_names]
    if not genes:
        raise ValueError("None of the requested genes are present in the data")
    sub = adata[:, genes]
    x = sub.layers[layer] if layer else sub.X
    x = x.toarray() if sparse.issparse(x) else np.asarray(x)
    groups = adata.obs[groupby].astype(str).to_numpy()

    rows = []
    for group in sorted(np.unique(groups), key=lambda g: (len(g), g)):
        xg = x[groups == group]
        for j, gene in enumerate(genes):
            rows.append(
                {
                    "group": group,
                    "gene": gene,
                    "mean": float(xg[:, j].mean()),
                    "fraction": float((xg[:, j] > 0).mean()),
                }
            )
    return pd.DataFrame(rows)


def plot_marker_dotplot(
    adata: AnnData,
    genes: Union[Sequence[str], Mapping[str, Sequence[str]]],
    groupby: str,
    output_path: Path,
    *,
    layer: Optional[str] = None,
    title: str = "Marker genes",
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """
    Dot plot: dot size is the fraction of cells expressing a gene, colour
    its mean expression scaled to [0, 1] per gene.

    *genes* may be a mapping ``{group: [genes]}`` (e.g. from
    :func:`scworkflow.markers.top_markers`); genes keep that order.
    """
    _apply_style()
    cfg = _cfg(cfg)
    if isinstance(genes, Mapping):
        genes = [g for gs in genes.values() for g in gs]
    table = marker_dot_table(adata, genes, groupby, layer=layer)

    gene_order = list(dict.fromkeys(table["gene"]))
    group_order = list(dict.fromkeys(table["group"]))
    span = table.groupby("gene")["mean"].transform(lambda m: m.max() - m.min())
    low = table.groupby("gene")["mean"].transform("min")
    table["scaled"] = ((table["mean"] - low) / span.replace(0, np.nan)).fillna(0.0)
    table["x"] = table["gene"].map({g: i for i, g in enumerate(gene_order)})
    table["y"] = table["group"].map({g: i for i, g in enumerate(group_order)})

    fig, ax = plt.subplots(
        figsize=(max(5, 0.38 * len(gene_order) + 3), max(3, 0.38 * len(group_order) + 1.5))
    )
    sc_ = ax.scatter(
        table["x"],
        table["y"],
        s=table["fraction"] * 180,
        c=table["scaled"],
        cmap="Reds",
        vmin=0,
        vmax=1,
        edgecolors="#555555",
        linewidths=0.3,
    )
    ax.set_xticks(range(len(gene_order)))
    ax.set_xticklabels(gene_order, rotation=90)
    ax.set_yticks(range(len(group_order)))
    ax.set_yticklabels(group_order)
    ax.set_xlim(-0.7, len(gene_order) - 0.3)
    ax.set_ylim(-0.7, len(group_order) - 0.3)
    ax.set_ylabel(groupby)
    ax.set_title(title, pad=10)
    fig.colorbar(sc_, ax=ax, label="Scaled mean expression", shrink=0.6)
    for frac in (0.25, 0.5, 1.0):
        ax.scatter([], [], s=frac * 180, color="#999999", label=f"{frac:.0%}")
    ax.legend(title="Expressing", bbox_to_anchor=(1.25, 1), loc="upper left", frameon=False)
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


def plot_batch_heatmap(
    composition: pd.DataFrame,
    output_path: Path,
    *,
    title: str = "Cluster composition by batch",
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """Heatmap of a cluster × batch table from :func:`scworkflow.integrate.batch_composition`."""
    _apply_style()
    cfg = _cfg(cfg)
    normalised = bool(np.allclose(composition.sum(axis=1), 1.0))
    n_rows, n_cols = composition.shape

    fig, ax = plt.subplots(figsize=(max(4, 0.9 * n_cols + 2.5), max(3, 0.4 * n_rows + 1.5)))
    sns.heatmap(
        composition,
        annot=n_rows * n_cols <= 400,
        fmt=".2f" if normalised else ".0f",
        annot_kws={"fontsize": 9},
        cmap="YlGnBu",
        cbar_kws={"label": "Fraction of cluster" if normalised else "Cells", "shrink": 0.6},
        linewidths=0.6,
        linecolor="white",
        ax=ax,
    )
    ax.set_title(title, pad=10)
    ax.tick_params(axis="y", rotation=0)
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


# ---------------------------------------------------------------------------
# 4. Differential expression and abundance
# ---------------------------------------------------------------------------


def plot_volcano(
    de: pd.DataFrame,
    output_path: Path,
    *,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
    label_top: int = 10,
    title: str = "Pseudo-bulk differential expression",
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """log2 fold change against -log10 adjusted p-value; top hits are labelled."""
    _apply_style()
    cfg = _cfg(cfg)
    data = de.dropna(subset=["log2FoldChange", "padj"]).copy()
    data["nlog10"] = -np.log10(data["padj"].clip(lower=1e-300))
    up = (data["padj"] < alpha) & (data["log2FoldChange"] >= lfc_threshold)
    down = (data["padj"] < alpha) & (data["log2FoldChange"] <= -lfc_threshold)

    fig, ax = plt.subplots(figsize=(6.5, 5.5))
    ax.scatter(
        data.loc[~(up | down), "log2FoldChange"],
        data.loc[~(up | down), "nlog10"],
        s=6,
        color="#bbbbbb",
        linewidths=0,
    )
    ax.scatter(data.loc[up, "log2FoldChange"], data.loc[up, "nlog10"], s=10, color="#c5221f",
               label=f"Up ({int(up.sum())})", linewidths=0)
    ax.scatter(data.loc[down, "log2FoldChange"], data.loc[down, "nlog10"], s=10, color="#1a73e8",
               label=f"Down ({int(down.sum())})", linewidths=0)
    ax.axhline(-np.log10(alpha), color="#555555", linestyle="--", linewidth=0.8)
    for x in (-lfc_threshold, lfc_threshold):
        ax.axvline(x, color="#555555", linestyle=":", linewidth=0.8)

    if label_top:
        hits = data[up | down].nsmallest(label_top, "padj")
        for _, row in hits.iterrows():
            ax.annotate(
                row["gene"],
                (row["log2FoldChange"], row["nlog10"]),
                fontsize=8,
                xytext=(3, 3),
                textcoords="offset points",
            )
    ax.set_xlabel("log₂ fold change")
    ax.set_ylabel("-log₁₀ adjusted p-value")
    ax.set_title(title, pad=10)
    ax.legend(frameon=False, loc="upper left")
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)


def plot_da_beeswarm(
    da: pd.DataFrame,
    output_path: Path,
    *,
    label_key: str,
    alpha: float = 0.1,
    fdr_col: str = "SpatialFDR",
    title: str = "Differential abundance by neighbourhood",
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """
    One point per neighbourhood: log2 fold change in abundance, grouped by
    the neighbourhood's majority label. Significant neighbourhoods are
    coloured by direction.
    """
    _apply_style()
    cfg = _cfg(cfg)
    if label_key not in da.columns:
        raise KeyError(f"Column '{label_key}' not found in the DA table; annotate neighbourhoods first")
    data = da.dropna(subset=["log2FoldChange"]).copy()
    sig = data[fdr_col].fillna(1.0) < alpha
    data["status"] = np.where(
        sig & (data["log2FoldChange"] > 0),
        "enriched",
        np.where(sig & (data["log2FoldChange"] < 0), "depleted", "n.s."),
    )
    order = (
        data.groupby(label_key)["log2FoldChange"].mean().sort_values().index.astype(str).tolist()
    )
    data[label_key] = data[label_key].astype(str)

    fig, ax = plt.subplots(figsize=(7, max(3, 0.45 * len(order) + 1.5)))
    sns.stripplot(
        data=data,
        x="log2FoldChange",
        y=label_key,
        hue="status",
        order=order,
        hue_order=["depleted", "n.s.", "enriched"],
        palette={"depleted": "#1a73e8", "n.s.": "#bbbbbb", "enriched": "#c5221f"},
        size=4,
        jitter=0.3,
        ax=ax,
    )
    ax.axvline(0, color="#555555", linestyle="--", linewidth=0.8)
    ax.set_xlabel("log₂ fold change in abundance")
    ax.set_ylabel("")
    ax.set_title(title, pad=10)
    ax.legend(title=f"{fdr_col} < {alpha}", bbox_to_anchor=(1.02, 1), loc="upper left", frameon=False)
    fig.tight_layout()
    return _save(fig, output_path, dpi=cfg.dpi, fmt=cfg.plot_format)
