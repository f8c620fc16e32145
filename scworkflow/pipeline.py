"""
Full pipeline orchestrator.

Chains every course step together:
  Load → Cell QC → Normalise → HVGs → PCA → Batch correction →
  Clustering → Markers → Pseudo-bulk DE → Differential abundance

Provides progress logging through Rich, per-step output directories and
optional step-skipping for partial reruns. Read QC and quantification
(FastQC / CellRanger) run upstream through ``scworkflow count``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

import pandas as pd
import scanpy as sc
from anndata import AnnData
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scworkflow import visualize as viz
from scworkflow.cluster import build_graph, cluster_graph, resolution_sweep, silhouette_by_cluster
from scworkflow.config import ScWorkflowConfig
from scworkflow.da import cluster_da, make_neighbourhoods, neighbourhood_da
from scworkflow.data import load_samples, write_h5ad
from scworkflow.de import aggregate_pseudobulk, resolve_contrast, run_all_labels
from scworkflow.features import select_hvgs
from scworkflow.integrate import batch_composition, correct_batch
from scworkflow.markers import annotate_clusters, find_markers, top_markers
from scworkflow.normalize import normalize
from scworkflow.qc import QCReport, barcode_ranks, qc_summary_table, run_cell_qc
from scworkflow.reduce import choose_n_pcs, compute_neighbors, run_pca, run_tsne, run_umap
from scworkflow.utils import file_size_human, fmt_elapsed, get_logger, safe_filename

console = Console(stderr=True)

STEPS = (
    "load",
    "qc",
    "normalize",
    "features",
    "reduce",
    "integrate",
    "cluster",
    "markers",
    "de",
    "da",
)
SKIPPABLE = ("qc", "integrate", "markers", "de", "da")

STEP_DIRS = {
    "qc": "02_qc",
    "normalize": "03_normalize",
    "features": "03_normalize",
    "reduce": "04_reduce",
    "integrate": "04_reduce",
    "cluster": "05_cluster",
    "markers": "06_markers",
    "de": "07_de",
    "da": "08_da",
    "tables": "09_tables",
}


@dataclass
class PipelineResult:
    """Container for all pipeline outputs."""

    adata: Optional[AnnData] = None
    h5ad_path: Optional[Path] = None
    qc_report: Optional[QCReport] = None
    n_pcs: Optional[int] = None
    embedding_key: str = "X_pca"
    cluster_key: Optional[str] = None
    label_key: Optional[str] = None
    hvgs: Optional[pd.DataFrame] = None
    sweep: Optional[pd.DataFrame] = None
    composition: Optional[pd.DataFrame] = None
    markers: Optional[pd.DataFrame] = None
    annotation: Optional[pd.DataFrame] = None
    de: Optional[pd.DataFrame] = None
    cluster_da: Optional[pd.DataFrame] = None
    nhood_da: Optional[pd.DataFrame] = None
    tables: dict[str, Path] = field(default_factory=dict)
    plots: list[Path] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def summary_table(self) -> Table:
        tbl = Table(title="scworkflow Pipeline Results", show_lines=True)
        tbl.add_column("Step", style="bold cyan")
        tbl.add_column("Details")

        if self.qc_report is not None:
            tbl.add_row("Cell QC", self.qc_report.summary())
        if self.adata is not None:
            tbl.add_row("Cells × genes", f"{self.adata.n_obs:,} × {self.adata.n_vars:,}")
        if self.n_pcs:
            tbl.add_row("PCs", f"{self.n_pcs} on {self.embedding_key}")
        if self.cluster_key and self.adata is not None:
            n = self.adata.obs[self.cluster_key].nunique()
            tbl.add_row("Clusters", f"{n} ({self.cluster_key})")
        if self.de is not None:
            n_sig = int((self.de["padj"] < 0.05).sum()) if len(self.de) else 0
            tbl.add_row("Pseudo-bulk DE", f"{len(self.de):,} tests, {n_sig:,} at FDR < 0.05")
        if self.nhood_da is not None:
            n_sig = int((self.nhood_da["SpatialFDR"] < 0.1).sum())
            tbl.add_row("Neighbourhood DA", f"{len(self.nhood_da)} neighbourhoods, {n_sig} at FDR < 0.1")
        if self.plots:
            tbl.add_row("Plots", f"{len(self.plots)} files")
        if self.h5ad_path:
            tbl.add_row("AnnData", f"{self.h5ad_path} ({file_size_human(self.h5ad_path)})")
        tbl.add_row("Total time", fmt_elapsed(self.elapsed_seconds))
        return tbl


# ---------------------------------------------------------------------------
# Table writers
# ---------------------------------------------------------------------------


def _write_table(df: pd.DataFrame, path: Path, result: PipelineResult, *, index: bool = False) -> Path:
    log = get_logger()
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=index)
    result.tables[path.stem] = path
    log.info(f"Saved table → {path}")
    return path


def _write_result_tables(result: PipelineResult, cfg: ScWorkflowConfig) -> None:
    """Write the run summary and the output manifest for programmatic access."""
    log = get_logger()
    tables_dir = cfg.step_dir(STEP_DIRS["tables"])

    rows = []
    if result.qc_report is not None:
        qr = result.qc_report
        rows.extend(
            [
                ("QC", "cells_before", qr.n_cells_before),
                ("QC", "cells_after", qr.n_cells_after),
                ("QC", "retained_pct", round(qr.cells_retained_pct, 2)),
                ("QC", "genes_after", qr.n_genes_after),
                ("QC", "doublets", qr.doublets),
            ]
        )
    if result.hvgs is not None:
        rows.append(("Features", "highly_variable", int(result.hvgs["highly_variable"].sum())))
    if result.n_pcs:
        rows.append(("Reduce", "n_pcs", result.n_pcs))
        rows.append(("Reduce", "embedding", result.embedding_key))
    if result.cluster_key and result.adata is not None:
        rows.append(("Cluster", "n_clusters", int(result.adata.obs[result.cluster_key].nunique())))
    if result.de is not None:
        rows.append(("DE", "significant_genes", int((result.de["padj"] < cfg.de_alpha).sum())))
    if result.cluster_da is not None:
        rows.append(("DA", "significant_labels", int((result.cluster_da["padj"] < cfg.de_alpha).sum())))
    if result.nhood_da is not None:
        rows.append(
            ("DA", "significant_nhoods", int((result.nhood_da["SpatialFDR"] < cfg.da_alpha).sum()))
        )
    rows.append(("Pipeline", "elapsed_seconds", round(result.elapsed_seconds, 2)))

    summary_df = pd.DataFrame(rows, columns=["Step", "Metric", "Value"])
    _write_table(summary_df, tables_dir / "pipeline_summary.csv", result)

    manifest_rows = []
    for d in sorted(cfg.output_dir.rglob("*")):
        if d.is_file() and d.suffix != ".log":
            rel = d.relative_to(cfg.output_dir)
            manifest_rows.append((str(rel), d.stat().st_size, file_size_human(d)))
    manifest_df = pd.DataFrame(manifest_rows, columns=["File", "Bytes", "Size"])
    manifest_path = tables_dir / "output_manifest.csv"
    manifest_df.to_csv(manifest_path, index=False)
    log.info(f"Saved output manifest → {manifest_path}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _batch_key(adata: AnnData, cfg: ScWorkflowConfig) -> Optional[str]:
    """The configured batch column when present with more than one level."""
    key = cfg.batch_key
    if key and key in adata.obs.columns and adata.obs[key].nunique() > 1:
        return key
    return None


def _has_replicates(adata: AnnData, cfg: ScWorkflowConfig) -> bool:
    """True when both contrasted conditions have ``cfg.de_min_samples`` samples."""
    log = get_logger()
    if cfg.condition_key not in adata.obs.columns:
        log.warning(f"No '{cfg.condition_key}' column in obs; skipping condition comparisons")
        return False
    per_sample = adata.obs.groupby(cfg.sample_key, observed=True)[cfg.condition_key].first().astype(str)
    try:
        test, ref = resolve_contrast(per_sample, cfg.contrast)
    except ValueError as exc:
        log.warning(f"{exc}; skipping condition comparisons")
        return False
    counts = per_sample.value_counts()
    if counts.get(test, 0) < cfg.de_min_samples or counts.get(ref, 0) < cfg.de_min_samples:
        log.warning(
            f"Need {cfg.de_min_samples} samples per condition for {test} vs {ref}, "
            f"have {counts.to_dict()}; skipping condition comparisons"
        )
        return False
    return True


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def run_pipeline(
    source: Union[Path, str, AnnData],
    *,
    cfg: Optional[ScWorkflowConfig] = None,
    skip: Sequence[str] = (),
    marker_sets: Optional[Mapping[str, Sequence[str]]] = None,
    make_plots: bool = True,
) -> PipelineResult:
    """
    Execute the complete scworkflow analysis.

    Parameters
    ----------
    source : Path or AnnData
        A sample sheet CSV (``sample``, ``path`` and metadata columns) or an
        AnnData holding raw counts with sample metadata in ``.obs``.
    cfg : ScWorkflowConfig
        Pipeline configuration.
    skip : sequence of str
        Steps to skip, any of ``qc``, ``integrate``, ``markers``, ``de``, ``da``.
    marker_sets : mapping, optional
        ``{cell type: [marker genes]}``; when given, clusters are annotated
        and DE/DA are run per cell type instead of per cluster.
    make_plots : bool
        Save the plots of every step.

    Returns
    -------
    PipelineResult with the processed AnnData, tables and plot paths.
    """
    log = get_logger()
    if cfg is None:
        cfg = ScWorkflowConfig()
    unknown = [s for s in skip if s not in SKIPPABLE]
    if unknown:
        raise ValueError(f"Cannot skip {unknown}. Skippable steps: {list(SKIPPABLE)}")

    cfg.ensure_dirs()
    sc.settings.n_jobs = cfg.threads
    log.info(f"System: {cfg.system_summary}")
    result = PipelineResult()
    t0 = time.perf_counter()
    n_steps = len(STEPS)

    def header(i: int, text: str) -> None:
        log.info(f"[bold]Step {i}/{n_steps}: {text}[/bold]")

    def plot(func, *args, **kwargs) -> None:
        if make_plots:
            result.plots.extend(func(*args, cfg=cfg, **kwargs))

    # ---- Banner ----
    source_desc = source if not isinstance(source, AnnData) else f"AnnData {source.shape}"
    console.print(
        Panel.fit(
            "[bold magenta]scworkflow[/bold magenta]: single-cell RNA-seq analysis\n"
            f"Input: {source_desc}\n"
            f"Output: {cfg.output_dir}",
            border_style="blue",
        )
    )

    # ================================================================
    # Step 1: Load
    # ================================================================
    header(1, "Loading count matrices")
    if isinstance(source, AnnData):
        adata = source.copy()
        if "counts" not in adata.layers:
            adata.layers["counts"] = adata.X.copy()
    else:
        adata = load_samples(Path(source), sample_key=cfg.sample_key)
    log.info(f"Loaded {adata.n_obs:,} cells × {adata.n_vars:,} genes")

    # ================================================================
    # Step 2: Cell QC
    # ================================================================
    if "qc" not in skip:
        header(2, "Cell quality control")
        qc_dir = cfg.step_dir(STEP_DIRS["qc"])
        raw = adata
        adata, result.qc_report = run_cell_qc(raw, cfg=cfg)
        group = cfg.sample_key if cfg.sample_key in raw.obs.columns else None
        if group is not None:
            _write_table(qc_summary_table(raw, group), qc_dir / "qc_by_sample.csv", result)
            plot(viz.plot_qc_violins, raw, qc_dir / "qc_violins.png", groupby=group)
        plot(viz.plot_qc_scatter, raw, qc_dir / "qc_scatter.png")
        ranks, thresholds = barcode_ranks(raw)
        plot(viz.plot_barcode_ranks, ranks, thresholds, qc_dir / "barcode_ranks.png")
        del raw
    else:
        log.info("Skipping cell QC")

    # ================================================================
    # Step 3: Normalisation
    # ================================================================
    header(3, f"Normalisation ({cfg.norm_method})")
    normalize(adata, method=cfg.norm_method, target_sum=cfg.norm_target_sum)
    batch_key = _batch_key(adata, cfg)

    # ================================================================
    # Step 4: Feature selection
    # ================================================================
    header(4, f"Highly variable genes ({cfg.hvg_flavor})")
    result.hvgs = select_hvgs(
        adata,
        n_top_genes=cfg.n_top_genes,
        fraction=cfg.hvg_fraction,
        flavor=cfg.hvg_flavor,
        batch_key=batch_key,
    )
    _write_table(result.hvgs, cfg.step_dir(STEP_DIRS["features"]) / "hvgs.csv", result, index=True)

    # ================================================================
    # Step 5: Dimensionality reduction
    # ================================================================
    header(5, "PCA")
    reduce_dir = cfg.step_dir(STEP_DIRS["reduce"])
    run_pca(adata, n_comps=cfg.n_pcs, seed=cfg.seed)
    result.n_pcs = choose_n_pcs(
        adata, method=cfg.pc_choice, min_variance=cfg.pc_min_variance, n_pcs=cfg.n_pcs
    )
    plot(viz.plot_pca_variance, adata, reduce_dir / "pca_variance.png")

    # ================================================================
    # Step 6: Batch correction, neighbours, t-SNE and UMAP
    # ================================================================
    rep = "X_pca"
    if "integrate" not in skip and batch_key is not None:
        header(6, f"Batch correction ({cfg.batch_method})")
        rep = correct_batch(adata, batch_key, method=cfg.batch_method, seed=cfg.seed)
    else:
        header(6, "Batch correction skipped")
    result.embedding_key = rep
    n_pcs = min(result.n_pcs, adata.obsm[rep].shape[1])

    compute_neighbors(adata, n_neighbors=cfg.n_neighbors, n_pcs=n_pcs, use_rep=rep, seed=cfg.seed)
    run_tsne(adata, perplexity=cfg.tsne_perplexity, use_rep=rep, n_pcs=n_pcs, seed=cfg.seed)
    run_umap(adata, min_dist=cfg.umap_min_dist, seed=cfg.seed)
    meta = [k for k in (cfg.sample_key, batch_key, cfg.condition_key) if k and k in adata.obs.columns]
    if meta:
        plot(viz.plot_embedding, adata, reduce_dir / "umap_metadata.png", basis="X_umap", color=meta)
        plot(viz.plot_embedding, adata, reduce_dir / "tsne_metadata.png", basis="X_tsne", color=meta)

    # ================================================================
    # Step 7: Clustering
    # ================================================================
    header(7, f"Clustering ({cfg.graph_kind} graph, {cfg.cluster_method})")
    cluster_dir = cfg.step_dir(STEP_DIRS["cluster"])
    graph_key = build_graph(
        adata, kind=cfg.graph_kind, use_rep=rep, n_neighbors=cfg.n_neighbors, n_pcs=n_pcs, seed=cfg.seed
    )
    if cfg.resolution_sweep and cfg.cluster_method != "walktrap":
        result.sweep = resolution_sweep(
            adata,
            cfg.resolution_sweep,
            method=cfg.cluster_method,
            graph_key=graph_key,
            use_rep=rep,
            n_pcs=n_pcs,
            seed=cfg.seed,
        )
        _write_table(result.sweep, cluster_dir / "resolution_sweep.csv", result)
    cluster_key = cfg.cluster_method
    cluster_graph(
        adata,
        method=cfg.cluster_method,
        resolution=cfg.resolution,
        graph_key=graph_key,
        key_added=cluster_key,
        seed=cfg.seed,
    )
    result.cluster_key = result.label_key = cluster_key
    if adata.obs[cluster_key].nunique() > 1:
        widths = silhouette_by_cluster(adata, cluster_key, use_rep=rep, n_pcs=n_pcs)
        _write_table(widths, cluster_dir / "silhouette.csv", result)
    plot(viz.plot_embedding, adata, cluster_dir / "umap_clusters.png", basis="X_umap", color=cluster_key)
    if batch_key is not None:
        result.composition = batch_composition(adata, batch_key, cluster_key)
        _write_table(result.composition, cluster_dir / "cluster_by_batch.csv", result, index=True)
        plot(viz.plot_batch_heatmap, result.composition, cluster_dir / "cluster_by_batch.png")

    # ================================================================
    # Step 8: Markers and annotation
    # ================================================================
    if "markers" not in skip and adata.obs[cluster_key].nunique() > 1:
        header(8, f"Marker genes ({cfg.marker_method})")
        markers_dir = cfg.step_dir(STEP_DIRS["markers"])
        result.markers = find_markers(adata, cluster_key, method=cfg.marker_method)
        _write_table(result.markers, markers_dir / "markers.csv", result)
        top = top_markers(result.markers, n=min(cfg.n_markers, 5))
        plot(viz.plot_marker_dotplot, adata, top, cluster_key, markers_dir / "marker_dotplot.png")
        if marker_sets:
            result.annotation = annotate_clusters(adata, marker_sets, cluster_key, seed=cfg.seed)
            result.label_key = "cell_type"
            _write_table(result.annotation, markers_dir / "annotation_scores.csv", result, index=True)
            plot(viz.plot_embedding, adata, markers_dir / "umap_cell_types.png", basis="X_umap", color="cell_type")
    else:
        log.info("Skipping marker genes")

    label_key = result.label_key
    replicated = ("de" not in skip or "da" not in skip) and _has_replicates(adata, cfg)

    # ================================================================
    # Step 9: Pseudo-bulk differential expression
    # ================================================================
    if "de" not in skip and replicated:
        header(9, "Pseudo-bulk differential expression (pyDESeq2)")
        de_dir = cfg.step_dir(STEP_DIRS["de"])
        pb = aggregate_pseudobulk(adata, cfg.sample_key, label_key, min_cells=cfg.de_min_cells)
        result.de = run_all_labels(
            pb,
            label_key=label_key,
            condition_key=cfg.condition_key,
            contrast=cfg.contrast,
            min_samples=cfg.de_min_samples,
            alpha=cfg.de_alpha,
            threads=cfg.threads,
        )
        _write_table(result.de, de_dir / "pseudobulk_de.csv", result)
        for label, sub in result.de.groupby("label"):
            plot(
                viz.plot_volcano,
                sub,
                de_dir / f"volcano_{safe_filename(label)}.png",
                alpha=cfg.de_alpha,
                title=f"{label_key} {label}",
            )
    else:
        log.info("Skipping differential expression")

    # ================================================================
    # Step 10: Differential abundance
    # ================================================================
    if "da" not in skip and replicated:
        header(10, "Differential abundance")
        da_dir = cfg.step_dir(STEP_DIRS["da"])
        if adata.obs[label_key].nunique() > 1:
            result.cluster_da = cluster_da(
                adata,
                sample_key=cfg.sample_key,
                label_key=label_key,
                condition_key=cfg.condition_key,
                contrast=cfg.contrast,
                alpha=cfg.de_alpha,
                threads=cfg.threads,
            )
            _write_table(result.cluster_da, da_dir / "cluster_da.csv", result)
        make_neighbourhoods(adata, prop=cfg.da_prop, use_rep=rep, n_pcs=n_pcs, seed=cfg.seed)
        result.nhood_da = neighbourhood_da(
            adata,
            sample_key=cfg.sample_key,
            condition_key=cfg.condition_key,
            contrast=cfg.contrast,
            label_key=label_key,
            alpha=cfg.da_alpha,
            threads=cfg.threads,
        )
        _write_table(result.nhood_da, da_dir / "neighbourhood_da.csv", result)
        plot(
            viz.plot_da_beeswarm,
            result.nhood_da,
            da_dir / "da_beeswarm.png",
            label_key=label_key,
            alpha=cfg.da_alpha,
        )
    else:
        log.info("Skipping differential abundance")

    # ================================================================
    # Write processed AnnData and summary tables
    # ================================================================
    result.adata = adata
    result.h5ad_path = write_h5ad(adata, cfg.output_dir / "scworkflow.h5ad")
    result.elapsed_seconds = time.perf_counter() - t0
    _write_result_tables(result, cfg)

    console.print(
        Panel.fit(
            f"[bold green]Pipeline completed in {fmt_elapsed(result.elapsed_seconds)}[/bold green]\n"
            f"Output directory: {cfg.output_dir}",
            border_style="green",
        )
    )
    return result
