"""
Command-line interface for scworkflow.

Usage examples
--------------
# Fetch course data and CellRanger
scworkflow download data       --output-dir /var/lib/scrnaseq
scworkflow download cellranger --output-dir /opt

# Quantify one library
scworkflow count \\
    --sample-id ETV6_RUNX1_rep1 \\
    --fastq-dir ./fastq \\
    --transcriptome ./refdata-gex-GRCh38-2020-A \\
    --output-dir ./results/01_count

# Run the analysis on a sample sheet (sample,path,condition,batch)
scworkflow run --input samples.csv --output-dir ./results --threads 8

# Run individual steps on a saved AnnData
scworkflow qc      --input samples.csv --output-dir ./results
scworkflow markers --input results/scworkflow.h5ad --groupby leiden -o ./markers
scworkflow de      --input results/scworkflow.h5ad --label-key leiden -o ./de
scworkflow da      --input results/scworkflow.h5ad --label-key leiden -o ./da

# Check tool availability
scworkflow check
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from anndata import AnnData
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from scworkflow import __version__
from scworkflow.config import ScWorkflowConfig, find_tools
from scworkflow.utils import get_logger, safe_filename

console = Console(stderr=True)

# Banner
BANNER = r"""
                             __    ______
   ___ _____    _____  _____/ /__ / __/ /___ _      __
  (_-</ __/ |/|/ / _ \/ __/  '_// /_/ / __ \ | /| / /
 /___/\__/|__,__/\___/_/ /_/\_\/_/ /_/\____/ |/ |/ /
  single-cell RNA-seq analysis workflow
"""

SKIPPABLE_STEPS = ["qc", "integrate", "markers", "de", "da"]


def _config(output_dir: str, threads: Optional[int], **fields) -> ScWorkflowConfig:
    cfg = ScWorkflowConfig(output_dir=Path(output_dir), **fields)
    if threads:
        cfg.threads = threads
    get_logger(cfg.log_file)
    return cfg


def _load_input(path: str, cfg: ScWorkflowConfig) -> AnnData:
    """A sample sheet CSV, a 10x matrix (directory or .h5) or an .h5ad file."""
    from scworkflow.data import load_samples, read_10x

    p = Path(path)
    if p.suffix == ".csv":
        return load_samples(p, sample_key=cfg.sample_key)
    adata = read_10x(p)
    if "counts" not in adata.layers and p.suffix != ".h5ad":
        adata.layers["counts"] = adata.X.copy()
    return adata


def _read_marker_sets(path: Optional[str]) -> Optional[dict[str, list[str]]]:
    """Marker sets from a CSV with ``cell_type`` and ``gene`` columns."""
    if path is None:
        return None
    import pandas as pd

    df = pd.read_csv(path)
    missing = {"cell_type", "gene"} - set(df.columns)
    if missing:
        raise click.BadParameter(f"Marker CSV is missing column(s) {sorted(missing)}")
    return {str(k): sub["gene"].astype(str).tolist() for k, sub in df.groupby("cell_type", sort=False)}


def _show_table(df, title: str, max_rows: int = 15) -> None:
    tbl = Table(title=title, show_lines=False)
    for col in df.columns:
        tbl.add_column(str(col))
    for _, row in df.head(max_rows).iterrows():
        tbl.add_row(*[f"{v:.3g}" if isinstance(v, float) else str(v) for v in row])
    console.print(tbl)


# ======================================================================
# Top-level group
# ======================================================================


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__, prog_name="scworkflow")
def main():
    """scworkflow: single-cell RNA-seq analysis from 10x counts to differential abundance."""
    pass


# ======================================================================
# scworkflow check — verify external tools
# ======================================================================


@main.command()
def check():
    """Check that the external read-level tools are installed."""
    console.print(BANNER, style="bold magenta")
    tools = find_tools()
    tbl = Table(title="External Tool Availability", show_lines=True)
    tbl.add_column("Tool", style="bold")
    tbl.add_column("Status")
    tbl.add_column("Path")

    all_ok = True
    for name, path in tools.items():
        if path:
            tbl.add_row(name, "[green]✔ Found[/green]", path)
        else:
            tbl.add_row(name, "[red]✘ Missing[/red]", "—")
            all_ok = False

    console.print(tbl)
    if all_ok:
        console.print("[bold green]All tools available![/bold green]")
    else:
        console.print(
            "[yellow]Some tools are missing. Install them and add to PATH.[/yellow]\n"
            "They are only needed for 'scworkflow count'; the analysis steps run without them."
        )


# ======================================================================
# scworkflow download — course data and CellRanger
# ======================================================================


@main.group()
def download():
    """Download course datasets and CellRanger."""
    pass


@download.command("data")
@click.option(
    "--output-dir", "-o", required=True, type=click.Path(), help="Directory for downloaded data."
)
@click.option(
    "--dataset",
    "-d",
    "datasets",
    multiple=True,
    type=click.Choice(["Data", "ETV6_RUNX1_rep1"]),
    help="Dataset(s) to fetch (default: all).",
)
@click.option("--keep-archives", is_flag=True, help="Keep the downloaded tarballs.")
def download_data(output_dir: str, datasets: tuple[str, ...], keep_archives: bool):
    """Download and unpack the course datasets."""
    from scworkflow.download import download_course_data

    get_logger(Path(output_dir) / "download.log")
    result = download_course_data(
        Path(output_dir), datasets=datasets or None, keep_archives=keep_archives
    )
    for name, path in result.items():
        console.print(f"  [green]{name}[/green]: {path}")


@download.command("cellranger")
@click.option(
    "--output-dir", "-o", required=True, type=click.Path(), help="Installation directory."
)
def download_cellranger_cmd(output_dir: str):
    """Download CellRanger and print the PATH entries it needs."""
    from scworkflow.download import cellranger_env_path, download_cellranger

    get_logger(Path(output_dir) / "download.log")
    root = download_cellranger(Path(output_dir))
    entries = ":".join(str(p) for p in cellranger_env_path(root))
    console.print(f"[green]CellRanger unpacked to {root}[/green]")
    console.print(f"export PATH={entries}:$PATH")


# ======================================================================
# scworkflow count — read QC and CellRanger quantification
# ======================================================================


@main.command("count")
@click.option("--sample-id", "-s", required=True, help="CellRanger run ID.")
@click.option(
    "--fastq-dir", "-f", required=True, type=click.Path(exists=True), help="FASTQ directory."
)
@click.option(
    "--transcriptome",
    "-r",
    required=True,
    type=click.Path(exists=True),
    help="CellRanger reference directory.",
)
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@click.option("--sample-prefix", default=None, help="FASTQ prefix if it differs from --sample-id.")
@click.option("--expect-cells", default=None, type=int, help="Expected number of cells.")
@click.option("--create-bam/--no-bam", default=False, help="Ask CellRanger for a BAM file.")
@click.option("--fastqc/--no-fastqc", default=True, help="Run FastQC and MultiQC first.")
@click.option("--threads", "-t", default=None, type=int, help="Number of threads.")
@click.option("--max-memory", "-m", default=None, type=float, help="Max memory in GB.")
def count_cmd(
    sample_id,
    fastq_dir,
    transcriptome,
    output_dir,
    sample_prefix,
    expect_cells,
    create_bam,
    fastqc,
    threads,
    max_memory,
):
    """Run FastQC/MultiQC and quantify a 10x library with CellRanger."""
    from scworkflow.count import run_cellranger_count, run_fastqc, run_multiqc

    cfg = _config(output_dir, threads, transcriptome=Path(transcriptome), create_bam=create_bam)
    if max_memory:
        cfg.max_memory_gb = max_memory
    cfg.ensure_dirs()

    if fastqc:
        fastqs = sorted(Path(fastq_dir).glob(f"{sample_prefix or sample_id}*.f*q.gz"))
        if fastqs:
            qc_dir = cfg.output_dir / "fastqc"
            run_fastqc(fastqs, qc_dir, cfg=cfg)
            run_multiqc(qc_dir, qc_dir, title=sample_id)
        else:
            get_logger().warning(f"No FASTQ files matching '{sample_prefix or sample_id}' found")

    matrix_dir, report = run_cellranger_count(
        sample_id,
        Path(fastq_dir),
        Path(transcriptome),
        cfg.output_dir,
        sample_prefix=sample_prefix,
        expect_cells=expect_cells,
        cfg=cfg,
    )
    console.print(Panel(report.summary(), title=f"CellRanger: {sample_id}", border_style="blue"))
    console.print(f"[green]Filtered matrix: {matrix_dir}[/green]")


# ======================================================================
# scworkflow qc — cell quality control
# ======================================================================


@main.command("qc")
@click.option(
    "--input",
    "-i",
    "input_path",
    required=True,
    type=click.Path(exists=True),
    help="Sample sheet CSV, 10x matrix or .h5ad.",
)
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
@click.option("--nmads", default=3.0, show_default=True, help="MADs defining an outlier.")
@click.option("--mito-prefix", default="MT-", show_default=True, help="Mitochondrial gene prefix.")
@click.option("--min-genes", default=0, show_default=True, help="Hard floor on detected genes.")
@click.option("--doublets/--no-doublets", default=True, help="Score doublets with Scrublet.")
@click.option("--batch-key", default="batch", show_default=True, help="obs column with batches.")
def qc_cmd(input_path, output_dir, nmads, mito_prefix, min_genes, doublets, batch_key):
    """Flag and remove low-quality cells and doublets."""
    from scworkflow.data import write_h5ad
    from scworkflow.qc import qc_summary_table, run_cell_qc

    cfg = _config(
        output_dir,
        None,
        qc_nmads=nmads,
        mito_prefix=mito_prefix,
        qc_min_genes=min_genes,
        detect_doublets=doublets,
        batch_key=batch_key,
    )
    cfg.ensure_dirs()
    adata = _load_input(input_path, cfg)
    filtered, report = run_cell_qc(adata, cfg=cfg)
    if cfg.sample_key in adata.obs.columns:
        table = qc_summary_table(adata, cfg.sample_key)
        table.to_csv(cfg.output_dir / "qc_by_sample.csv", index=False)
        _show_table(table, "QC by sample")
    write_h5ad(filtered, cfg.output_dir / "qc_filtered.h5ad")
    console.print(Panel(report.summary(), title="Cell QC Report", border_style="blue"))


# ======================================================================
# scworkflow markers — marker genes of a saved clustering
# ======================================================================


@main.command("markers")
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Processed .h5ad (normalised .X).")
@click.option("--groupby", "-g", default="leiden", show_default=True, help="obs column to rank.")
@click.option(
    "--method",
    default="wilcoxon",
    type=click.Choice(["wilcoxon", "t-test", "t-test_overestim_var", "logreg"]),
    show_default=True,
)
@click.option("--n-genes", default=10, show_default=True, help="Top genes shown per group.")
@click.option("--output-dir", "-o", required=True, type=click.Path(), help="Output directory.")
def markers_cmd(input_path, groupby, method, n_genes, output_dir):
    """Rank marker genes for every cluster against the rest."""
    from scworkflow.data import read_h5ad
    from scworkflow.markers import find_markers, top_markers
    from scworkflow.visualize import plot_marker_dotplot

    cfg = _config(output_dir, None, marker_method=method, n_markers=n_genes)
    cfg.ensure_dirs()
    adata = read_h5ad(Path(input_path))
    markers = find_markers(adata, groupby, method=method)
    markers.to_csv(cfg.output_dir / "markers.csv", index=False)
    top = top_markers(markers, n=n_genes)
    plot_marker_dotplot(
        adata, {g: genes[:5] for g, genes in top.items()}, groupby,
        cfg.output_dir / "marker_dotplot.png", cfg=cfg,
    )

    tbl = Table(title=f"Top {n_genes} markers per {groupby}", show_lines=True)
    tbl.add_column(groupby, style="bold cyan")
    tbl.add_column("Genes")
    for group, genes in top.items():
        tbl.add_row(group, ", ".join(genes))
    console.print(tbl)


# ======================================================================
# scworkflow de — pseudo-bulk differential expression
# ======================================================================


def _condition_options(func):
    for option in reversed(
        [
            click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
                         help="Processed .h5ad with raw counts in layers['counts']."),
            click.option("--label-key", "-l", default="leiden", show_default=True,
                         help="obs column with clusters or cell types."),
            click.option("--sample-key", default="sample", show_default=True),
            click.option("--condition-key", default="condition", show_default=True),
            click.option("--contrast", nargs=2, default=None, metavar="TEST REF",
                         help="Condition levels to compare (default: the two levels, sorted)."),
            click.option("--output-dir", "-o", required=True, type=click.Path(),
                         help="Output directory."),
            click.option("--threads", "-t", default=None, type=int, help="Number of threads."),
        ]
    ):
        func = option(func)
    return func


@main.command("de")
@_condition_options
@click.option("--min-cells", default=10, show_default=True, help="Min cells per pseudo-bulk profile.")
@click.option("--alpha", default=0.05, show_default=True, help="FDR threshold.")
def de_cmd(
    input_path, label_key, sample_key, condition_key, contrast, output_dir, threads, min_cells, alpha
):
    """Pseudo-bulk differential expression between conditions, per label."""
    from scworkflow.data import read_h5ad
    from scworkflow.de import aggregate_pseudobulk, run_all_labels
    from scworkflow.visualize import plot_volcano

    cfg = _config(
        output_dir,
        threads,
        sample_key=sample_key,
        condition_key=condition_key,
        contrast=contrast or None,
        de_min_cells=min_cells,
        de_alpha=alpha,
    )
    cfg.ensure_dirs()
    adata = read_h5ad(Path(input_path))
    pb = aggregate_pseudobulk(adata, sample_key, label_key, min_cells=min_cells)
    res = run_all_labels(
        pb,
        label_key=label_key,
        condition_key=condition_key,
        contrast=cfg.contrast,
        min_samples=cfg.de_min_samples,
        alpha=alpha,
        threads=cfg.threads,
    )
    res.to_csv(cfg.output_dir / "pseudobulk_de.csv", index=False)
    for label, sub in res.groupby("label"):
        plot_volcano(sub, cfg.output_dir / f"volcano_{safe_filename(label)}.png", alpha=alpha,
                     title=f"{label_key} {label}", cfg=cfg)

    n_sig = (
        res.assign(sig=res["padj"] < alpha).groupby("label")["sig"].sum().astype(int).reset_index()
    )
    n_sig.columns = ["label", f"genes at FDR < {alpha}"]
    _show_table(n_sig, "Pseudo-bulk DE")


# ======================================================================
# scworkflow da — differential abundance
# ======================================================================


@main.command("da")
@_condition_options
@click.option("--prop", default=0.1, show_default=True, help="Share of cells used as index cells.")
@click.option("--alpha", default=0.1, show_default=True, help="Spatial FDR threshold.")
def da_cmd(
    input_path, label_key, sample_key, condition_key, contrast, output_dir, threads, prop, alpha
):
    """Cluster-level and neighbourhood-level differential abundance."""
    from scworkflow.da import cluster_da, make_neighbourhoods, neighbourhood_da
    from scworkflow.data import read_h5ad
    from scworkflow.visualize import plot_da_beeswarm

    cfg = _config(
        output_dir,
        threads,
        sample_key=sample_key,
        condition_key=condition_key,
        contrast=contrast or None,
        da_prop=prop,
        da_alpha=alpha,
    )
    cfg.ensure_dirs()
    adata = read_h5ad(Path(input_path))

    per_label = cluster_da(
        adata,
        sample_key=sample_key,
        label_key=label_key,
        condition_key=condition_key,
        contrast=cfg.contrast,
        threads=cfg.threads,
    )
    per_label.to_csv(cfg.output_dir / "cluster_da.csv", index=False)
    _show_table(per_label, "Cluster-level DA")

    params = adata.uns.get("neighbors", {}).get("params", {})
    use_rep = params.get("use_rep", "X_pca")
    make_neighbourhoods(adata, prop=prop, use_rep=use_rep, n_pcs=params.get("n_pcs"), seed=cfg.seed)
    nhoods = neighbourhood_da(
        adata,
        sample_key=sample_key,
        condition_key=condition_key,
        contrast=cfg.contrast,
        label_key=label_key,
        alpha=alpha,
        threads=cfg.threads,
    )
    nhoods.to_csv(cfg.output_dir / "neighbourhood_da.csv", index=False)
    plot_da_beeswarm(nhoods, cfg.output_dir / "da_beeswarm.png", label_key=label_key,
                     alpha=alpha, cfg=cfg)
    n_sig = int((nhoods["SpatialFDR"] < alpha).sum())
    console.print(
        Panel(
            f"{len(nhoods)} neighbourhoods tested, {n_sig} at SpatialFDR < {alpha}",
            title="Neighbourhood DA",
            border_style="green",
        )
    )


# ======================================================================
# scworkflow run — full pipeline
# ======================================================================


@main.command("run")
@click.option(
    "--input",
    "-i",
    "input_path",
    required=True,
    type=click.Path(exists=True),
    help="Sample sheet CSV (sample,path,...) or .h5ad with raw counts.",
)
@click.option(
    "--output-dir", "-o", default="scworkflow_output", type=click.Path(), help="Output directory."
)
@click.option("--threads", "-t", default=None, type=int, help="Number of threads (default: auto).")
@click.option("--seed", default=100, show_default=True, help="Random seed.")
@click.option("--batch-key", default="batch", show_default=True, help="obs column with batches.")
@click.option("--condition-key", default="condition", show_default=True)
@click.option("--contrast", nargs=2, default=None, metavar="TEST REF", help="Condition levels.")
@click.option("--no-doublets", is_flag=True, help="Skip Scrublet doublet detection.")
@click.option(
    "--norm-method",
    default="library_size",
    type=click.Choice(["library_size", "pearson_residuals"]),
    show_default=True,
)
@click.option(
    "--hvg-flavor",
    default="seurat",
    type=click.Choice(["seurat", "cell_ranger", "seurat_v3", "pearson_residuals"]),
    show_default=True,
)
@click.option("--n-top-genes", default=2000, show_default=True, help="Number of HVGs.")
@click.option("--n-pcs", default=50, show_default=True, help="PCs computed.")
@click.option(
    "--pc-choice",
    default="elbow",
    type=click.Choice(["elbow", "variance", "fixed"]),
    show_default=True,
)
@click.option(
    "--batch-method",
    default="harmony",
    type=click.Choice(["harmony", "combat", "none"]),
    show_default=True,
)
@click.option(
    "--cluster-method",
    default="leiden",
    type=click.Choice(["leiden", "louvain", "walktrap"]),
    show_default=True,
)
@click.option("--resolution", default=1.0, show_default=True, help="Clustering resolution.")
@click.option("--n-neighbors", default=10, show_default=True, help="k of the k-NN graph.")
@click.option(
    "--marker-sets",
    default=None,
    type=click.Path(exists=True),
    help="CSV with cell_type,gene columns for cluster annotation.",
)
@click.option("--plot-format", default="png", type=click.Choice(["png", "pdf", "svg"]))
@click.option("--no-plots", is_flag=True, help="Do not save plots.")
@click.option("--skip", multiple=True, type=click.Choice(SKIPPABLE_STEPS), help="Step(s) to skip.")
def run_cmd(
    input_path,
    output_dir,
    threads,
    seed,
    batch_key,
    condition_key,
    contrast,
    no_doublets,
    norm_method,
    hvg_flavor,
    n_top_genes,
    n_pcs,
    pc_choice,
    batch_method,
    cluster_method,
    resolution,
    n_neighbors,
    marker_sets,
    plot_format,
    no_plots,
    skip,
):
    """Run the complete scworkflow analysis."""
    console.print(BANNER, style="bold magenta")

    cfg = _config(
        output_dir,
        threads,
        seed=seed,
        batch_key=batch_key,
        condition_key=condition_key,
        contrast=contrast or None,
        detect_doublets=not no_doublets,
        norm_method=norm_method,
        hvg_flavor=hvg_flavor,
        n_top_genes=n_top_genes,
        n_pcs=n_pcs,
        pc_choice=pc_choice,
        batch_method=batch_method,
        cluster_method=cluster_method,
        resolution=resolution,
        n_neighbors=n_neighbors,
        plot_format=plot_format,
    )

    from scworkflow.pipeline import run_pipeline

    source = Path(input_path)
    if source.suffix != ".csv":
        source = _load_input(input_path, cfg)
    result = run_pipeline(
        source,
        cfg=cfg,
        skip=skip,
        marker_sets=_read_marker_sets(marker_sets),
        make_plots=not no_plots,
    )
    console.print(result.summary_table())


if __name__ == "__main__":
    main()
