"""
Configuration management for scworkflow.

Centralises default parameters, external tool paths, resource limits,
and pipeline-wide settings so that every course step shares a single
source of truth.
"""

from __future__ import annotations

import multiprocessing
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import psutil


# ---------------------------------------------------------------------------
# External tool discovery
# ---------------------------------------------------------------------------


def _find_tool(name: str) -> Optional[str]:
    """Return the absolute path to *name* if it is on PATH, else None."""
    return shutil.which(name)


def find_tools() -> dict[str, Optional[str]]:
    """Scan PATH for every external binary scworkflow may call."""
    names = [
        "cellranger",
        "fastqc",
        "multiqc",
        "samtools",
    ]
    return {n: _find_tool(n) for n in names}


def require_tool(name: str) -> str:
    """Return the path to *name* or raise with a helpful message."""
    path = _find_tool(name)
    if path is None:
        raise EnvironmentError(
            f"Required external tool '{name}' was not found on PATH.\n"
            f"Please install it and make sure it is accessible.\n"
            f"  - cellranger: scworkflow download cellranger -o /opt\n"
            f"  - fastqc:     https://www.bioinformatics.babraham.ac.uk/projects/fastqc/\n"
            f"  - multiqc:    https://github.com/MultiQC/MultiQC\n"
            f"  - samtools:   https://github.com/samtools/samtools\n"
        )
    return path


# ---------------------------------------------------------------------------
# System resource helpers
# ---------------------------------------------------------------------------


def available_memory_gb() -> float:
    """Return available physical memory in GiB."""
    return psutil.virtual_memory().available / (1024**3)


def total_memory_gb() -> float:
    """Return total physical memory in GiB."""
    return psutil.virtual_memory().total / (1024**3)


def default_threads() -> int:
    """Sensible default thread count (leave 1–2 cores free)."""
    n = multiprocessing.cpu_count()
    return max(1, n - 2)


# ---------------------------------------------------------------------------
# Pipeline configuration dataclass
# ---------------------------------------------------------------------------


@dataclass
class ScWorkflowConfig:
    """Master configuration object passed through the pipeline."""

    # --- I/O ---
    output_dir: Path = field(default_factory=lambda: Path("scworkflow_output"))
    log_file: Optional[Path] = None  # defaults to output_dir / "scworkflow.log"

    # --- Computing resources ---
    threads: int = field(default_factory=default_threads)
    max_memory_gb: float = field(default_factory=lambda: min(total_memory_gb() * 0.8, 64.0))
    seed: int = 100

    # --- Sample metadata columns ---
    sample_key: str = "sample"
    condition_key: str = "condition"
    batch_key: Optional[str] = "batch"

    # --- Quantification (CellRanger) ---
    transcriptome: Optional[Path] = None
    create_bam: bool = False
    count_extra_args: str = ""

    # --- Cell QC ---
    mito_prefix: str = "MT-"
    ribo_prefixes: tuple[str, ...] = ("RPS", "RPL")
    qc_nmads: float = 3.0
    qc_min_genes: int = 0  # hard floor in addition to MAD outliers
    qc_min_cells_per_gene: int = 1
    detect_doublets: bool = True
    remove_doublets: bool = True

    # --- Normalisation ---
    norm_method: str = "library_size"  # library_size | pearson_residuals
    norm_target_sum: Optional[float] = None  # None = mean library size

    # --- Feature selection ---
    hvg_flavor: str = "seurat"  # seurat | cell_ranger | seurat_v3
    n_top_genes: Optional[int] = 2000
    hvg_fraction: Optional[float] = None  # alternative to n_top_genes

    # --- Dimensionality reduction ---
    n_pcs: int = 50
    pc_choice: str = "elbow"  # elbow | variance | fixed
    pc_min_variance: float = 0.8
    n_neighbors: int = 10
    tsne_perplexity: float = 30.0
    umap_min_dist: float = 0.5

    # --- Batch correction ---
    batch_method: str = "harmony"  # harmony | combat | none

    # --- Clustering ---
    graph_kind: str = "snn"  # snn | connectivities
    cluster_method: str = "leiden"  # leiden | louvain | walktrap
    resolution: float = 1.0
    resolution_sweep: tuple[float, ...] = (0.2, 0.5, 1.0, 1.5, 2.0)

    # --- Markers ---
    marker_method: str = "wilcoxon"  # wilcoxon | t-test | logreg
    n_markers: int = 10

    # --- Differential expression (pseudo-bulk) ---
    de_min_cells: int = 10
    de_min_samples: int = 2
    de_alpha: float = 0.05
    contrast: Optional[tuple[str, str]] = None  # (test, reference)

    # --- Differential abundance ---
    da_prop: float = 0.1
    da_alpha: float = 0.1

    # --- Visualisation ---
    plot_format: str = "png"  # png | pdf | svg
    dpi: int = 300

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir)
        if self.log_file is None:
            self.log_file = self.output_dir / "scworkflow.log"
        else:
            self.log_file = Path(self.log_file)
        if self.transcriptome is not None:
            self.transcriptome = Path(self.transcriptome)
        if self.contrast is not None:
            self.contrast = tuple(self.contrast)
            if len(self.contrast) != 2:
                raise ValueError(
                    f"contrast must be (test, reference), got {self.contrast!r}"
                )

    def ensure_dirs(self) -> None:
        """Create the output directory if it does not exist."""
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def step_dir(self, name: str) -> Path:
        """Return (and create) the numbered output directory for a step."""
        d = self.output_dir / name
        d.mkdir(parents=True, exist_ok=True)
        return d

    @property
    def system_summary(self) -> str:
        mem = total_memory_gb()
        cpu = multiprocessing.cpu_count()
        return (
            f"OS={platform.system()} {platform.release()}  "
            f"CPUs={cpu}  RAM={mem:.1f} GiB  "
            f"Threads={self.threads}  MaxMem={self.max_memory_gb:.1f} GiB"
        )
