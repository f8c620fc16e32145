"""
Read QC and quantification module — wraps **FastQC**, **MultiQC** and
**CellRanger count**.

Key design choices:
  • FastQC runs on every FASTQ and MultiQC aggregates the reports into one
    HTML page for the whole run.
  • ``cellranger count`` is run with ``--create-bam false`` by default;
    the course only needs the filtered feature-barcode matrix.
  • Cores and memory come from the shared config (``--localcores`` /
    ``--localmem``) so CellRanger never oversubscribes the machine.
  • Existing outputs are detected and the step is skipped on reruns.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from scworkflow.config import ScWorkflowConfig, require_tool
from scworkflow.utils import get_logger, run_cmd


@dataclass
class CountReport:
    """Parsed summary of a CellRanger ``metrics_summary.csv``."""

    estimated_cells: int = 0
    mean_reads_per_cell: int = 0
    median_genes_per_cell: int = 0
    number_of_reads: int = 0
    sequencing_saturation: float = 0.0
    fraction_reads_in_cells: float = 0.0
    reads_mapped_to_genome: float = 0.0

    def summary(self) -> str:
        return (
            f"Estimated cells: {self.estimated_cells:,}\n"
            f"Reads: {self.number_of_reads:,}  "
            f"Mean reads/cell: {self.mean_reads_per_cell:,}\n"
            f"Median genes/cell: {self.median_genes_per_cell:,}\n"
            f"Saturation: {self.sequencing_saturation:.1%}  "
            f"Reads in cells: {self.fraction_reads_in_cells:.1%}  "
            f"Mapped to genome: {self.reads_mapped_to_genome:.1%}"
        )


def _parse_number(value) -> float:
    """Convert CellRanger's formatted strings ('1,234', '85.3%') to numbers."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().replace(",", "")
    if text.endswith("%"):
        return float(text[:-1]) / 100.0
    return float(text)


def parse_metrics_summary(csv_path: Path) -> CountReport:
    """Extract key metrics from CellRanger's ``metrics_summary.csv``."""
    df = pd.read_csv(csv_path, dtype=str)
    if df.empty:
        raise ValueError(f"Empty metrics summary: {csv_path}")
    row = df.iloc[0]

    def get(col: str, default: float = 0.0) -> float:
        return _parse_number(row[col]) if col in row.index else default

    return CountReport(
        estimated_cells=int(get("Estimated Number of Cells")),
        mean_reads_per_cell=int(get("Mean Reads per Cell")),
        median_genes_per_cell=int(get("Median Genes per Cell")),
        number_of_reads=int(get("Number of Reads")),
        sequencing_saturation=get("Sequencing Saturation"),
        fraction_reads_in_cells=get("Fraction Reads in Cells"),
        reads_mapped_to_genome=get("Reads Mapped to Genome"),
    )


def run_fastqc(
    fastqs: Sequence[Path],
    output_dir: Path,
    *,
    cfg: Optional[ScWorkflowConfig] = None,
) -> list[Path]:
    """
    Run FastQC on raw FASTQ files.

    Returns the list of HTML reports written to *output_dir*.
    """
    if cfg is None:
        cfg = ScWorkflowConfig()
    if not fastqs:
        raise ValueError("No FASTQ files given to FastQC")

    fastqc = require_tool("fastqc")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    cmd = [fastqc, "--threads", str(cfg.threads), "--outdir", str(output_dir)]
    cmd.extend(str(f) for f in fastqs)
    run_cmd(cmd, desc=f"FastQC on {len(fastqs)} file(s)", log_path=output_dir / "fastqc.log")

    reports = []
    for f in fastqs:
        stem = Path(f).name
        for suffix in (".fastq.gz", ".fq.gz", ".fastq", ".fq"):
            if stem.endswith(suffix):
                stem = stem[: -len(suffix)]
                break
        reports.append(output_dir / f"{stem}_fastqc.html")
    return reports


def run_multiqc(input_dir: Path, output_dir: Path, *, title: str = "scworkflow") -> Path:
    """Aggregate FastQC (and CellRanger) reports into a single MultiQC report."""
    multiqc = require_tool("multiqc")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    run_cmd(
        [multiqc, str(input_dir), "--outdir", str(output_dir), "--title", title, "--force"],
        desc="MultiQC report",
        log_path=output_dir / "multiqc.log",
    )
    return output_dir / f"{title}_multiqc_report.html"


def run_cellranger_count(
    sample_id: str,
    fastq_dir: Path,
    transcriptome: Path,
    output_dir: Path,
    *,
    sample_prefix: Optional[str] = None,
    expect_cells: Optional[int] = None,
    cfg: Optional[ScWorkflowConfig] = None,
) -> tuple[Path, CountReport]:
    """
    Quantify a 10x library with ``cellranger count``.

    Parameters
    ----------
    sample_id : str
        Run identifier; CellRanger writes to ``<output_dir>/<sample_id>``.
    fastq_dir : Path
        Directory holding the sample's FASTQ files.
    transcriptome : Path
        CellRanger-compatible reference directory.
    output_dir : Path
        Working directory in which CellRanger is launched.
    sample_prefix : str, optional
        FASTQ file prefix (``--sample``) when it differs from *sample_id*.
    expect_cells : int, optional
        Expected number of recovered cells.
    cfg : ScWorkflowConfig, optional
        Configuration object.

    Returns
    -------
    (filtered_matrix_dir, CountReport)
    """
    log = get_logger()
    if cfg is None:
        cfg = ScWorkflowConfig()

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    outs = output_dir / sample_id / "outs"
    matrix_dir = outs / "filtered_feature_bc_matrix"
    metrics = outs / "metrics_summary.csv"

    if matrix_dir.exists() and metrics.exists():
        log.info(f"CellRanger outputs already exist, skipping count: {sample_id}")
        return matrix_dir, parse_metrics_summary(metrics)

    cellranger = require_tool("cellranger")
    cmd: list[str] = [
        cellranger,
        "count",
        f"--id={sample_id}",
        f"--transcriptome={Path(transcriptome).resolve()}",
        f"--fastqs={Path(fastq_dir).resolve()}",
        f"--sample={sample_prefix or sample_id}",
        f"--create-bam={'true' if cfg.create_bam else 'false'}",
        f"--localcores={cfg.threads}",
        f"--localmem={max(1, int(cfg.max_memory_gb))}",
    ]
    if expect_cells:
        cmd.append(f"--expect-cells={expect_cells}")
    if cfg.count_extra_args:
        cmd.extend(shlex.split(cfg.count_extra_args))

    run_cmd(
        cmd,
        desc=f"CellRanger count ({sample_id})",
        log_path=output_dir / f"{sample_id}.cellranger.log",
        cwd=output_dir,
    )

    report = parse_metrics_summary(metrics)
    log.info(f"CellRanger summary for {sample_id}:\n{report.summary()}")
    return matrix_dir, report
