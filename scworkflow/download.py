"""
Reference data download module.

Handles downloading and unpacking of:
  • The course datasets (10x matrices for the PBMC and ETV6-RUNX1 samples)
  • The CellRanger release used to quantify raw FASTQ files
"""

from __future__ import annotations

import tarfile
from pathlib import Path
from typing import Iterable, Optional

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from scworkflow.utils import get_logger

# ---------------------------------------------------------------------------
# Public URLs for course data
# ---------------------------------------------------------------------------

RELEASE_BASE = "https://github.com/GenomicsAotearoa/scRNA-seq-data-analysis/releases/download/2024-Apr"

COURSE_DATA_URLS = {
    # Filtered matrices for every sample used in the course
    "Data": f"{RELEASE_BASE}/Data.tar.gz",
    # Raw FASTQ files for one sample, used in the CellRanger episode
    "ETV6_RUNX1_rep1": f"{RELEASE_BASE}/ETV6_RUNX1_rep1.tar.gz",
}

CELLRANGER_VERSION = "8.0.0"
CELLRANGER_URL = f"{RELEASE_BASE}/cellranger-{CELLRANGER_VERSION}.tar.gz"

# ---------------------------------------------------------------------------
# Streaming download with progress
# ---------------------------------------------------------------------------


def _download_file(
    url: str,
    dest: Path,
    *,
    desc: str = "Downloading",
    chunk_size: int = 1024 * 1024,  # 1 MB chunks
) -> Path:
    """Stream-download *url* to *dest* with a Rich progress bar."""
    log = get_logger()
    dest.parent.mkdir(parents=True, exist_ok=True)

    if dest.exists():
        log.info(f"File already exists, skipping download: {dest.name}")
        return dest

    log.info(f"Downloading {desc}: {url}")
    resp = requests.get(url, stream=True, timeout=60)
    resp.raise_for_status()
    total = int(resp.headers.get("content-length", 0))

    partial = dest.with_name(dest.name + ".part")
    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    ) as progress:
        task = progress.add_task(desc, total=total or None)
        with open(partial, "wb") as fh:
            for chunk in resp.iter_content(chunk_size=chunk_size):
                fh.write(chunk)
                progress.advance(task, len(chunk))
    partial.rename(dest)

    log.info(f"Saved to {dest}  ({dest.stat().st_size / 1e6:.1f} MB)")
    return dest


def _extract_archive(archive: Path, dest_dir: Path) -> Path:
    """Extract a .tar.gz / .tgz archive into *dest_dir*."""
    log = get_logger()
    dest_dir.mkdir(parents=True, exist_ok=True)

    if archive.suffixes[-2:] == [".tar", ".gz"] or archive.suffix == ".tgz":
        log.info(f"Extracting tar.gz: {archive.name} → {dest_dir}")
        with tarfile.open(archive, "r:gz") as tf:
            tf.extractall(dest_dir)
    else:
        raise ValueError(f"Unknown archive format: {archive}")
    return dest_dir


# ---------------------------------------------------------------------------
# High-level download functions
# ---------------------------------------------------------------------------


def download_course_data(
    out_dir: Path,
    *,
    datasets: Optional[Iterable[str]] = None,
    keep_archives: bool = False,
) -> dict[str, Path]:
    """
    Download and unpack the course datasets.

    Parameters
    ----------
    datasets : iterable of str, optional
        Subset of ``COURSE_DATA_URLS`` keys; all datasets by default.
    keep_archives : bool
        Keep the downloaded tarballs after extraction.

    Returns
    -------
    dict mapping dataset name to its extracted directory.
    """
    log = get_logger()
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    names = list(datasets) if datasets is not None else list(COURSE_DATA_URLS)

    unknown = [n for n in names if n not in COURSE_DATA_URLS]
    if unknown:
        raise ValueError(f"Unknown dataset(s) {unknown}. Choose from: {list(COURSE_DATA_URLS)}")

    result: dict[str, Path] = {}
    for name in names:
        target = out_dir / name
        if target.exists():
            log.info(f"Dataset '{name}' already present at {target}")
            result[name] = target
            continue
        archive = out_dir / f"{name}.tar.gz"
        _download_file(COURSE_DATA_URLS[name], archive, desc=f"Course data ({name})")
        _extract_archive(archive, out_dir)
        if not keep_archives:
            archive.unlink()
        result[name] = target
        log.info(f"Dataset '{name}' ready at {target}")
    return result


def cellranger_env_path(root: Path) -> list[Path]:
    """Return the directories that must be on PATH for a CellRanger install."""
    root = Path(root)
    return [root / "bin", root / "bin" / "rna", root / "bin" / "sc_rna"]


def download_cellranger(out_dir: Path) -> Path:
    """
    Download and unpack CellRanger into *out_dir*.

    Returns the CellRanger root directory; add the entries of
    :func:`cellranger_env_path` to ``PATH`` to use it.
    """
    log = get_logger()
    out_dir = Path(out_dir)
    root = out_dir / f"cellranger-{CELLRANGER_VERSION}"
    if root.exists():
        log.info(f"CellRanger already unpacked at {root}")
        return root

    archive = out_dir / f"cellranger-{CELLRANGER_VERSION}.tar.gz"
    _download_file(CELLRANGER_URL, archive, desc=f"CellRanger {CELLRANGER_VERSION}")
    _extract_archive(archive, out_dir)
    archive.unlink()

    path_entries = ":".join(str(p) for p in cellranger_env_path(root))
    log.info(f"CellRanger ready. Add to PATH:\n  export PATH={path_entries}:$PATH")
    return root
