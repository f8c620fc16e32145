"""
Shared utility helpers for scworkflow.

Covers external tool execution with per-tool log files, AnnData guard
helpers, file-size helpers, and elapsed-time formatting.
"""

from __future__ import annotations

import logging
import re
import subprocess
import time
from pathlib import Path
from typing import Optional, Sequence

from anndata import AnnData
from rich.console import Console
from rich.logging import RichHandler

console = Console(stderr=True)

TOOL_LOG_TAIL = 20

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_logger: Optional[logging.Logger] = None


def get_logger(log_file: Optional[Path] = None) -> logging.Logger:
    """Return (and lazily configure) the package-wide logger."""
    global _logger
    if _logger is not None:
        return _logger

    _logger = logging.getLogger("scworkflow")
    _logger.setLevel(logging.DEBUG)

    # Rich console handler (INFO+)
    rh = RichHandler(console=console, show_path=False, markup=True)
    rh.setLevel(logging.INFO)
    _logger.addHandler(rh)

    # File handler (DEBUG+) — optional
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fmt = logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s")
        fh.setFormatter(fmt)
        _logger.addHandler(fh)

    return _logger


# ---------------------------------------------------------------------------
# Subprocess runner
# ---------------------------------------------------------------------------


def run_cmd(
    cmd: Sequence[str],
    *,
    desc: str = "",
    log_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external tool (FastQC, MultiQC, CellRanger) and log the call.

    CellRanger in particular prints a stage-by-stage trace that can run to
    thousands of lines. With *log_path* the tool's combined stdout/stderr
    goes to that file instead of the terminal, and the last
    ``TOOL_LOG_TAIL`` lines are logged if the tool exits non-zero.

    Raises
    ------
    FileNotFoundError
        The executable does not exist.
    subprocess.CalledProcessError
        The tool exited with a non-zero status.
    """
    log = get_logger()
    args = [str(c) for c in cmd]
    tool = Path(args[0]).name

    if desc:
        log.info(f"[bold cyan]{desc}[/bold cyan]")
    log.debug(f"CMD: {' '.join(args)}")
    start = time.perf_counter()

    try:
        if log_path is None:
            result = subprocess.run(args, check=True, text=True, cwd=cwd)
        else:
            ensure_parent(log_path)
            with open(log_path, "w", encoding="utf-8") as fh:
                result = subprocess.run(
                    args, stdout=fh, stderr=subprocess.STDOUT, check=True, text=True, cwd=cwd
                )
    except FileNotFoundError:
        log.error(f"{tool} not found; run `scworkflow check`")
        raise
    except subprocess.CalledProcessError as exc:
        log.error(f"{tool} failed (exit {exc.returncode})")
        if log_path is not None and log_path.exists():
            tail = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
            log.error("\n".join(tail[-TOOL_LOG_TAIL:]))
            log.error(f"Full {tool} output: {log_path}")
        raise

    log.info(f"{tool} finished in {fmt_elapsed(time.perf_counter() - start)}")
    return result


# ---------------------------------------------------------------------------
# AnnData guards
# ---------------------------------------------------------------------------


def require_obs(adata: AnnData, *keys: str) -> None:
    """Raise KeyError naming the available columns if any *keys* are missing."""
    missing = [k for k in keys if k not in adata.obs.columns]
    if missing:
        raise KeyError(
            f"Column(s) {missing} not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )


def require_obsm(adata: AnnData, key: str) -> None:
    """Raise KeyError if the embedding *key* has not been computed."""
    if key not in adata.obsm:
        raise KeyError(
            f"Embedding '{key}' not found in adata.obsm. "
            f"Available embeddings: {list(adata.obsm.keys())}"
        )


def counts_matrix(adata: AnnData, layer: Optional[str] = "counts"):
    """Return the raw counts matrix, falling back to .X when the layer is absent."""
    if layer is not None and layer in adata.layers:
        return adata.layers[layer]
    return adata.X


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def file_size_human(path: Path) -> str:
    """Return human-readable file size string."""
    size = path.stat().st_size
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} PB"


def fmt_elapsed(seconds: float) -> str:
    """Format seconds into H:MM:SS or M:SS."""
    h, rem = divmod(int(seconds), 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def ensure_parent(path: Path) -> Path:
    """Create parent directories and return *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(name: object) -> str:
    """Make a cluster or cell-type label usable as one path component."""
    cleaned = re.sub(r"[^A-Za-z0-9._+-]+", "_", str(name)).strip("._")
    return cleaned or "unnamed"
