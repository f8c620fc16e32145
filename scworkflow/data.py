"""
Data loading module.

Reads CellRanger feature-barcode matrices (``.h5`` or the
``matrix.mtx.gz`` directory layout), attaches sample-sheet metadata and
concatenates samples into a single AnnData whose raw counts are kept in
``layers["counts"]`` for every downstream step.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

import anndata as ad
import pandas as pd
import scanpy as sc
from anndata import AnnData

from scworkflow.utils import ensure_parent, get_logger

REQUIRED_SHEET_COLUMNS = ("sample", "path")


def read_10x(path: Path) -> AnnData:
    """
    Read a single 10x feature-barcode matrix.

    Gene symbols become the var names (made unique); Ensembl IDs are kept
    in ``var["gene_ids"]``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"10x matrix not found: {path}")

    if path.is_dir():
        adata = sc.read_10x_mtx(path, var_names="gene_symbols", cache=False)
    elif path.suffix == ".h5":
        adata = sc.read_10x_h5(path)
    elif path.suffix == ".h5ad":
        adata = sc.read_h5ad(path)
    else:
        raise ValueError(f"Unsupported matrix format: {path}")

    adata.var_names_make_unique()
    return adata


def read_sample_sheet(csv_path: Path) -> pd.DataFrame:
    """
    Read a sample sheet.

    The sheet needs ``sample`` and ``path`` columns; every other column is
    treated as sample-level metadata (condition, batch, ...). Relative
    paths resolve against the sheet's directory.
    """
    csv_path = Path(csv_path)
    sheet = pd.read_csv(csv_path, dtype=str)
    sheet.columns = [c.strip() for c in sheet.columns]

    missing = [c for c in REQUIRED_SHEET_COLUMNS if c not in sheet.columns]
    if missing:
        raise ValueError(f"Sample sheet {csv_path} lacks column(s): {missing}")

    dupes = sheet["sample"][sheet["sample"].duplicated()].tolist()
    if dupes:
        raise ValueError(f"Duplicated sample name(s) in {csv_path}: {dupes}")

    base = csv_path.parent
    sheet["path"] = [
        str(p) if Path(p).is_absolute() else str((base / p).resolve()) for p in sheet["path"]
    ]
    return sheet


def load_samples(sheet: Union[pd.DataFrame, Path], *, sample_key: str = "sample") -> AnnData:
    """
    Load every sample of a sample sheet into one AnnData.

    Cell barcodes are prefixed with the sample name so they stay unique
    after concatenation; sheet metadata is copied into ``.obs`` as
    categoricals.
    """
    log = get_logger()
    if not isinstance(sheet, pd.DataFrame):
        sheet = read_sample_sheet(Path(sheet))
    if sheet.empty:
        raise ValueError("Sample sheet has no rows")

    meta_cols = [c for c in sheet.columns if c not in REQUIRED_SHEET_COLUMNS]
    adatas: list[AnnData] = []
    for _, row in sheet.iterrows():
        sample = row["sample"]
        adata = read_10x(Path(row["path"]))
        adata.obs_names = [f"{sample}_{bc}" for bc in adata.obs_names]
        adata.obs[sample_key] = sample
        for col in meta_cols:
            adata.obs[col] = row[col]
        log.info(f"Loaded {sample}: {adata.n_obs:,} cells × {adata.n_vars:,} genes")
        adatas.append(adata)

    combined = ad.concat(adatas, join="inner", merge="same")
    for col in [sample_key, *meta_cols]:
        combined.obs[col] = pd.Categorical(combined.obs[col])
    combined.layers["counts"] = combined.X.copy()
    log.info(
        f"Combined {len(adatas)} sample(s): {combined.n_obs:,} cells × {combined.n_vars:,} genes"
    )
    return combined


def write_h5ad(adata: AnnData, path: Path) -> Path:
    """Write *adata* to a compressed ``.h5ad`` file."""
    path = ensure_parent(Path(path))
    adata.write_h5ad(path, compression="gzip")
    get_logger().info(f"Saved AnnData → {path}")
    return path


def read_h5ad(path: Path) -> AnnData:
    """Read a ``.h5ad`` written by :func:`write_h5ad`."""
    return ad.read_h5ad(Path(path))
