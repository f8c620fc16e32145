"""
Test data generator for scworkflow.

Simulates a small multi-sample 10x experiment with negative-binomial
counts:
  • 6 samples: s1–s3 ``ctrl`` and s4–s6 ``stim``, spread over 3 batches
    so that batch and condition are not confounded
  • 4 cell types, each with a block of marker genes
  • mitochondrial (``MT-``) and ribosomal (``RPS``/``RPL``) genes
  • a share of low-quality cells (small library, high mitochondrial share)
  • interferon-stimulated genes up-regulated in ``stim`` in every cell type
  • a shift in cell-type abundance: more monocytes under ``stim``
  • a mild multiplicative batch effect

It can also write the samples as CellRanger ``filtered_feature_bc_matrix``
directories with a matching sample sheet.
"""

from __future__ import annotations

import gzip
import shutil
from pathlib import Path

import numpy as np
import pandas as pd
from anndata import AnnData
from scipy import io, sparse

CELL_TYPES = ("Tcell", "Bcell", "Mono", "NK")
SAMPLES = {
    "s1": ("ctrl", "b1"),
    "s2": ("ctrl", "b2"),
    "s3": ("ctrl", "b3"),
    "s4": ("stim", "b1"),
    "s5": ("stim", "b2"),
    "s6": ("stim", "b3"),
}
PROPORTIONS = {
    "ctrl": (0.40, 0.25, 0.20, 0.15),
    "stim": (0.30, 0.20, 0.35, 0.15),
}
N_MARKERS = 15
N_MITO = 13
N_RIBO = 10
N_ISG = 20
ISG_FOLD = 4.0


def gene_names(n_genes: int = 400) -> list[str]:
    names = [f"MT-{i + 1}" for i in range(N_MITO)]
    names += [f"RPS{i + 1}" for i in range(N_RIBO // 2)]
    names += [f"RPL{i + 1}" for i in range(N_RIBO - N_RIBO // 2)]
    names += [f"{ct}_M{j + 1}" for ct in CELL_TYPES for j in range(N_MARKERS)]
    names += [f"ISG{j + 1}" for j in range(N_ISG)]
    n_rest = n_genes - len(names)
    if n_rest < 0:
        raise ValueError(f"n_genes must be at least {len(names)}")
    names += [f"GENE{j + 1}" for j in range(n_rest)]
    return names


def marker_sets(n: int = 5) -> dict[str, list[str]]:
    """Known markers of every simulated cell type."""
    return {ct: [f"{ct}_M{j + 1}" for j in range(n)] for ct in CELL_TYPES}


def simulate_counts(
    *,
    n_cells_per_sample: int = 150,
    n_genes: int = 400,
    low_quality_frac: float = 0.05,
    theta: float = 5.0,
    seed: int = 0,
) -> AnnData:
    """
    Simulate raw UMI counts with ``obs`` columns ``sample``, ``condition``,
    ``batch``, ``true_type`` and ``low_quality``.
    """
    rng = np.random.default_rng(seed)
    names = gene_names(n_genes)
    is_mito = np.array([n.startswith("MT-") for n in names])
    is_ribo = np.array([n.startswith(("RPS", "RPL")) for n in names])
    is_isg = np.array([n.startswith("ISG") for n in names])

    base = rng.gamma(shape=0.8, scale=1.0, size=n_genes)
    base[is_mito] = 4.0
    base[is_ribo] = 8.0
    base = base / base.sum() * 2000.0

    type_fold = np.ones((len(CELL_TYPES), n_genes))
    for t, ct in enumerate(CELL_TYPES):
        idx = [names.index(f"{ct}_M{j + 1}") for j in range(N_MARKERS)]
        type_fold[t, idx] = 12.0
        base[idx] = np.maximum(base[idx], 1.0)

    batch_fold = {}
    affected = rng.random(n_genes) < 0.2
    for b in sorted({b for _, b in SAMPLES.values()}):
        fold = np.ones(n_genes)
        fold[affected] = rng.lognormal(0.0, 0.4, size=int(affected.sum()))
        batch_fold[b] = fold

    blocks, obs_rows = [], []
    for sample, (condition, batch) in SAMPLES.items():
        types = rng.choice(len(CELL_TYPES), size=n_cells_per_sample, p=PROPORTIONS[condition])
        lib = rng.lognormal(0.0, 0.3, size=n_cells_per_sample)
        low_q = rng.random(n_cells_per_sample) < low_quality_frac

        mu = base[None, :] * type_fold[types] * batch_fold[batch][None, :]
        if condition == "stim":
            mu[:, is_isg] *= ISG_FOLD
        mu *= lib[:, None]
        mu[np.ix_(low_q, is_mito)] *= 10.0
        mu[low_q] *= 0.1

        counts = rng.negative_binomial(theta, theta / (theta + mu))
        blocks.append(sparse.csr_matrix(counts.astype(np.float32)))
        for i in range(n_cells_per_sample):
            obs_rows.append(
                {
                    "barcode": f"{sample}_BC{i:05d}-1",
                    "sample": sample,
                    "condition": condition,
                    "batch": batch,
                    "true_type": CELL_TYPES[types[i]],
                    "low_quality": bool(low_q[i]),
                }
            )

    obs = pd.DataFrame(obs_rows).set_index("barcode")
    obs.index.name = None
    for col in ("sample", "condition", "batch", "true_type"):
        obs[col] = pd.Categorical(obs[col])
    adata = AnnData(
        X=sparse.vstack(blocks).tocsr(),
        obs=obs,
        var=pd.DataFrame({"gene_ids": [f"ENSG{i:011d}" for i in range(n_genes)]}, index=names),
    )
    adata.layers["counts"] = adata.X.copy()
    return adata


# ---------------------------------------------------------------------------
# 10x writers
# ---------------------------------------------------------------------------


def _gzip(path: Path) -> Path:
    out = path.with_name(path.name + ".gz")
    with open(path, "rb") as src, gzip.open(out, "wb") as dst:
        shutil.copyfileobj(src, dst)
    path.unlink()
    return out


def write_10x_mtx(adata: AnnData, out_dir: Path) -> Path:
    """Write *adata* as a CellRanger v3 ``filtered_feature_bc_matrix`` directory."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    matrix = sparse.csr_matrix(adata.X).T.tocoo().astype(np.int64)
    io.mmwrite(str(out_dir / "matrix.mtx"), matrix, field="integer")
    _gzip(out_dir / "matrix.mtx")

    features = pd.DataFrame(
        {
            "id": adata.var["gene_ids"].to_numpy(),
            "name": adata.var_names.to_numpy(),
            "type": "Gene Expression",
        }
    )
    features.to_csv(out_dir / "features.tsv", sep="\t", header=False, index=False)
    _gzip(out_dir / "features.tsv")

    barcodes = [name.split("_", 1)[-1] for name in adata.obs_names]
    pd.Series(barcodes).to_csv(out_dir / "barcodes.tsv", sep="\t", header=False, index=False)
    _gzip(out_dir / "barcodes.tsv")
    return out_dir


def write_sample_sheet(adata: AnnData, out_dir: Path) -> Path:
    """Write one 10x directory per sample plus ``samples.csv`` (relative paths)."""
    out_dir = Path(out_dir)
    rows = []
    for sample in adata.obs["sample"].cat.categories:
        sub = adata[(adata.obs["sample"] == sample).to_numpy()]
        rel = Path(sample) / "outs" / "filtered_feature_bc_matrix"
        write_10x_mtx(sub, out_dir / rel)
        first = sub.obs.iloc[0]
        rows.append(
            {"sample": sample, "path": str(rel), "condition": first["condition"], "batch": first["batch"]}
        )
    sheet = out_dir / "samples.csv"
    pd.DataFrame(rows).to_csv(sheet, index=False)
    return sheet


# ---------------------------------------------------------------------------
# CLI entry point for generating test data
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import sys

    out = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("test_data")
    sheet = write_sample_sheet(simulate_counts(), out)
    print(f"Generated test data: {sheet}")
