"""Pytest fixtures for scworkflow tests."""

from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(scope="session")
def sim_adata():
    """Simulated raw counts, generated once per session. Copy before mutating."""
    from tests.generate_test_data import simulate_counts

    return simulate_counts(seed=0)


@pytest.fixture
def raw_adata(sim_adata):
    return sim_adata.copy()


@pytest.fixture(scope="session")
def sample_sheet(sim_adata, tmp_path_factory) -> Path:
    """Per-sample 10x directories and the matching sample sheet."""
    from tests.generate_test_data import write_sample_sheet

    d = tmp_path_factory.mktemp("scworkflow_10x")
    return write_sample_sheet(sim_adata, d)


@pytest.fixture(scope="session")
def clustered_adata(sim_adata):
    """Normalised, reduced and Leiden-clustered data (no QC filtering)."""
    from scworkflow.cluster import build_graph, cluster_graph
    from scworkflow.features import select_hvgs
    from scworkflow.normalize import normalize
    from scworkflow.reduce import compute_neighbors, run_pca

    adata = sim_adata[~sim_adata.obs["low_quality"].to_numpy()].copy()
    normalize(adata)
    select_hvgs(adata, n_top_genes=200)
    run_pca(adata, n_comps=20, seed=0)
    compute_neighbors(adata, n_neighbors=15, n_pcs=10, seed=0)
    build_graph(adata, kind="snn", n_pcs=10)
    cluster_graph(adata, method="leiden", resolution=0.5, seed=0)
    return adata


@pytest.fixture
def clustered(clustered_adata):
    return clustered_adata.copy()
