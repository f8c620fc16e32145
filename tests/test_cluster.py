"""Tests for graph construction and community detection."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from scipy import sparse


def _purity(labels, truth) -> float:
    table = pd.crosstab(
        pd.Series(np.asarray(labels), name="cluster"), pd.Series(np.asarray(truth), name="truth")
    )
    return float(table.max(axis=1).sum() / table.to_numpy().sum())


# ──────────────────────────────────────────────────────────────────────
# SNN graph
# ──────────────────────────────────────────────────────────────────────


class TestSNN:
    def test_jaccard_weights(self):
        from scworkflow.cluster import snn_from_knn

        # 0-1-2 form a clique, 3 only knows 2
        knn = sparse.csr_matrix(
            np.array(
                [
                    [0, 1, 1, 0],
                    [1, 0, 1, 0],
                    [1, 1, 0, 0],
                    [0, 0, 1, 0],
                ],
                dtype=float,
            )
        )
        snn = snn_from_knn(knn, prune=0.0).toarray()
        assert snn[0, 1] == pytest.approx(1.0)
        # N(2)={0,1,2}, N(3)={2,3}: |∩|=1, |∪|=4
        assert snn[2, 3] == pytest.approx(0.25)
        assert np.all(np.diag(snn) == 0)
        np.testing.assert_allclose(snn, snn.T)

    def test_pruning(self):
        from scworkflow.cluster import snn_from_knn

        knn = sparse.random(50, 50, density=0.1, random_state=0, format="csr")
        full = snn_from_knn(knn, prune=0.0)
        pruned = snn_from_knn(knn, prune=0.3)
        assert pruned.nnz < full.nnz
        assert np.all(pruned.data >= 0.3)

    def test_build_graph_kinds(self, clustered):
        from scworkflow.cluster import build_graph

        assert build_graph(clustered, kind="snn", n_pcs=10) == "snn"
        assert clustered.obsp["snn"].shape == (clustered.n_obs, clustered.n_obs)
        assert build_graph(clustered, kind="connectivities", n_pcs=10) == "connectivities"
        with pytest.raises(ValueError, match="graph kind"):
            build_graph(clustered, kind="mutual")

    def test_build_graph_recomputes_for_other_rep(self, clustered):
        from scworkflow.cluster import build_graph

        clustered.obsm["X_alt"] = clustered.obsm["X_pca"][:, :5].copy()
        build_graph(clustered, use_rep="X_alt", n_neighbors=8)
        assert clustered.uns["neighbors"]["params"]["use_rep"] == "X_alt"


# ──────────────────────────────────────────────────────────────────────
# Community detection
# ──────────────────────────────────────────────────────────────────────


class TestClusterGraph:
    def test_leiden_recovers_cell_types(self, clustered_adata):
        labels = clustered_adata.obs["leiden"]
        # without batch correction a type may split by batch, but never mixes
        assert labels.nunique() >= 4
        assert _purity(labels.astype(str), clustered_adata.obs["true_type"].astype(str)) > 0.9

    def test_labels_ordered_by_size(self, clustered_adata):
        labels = clustered_adata.obs["leiden"]
        assert list(labels.cat.categories) == [str(i) for i in range(labels.nunique())]
        sizes = labels.value_counts().reindex(labels.cat.categories)
        assert sizes.is_monotonic_decreasing

    @pytest.mark.parametrize("method", ["louvain", "walktrap"])
    def test_other_methods(self, clustered, method):
        from scworkflow.cluster import cluster_graph

        labels = cluster_graph(clustered, method=method, seed=0)
        assert method in clustered.obs.columns
        assert clustered.uns[method]["params"]["method"] == method
        assert _purity(np.asarray(labels), clustered.obs["true_type"].astype(str)) > 0.85

    def test_seed_reproducible(self, clustered):
        from scworkflow.cluster import cluster_graph

        a = cluster_graph(clustered, resolution=1.0, key_added="a", seed=7)
        b = cluster_graph(clustered, resolution=1.0, key_added="b", seed=7)
        assert list(a) == list(b)

    def test_resolution_increases_clusters(self, clustered):
        from scworkflow.cluster import cluster_graph

        low = cluster_graph(clustered, resolution=0.1, key_added="low", seed=0)
        high = cluster_graph(clustered, resolution=3.0, key_added="high", seed=0)
        assert len(high.categories) > len(low.categories)

    def test_errors(self, clustered):
        from scworkflow.cluster import cluster_graph

        with pytest.raises(ValueError, match="Choose from"):
            cluster_graph(clustered, method="kmeans")
        with pytest.raises(KeyError, match="build_graph"):
            cluster_graph(clustered, graph_key="nope")


# ──────────────────────────────────────────────────────────────────────
# Quality
# ──────────────────────────────────────────────────────────────────────


class TestQuality:
    def test_silhouette_by_cluster(self, clustered):
        from scworkflow.cluster import silhouette_by_cluster

        table = silhouette_by_cluster(clustered, "leiden", n_pcs=10)
        assert set(table.columns) == {"cluster", "n_cells", "mean_width", "fraction_negative"}
        assert table["n_cells"].sum() == clustered.n_obs
        assert (table["mean_width"] > 0).mean() > 0.5

    def test_silhouette_needs_two_clusters(self, clustered):
        from scworkflow.cluster import silhouette_by_cluster

        clustered.obs["one"] = "x"
        with pytest.raises(ValueError):
            silhouette_by_cluster(clustered, "one")

    def test_resolution_sweep(self, clustered):
        from scworkflow.cluster import resolution_sweep

        table = resolution_sweep(clustered, [0.2, 1.0, 2.0], n_pcs=10, seed=0)
        assert list(table.columns) == ["resolution", "n_clusters", "silhouette"]
        assert table["n_clusters"].is_monotonic_increasing
        assert "leiden_res1.0" not in clustered.obs.columns

    def test_resolution_sweep_keeps_labels(self, clustered):
        from scworkflow.cluster import resolution_sweep

        resolution_sweep(clustered, [0.5], n_pcs=10, keep_labels=True)
        assert "leiden_res0.5" in clustered.obs.columns
