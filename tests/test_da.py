"""Tests for cluster- and neighbourhood-level differential abundance."""

from __future__ import annotations

import numpy as np
import pytest
from scipy import sparse


# ──────────────────────────────────────────────────────────────────────
# Spatial FDR
# ──────────────────────────────────────────────────────────────────────


class TestSpatialFDR:
    def test_equal_weights_is_bh(self):
        from scipy.stats import false_discovery_control

        from scworkflow.da import spatial_fdr

        p = np.array([0.001, 0.04, 0.03, 0.2, 0.5, 0.01])
        np.testing.assert_allclose(spatial_fdr(p, np.ones_like(p)), false_discovery_control(p))

    def test_nan_kept(self):
        from scworkflow.da import spatial_fdr

        out = spatial_fdr([0.01, np.nan, 0.02], [1.0, 1.0, 1.0])
        assert np.isnan(out[1])
        assert np.all(out[[0, 2]] <= 0.04)

    def test_weights_shift_adjustment(self):
        from scworkflow.da import spatial_fdr

        p = np.array([0.01, 0.02, 0.5])
        light = spatial_fdr(p, np.array([0.1, 1.0, 1.0]))
        heavy = spatial_fdr(p, np.array([10.0, 1.0, 1.0]))
        assert heavy[0] < light[0]
        assert np.all((light >= 0) & (light <= 1))

    def test_shape_mismatch(self):
        from scworkflow.da import spatial_fdr

        with pytest.raises(ValueError):
            spatial_fdr([0.1, 0.2], [1.0])


# ──────────────────────────────────────────────────────────────────────
# Cluster-level DA
# ──────────────────────────────────────────────────────────────────────


class TestClusterDA:
    def test_label_abundance_table(self, clustered):
        from scworkflow.da import label_abundance_table

        table = label_abundance_table(clustered, "sample", "true_type")
        assert table.shape == (4, 6)
        assert table.to_numpy().sum() == clustered.n_obs

    def test_monocytes_enriched(self, clustered):
        from scworkflow.da import cluster_da

        res = cluster_da(
            clustered, sample_key="sample", label_key="true_type", condition_key="condition"
        )
        assert {"n_cells_stim", "n_cells_ctrl", "padj"} <= set(res.columns)
        assert res["n_cells_stim"].sum() + res["n_cells_ctrl"].sum() == clustered.n_obs
        top = res.sort_values("log2FoldChange", ascending=False).iloc[0]
        assert top["true_type"] == "Mono"
        assert top["log2FoldChange"] > 0

    def test_needs_sample_level_condition(self, clustered):
        from scworkflow.da import cluster_da

        with pytest.raises(ValueError, match="vary within a sample"):
            cluster_da(
                clustered, sample_key="sample", label_key="leiden", condition_key="true_type"
            )


# ──────────────────────────────────────────────────────────────────────
# Neighbourhoods
# ──────────────────────────────────────────────────────────────────────


class TestNeighbourhoods:
    def test_make_neighbourhoods(self, clustered):
        from scworkflow.da import make_neighbourhoods

        nhoods = make_neighbourhoods(clustered, prop=0.1, n_pcs=10, seed=0)
        assert sparse.issparse(nhoods)
        assert nhoods.shape[0] == clustered.n_obs
        assert 1 <= nhoods.shape[1] <= round(0.1 * clustered.n_obs)
        index_cells = clustered.uns["nhoods"]["index_cells"]
        assert len(np.unique(index_cells)) == nhoods.shape[1]
        # every index cell belongs to its own neighbourhood
        assert all(nhoods[i, j] == 1 for j, i in enumerate(index_cells))
        assert (clustered.uns["nhoods"]["kth_distance"] > 0).all()

    def test_unrefined_keeps_draws(self, clustered):
        from scworkflow.da import make_neighbourhoods

        nhoods = make_neighbourhoods(clustered, prop=0.05, refined=False, seed=1)
        assert nhoods.shape[1] == round(0.05 * clustered.n_obs)

    def test_make_neighbourhoods_errors(self, clustered):
        from scworkflow.da import make_neighbourhoods

        with pytest.raises(ValueError):
            make_neighbourhoods(clustered, prop=0)
        del clustered.obsp["distances"]
        with pytest.raises(KeyError):
            make_neighbourhoods(clustered)

    def test_count_neighbourhoods(self, clustered):
        from scworkflow.da import count_neighbourhoods, make_neighbourhoods

        with pytest.raises(KeyError):
            count_neighbourhoods(clustered, "sample")
        nhoods = make_neighbourhoods(clustered, prop=0.1, seed=0)
        counts = count_neighbourhoods(clustered, "sample")
        assert counts.shape == (nhoods.shape[1], 6)
        np.testing.assert_array_equal(counts.sum(axis=1), np.asarray(nhoods.sum(axis=0)).ravel())

    def test_neighbourhood_da(self, clustered):
        from scworkflow.da import make_neighbourhoods, neighbourhood_da

        make_neighbourhoods(clustered, prop=0.1, n_pcs=10, seed=0)
        res = neighbourhood_da(
            clustered,
            sample_key="sample",
            condition_key="condition",
            label_key="true_type",
        )
        assert len(res) == clustered.obsm["nhoods"].shape[1]
        for col in ("nhood", "n_cells", "index_cell", "log2FoldChange", "SpatialFDR", "true_type"):
            assert col in res.columns
        fdr = res["SpatialFDR"].dropna()
        assert ((fdr >= 0) & (fdr <= 1)).all()
        mono = res["true_type"] == "Mono"
        assert res.loc[mono, "log2FoldChange"].mean() > res.loc[~mono, "log2FoldChange"].mean()
