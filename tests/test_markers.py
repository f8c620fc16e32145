"""Tests for marker ranking and cluster annotation."""

from __future__ import annotations

import pandas as pd
import pytest


class TestFindMarkers:
    def test_tidy_table(self, clustered):
        from scworkflow.markers import MARKER_COLUMNS, find_markers

        markers = find_markers(clustered, "leiden")
        assert list(markers.columns) == MARKER_COLUMNS
        assert set(markers["group"]) == set(clustered.obs["leiden"].cat.categories)
        assert "rank_genes_groups" in clustered.uns
        assert markers["pct_in"].between(0, 1).all()

    def test_true_types_have_their_markers_on_top(self, clustered):
        from scworkflow.markers import find_markers, top_markers

        markers = find_markers(clustered, "true_type")
        top = top_markers(markers, n=5)
        for cell_type, genes in top.items():
            assert all(g.startswith(f"{cell_type}_M") for g in genes)

    def test_top_markers_logfc_filter(self, clustered):
        from scworkflow.markers import find_markers, top_markers

        markers = find_markers(clustered, "true_type")
        top = top_markers(markers, n=1000, min_logfc=2.0)
        assert all(len(genes) < clustered.n_vars for genes in top.values())
        kept = markers[markers["gene"].isin(top["Mono"]) & (markers["group"] == "Mono")]
        assert (kept["logfc"] >= 2.0).all()

    def test_logreg_has_no_pvalues(self, clustered):
        from scworkflow.markers import find_markers

        markers = find_markers(clustered, "true_type", method="logreg")
        assert markers["pval"].isna().all()

    def test_string_column_converted(self, clustered):
        from scworkflow.markers import find_markers

        clustered.obs["as_str"] = clustered.obs["true_type"].astype(str)
        find_markers(clustered, "as_str", method="t-test")
        assert isinstance(clustered.obs["as_str"].dtype, pd.CategoricalDtype)

    def test_errors(self, clustered):
        from scworkflow.markers import find_markers

        with pytest.raises(ValueError, match="Choose from"):
            find_markers(clustered, "leiden", method="mast")
        clustered.obs["tiny"] = ["a"] * (clustered.n_obs - 1) + ["b"]
        with pytest.raises(ValueError, match="fewer than two cells"):
            find_markers(clustered, "tiny")


class TestAnnotate:
    def test_annotate_clusters(self, clustered):
        from scworkflow.markers import annotate_clusters
        from tests.generate_test_data import marker_sets

        table = annotate_clusters(clustered, marker_sets(), "leiden")
        assert "cell_type" in clustered.obs.columns
        assert list(table.columns[:4]) == ["Tcell", "Bcell", "Mono", "NK"]
        assert set(table["cell_type"]) == {"Tcell", "Bcell", "Mono", "NK"}
        agree = (clustered.obs["cell_type"].astype(str) == clustered.obs["true_type"].astype(str)).mean()
        assert agree > 0.9

    def test_missing_genes_are_dropped(self, clustered):
        from scworkflow.markers import annotate_clusters

        sets = {"Mono": ["Mono_M1", "Mono_M2", "NOT_A_GENE"], "Ghost": ["NOPE1", "NOPE2"]}
        table = annotate_clusters(clustered, sets, "leiden", key_added="label")
        assert "Ghost" not in table.columns
        assert set(clustered.obs["label"]) == {"Mono"}

    def test_no_usable_set(self, clustered):
        from scworkflow.markers import annotate_clusters

        with pytest.raises(ValueError, match="None of the marker sets"):
            annotate_clusters(clustered, {"Ghost": ["NOPE"]}, "leiden")
