"""Tests for cell QC, read-level tools and CellRanger metrics parsing."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scworkflow.config import ScWorkflowConfig, find_tools


# ──────────────────────────────────────────────────────────────────────
# Outlier detection
# ──────────────────────────────────────────────────────────────────────


class TestIsOutlier:
    def test_flags_both_tails(self):
        from scworkflow.qc import is_outlier

        values = pd.Series([10.0] * 50 + [11.0] * 50 + [100.0, -80.0])
        flags = is_outlier(values, nmads=3)
        assert flags.iloc[-1] and flags.iloc[-2]
        assert not flags.iloc[:100].any()

    def test_lower_tail_only(self):
        from scworkflow.qc import is_outlier

        values = pd.Series([10.0, 11.0, 12.0, 10.5, 11.5] * 10 + [1000.0, 0.0])
        flags = is_outlier(values, nmads=3, type="lower")
        assert flags.iloc[-1]
        assert not flags.iloc[-2]

    def test_log_scale_thresholds_on_original_scale(self):
        from scworkflow.qc import is_outlier

        rng = np.random.default_rng(1)
        values = pd.Series(rng.lognormal(7, 0.2, size=500))
        flags = is_outlier(values, nmads=3, log=True, type="lower")
        lower, _ = flags.attrs["thresholds"]["all"]
        assert 0 < lower < values.median()
        assert (values[flags] < lower).all()

    def test_per_batch_thresholds(self):
        from scworkflow.qc import is_outlier

        rng = np.random.default_rng(2)
        a = rng.normal(100, 5, size=200)
        b = rng.normal(1000, 50, size=200)
        values = pd.Series(np.concatenate([a, b]))
        batch = ["a"] * 200 + ["b"] * 200
        pooled = is_outlier(values, nmads=3, type="lower")
        per_batch = is_outlier(values, nmads=3, type="lower", batch=batch)
        assert set(per_batch.attrs["thresholds"]) == {"a", "b"}
        assert per_batch.sum() < 10
        assert pooled.attrs["thresholds"]["all"][0] < per_batch.attrs["thresholds"]["b"][0]

    def test_zero_mad_flags_any_departure(self):
        from scworkflow.qc import is_outlier

        values = pd.Series([5.0] * 20 + [5.1, 4.9])
        flags = is_outlier(values, nmads=3)
        assert flags.tolist() == [False] * 20 + [True, True]

    def test_invalid_type(self):
        from scworkflow.qc import is_outlier

        with pytest.raises(ValueError, match="type"):
            is_outlier([1, 2, 3], type="upper")


# ──────────────────────────────────────────────────────────────────────
# Metrics and filtering
# ──────────────────────────────────────────────────────────────────────


class TestCellQC:
    def test_compute_qc_metrics(self, raw_adata):
        from scworkflow.qc import compute_qc_metrics

        compute_qc_metrics(raw_adata)
        assert raw_adata.var["mt"].sum() == 13
        assert raw_adata.var["ribo"].sum() == 10
        for col in ("total_counts", "n_genes_by_counts", "pct_counts_mt", "pct_counts_ribo"):
            assert col in raw_adata.obs.columns
        low_q = raw_adata.obs["low_quality"].to_numpy()
        assert (
            raw_adata.obs["pct_counts_mt"][low_q].median()
            > raw_adata.obs["pct_counts_mt"][~low_q].median()
        )

    def test_no_mito_genes_warns_but_runs(self, raw_adata):
        from scworkflow.qc import compute_qc_metrics

        compute_qc_metrics(raw_adata, mito_prefix="mt-zz")
        assert (raw_adata.obs["pct_counts_mt"] == 0).all()

    def test_flag_outliers_catches_low_quality(self, raw_adata):
        from scworkflow.qc import compute_qc_metrics, flag_outliers

        compute_qc_metrics(raw_adata)
        reasons = flag_outliers(raw_adata, nmads=3, batch_key="batch")
        assert list(reasons.columns) == ["low_lib_size", "low_n_features", "high_mito", "below_min_genes"]
        truth = raw_adata.obs["low_quality"].to_numpy()
        flagged = raw_adata.obs["qc_outlier"].to_numpy()
        assert flagged[truth].mean() > 0.9
        assert flagged[~truth].mean() < 0.05

    def test_min_genes_floor(self, raw_adata):
        from scworkflow.qc import compute_qc_metrics, flag_outliers

        compute_qc_metrics(raw_adata)
        reasons = flag_outliers(raw_adata, min_genes=10**6)
        assert reasons["below_min_genes"].all()

    def test_barcode_ranks(self, raw_adata):
        from scworkflow.qc import barcode_ranks

        table, thresholds = barcode_ranks(raw_adata)
        assert len(table) == raw_adata.n_obs
        assert table["total"].is_monotonic_decreasing
        assert table["total"].min() <= thresholds["knee"] <= table["total"].max()
        assert np.isfinite(thresholds["inflection"])

    def test_run_cell_qc(self, raw_adata):
        from scworkflow.qc import run_cell_qc

        cfg = ScWorkflowConfig(detect_doublets=False)
        filtered, report = run_cell_qc(raw_adata, cfg=cfg)
        assert report.n_cells_before == raw_adata.n_obs
        assert report.n_cells_after == filtered.n_obs < raw_adata.n_obs
        assert 80 < report.cells_retained_pct < 100
        assert filtered.obs["low_quality"].mean() < 0.01
        assert "counts" in filtered.layers
        assert "Cells:" in report.summary()

    def test_filter_cells_and_genes(self, raw_adata):
        from scworkflow.qc import filter_cells_and_genes

        raw_adata.obs["qc_outlier"] = raw_adata.obs["low_quality"].to_numpy()
        raw_adata.obs["predicted_doublet"] = False
        raw_adata.obs.iloc[0, raw_adata.obs.columns.get_loc("predicted_doublet")] = True
        kept = filter_cells_and_genes(raw_adata, cfg=ScWorkflowConfig(qc_min_cells_per_gene=1))
        expected = (~raw_adata.obs["low_quality"]).sum() - int(not raw_adata.obs["low_quality"].iloc[0])
        assert kept.n_obs == expected
        assert (np.asarray((kept.X > 0).sum(axis=0)).ravel() >= 1).all()

        everything = filter_cells_and_genes(raw_adata, cfg=ScWorkflowConfig(remove_doublets=False))
        assert everything.n_obs == (~raw_adata.obs["low_quality"]).sum()

        raw_adata.obs["qc_outlier"] = True
        with pytest.raises(ValueError, match="Every cell"):
            filter_cells_and_genes(raw_adata)

    def test_run_cell_qc_empty(self, raw_adata):
        from scworkflow.qc import run_cell_qc

        with pytest.raises(ValueError, match="no cells"):
            run_cell_qc(raw_adata[:0].copy(), cfg=ScWorkflowConfig(detect_doublets=False))

    def test_qc_summary_table(self, raw_adata):
        from scworkflow.qc import compute_qc_metrics, flag_outliers, qc_summary_table

        compute_qc_metrics(raw_adata)
        flag_outliers(raw_adata)
        table = qc_summary_table(raw_adata, "sample")
        assert len(table) == 6
        assert {"median_total_counts", "median_pct_mt", "fraction_flagged"} <= set(table.columns)

    def test_detect_doublets(self, raw_adata):
        from scworkflow.qc import detect_doublets

        detect_doublets(raw_adata, batch_key="sample", seed=0)
        assert raw_adata.obs["predicted_doublet"].dtype == bool
        assert (raw_adata.obs["doublet_score"] >= 0).all()


# ──────────────────────────────────────────────────────────────────────
# Read-level tools (require fastqc / cellranger)
# ──────────────────────────────────────────────────────────────────────


class TestCount:
    def test_parse_metrics_summary(self, tmp_path):
        from scworkflow.count import parse_metrics_summary

        csv = tmp_path / "metrics_summary.csv"
        csv.write_text(
            '"Estimated Number of Cells","Mean Reads per Cell","Median Genes per Cell",'
            '"Number of Reads","Valid Barcodes","Sequencing Saturation",'
            '"Reads Mapped Confidently to Transcriptome","Fraction Reads in Cells",'
            '"Total Genes Detected","Median UMI Counts per Cell"\n'
            '"3,214","41,235","1,502","132,531,000","97.8%","72.1%","85.3%","91.0%","22,004","4,321"\n'
        )
        report = parse_metrics_summary(csv)
        assert report.estimated_cells == 3214
        assert report.median_genes_per_cell == 1502
        assert report.sequencing_saturation == pytest.approx(0.721)
        assert report.reads_mapped_to_genome == 0.0
        assert "3,214" in report.summary()

    def test_cellranger_skips_existing_outputs(self, tmp_path):
        from scworkflow.count import run_cellranger_count

        outs = tmp_path / "s1" / "outs"
        (outs / "filtered_feature_bc_matrix").mkdir(parents=True)
        (outs / "metrics_summary.csv").write_text('"Estimated Number of Cells"\n"100"\n')
        matrix_dir, report = run_cellranger_count(
            "s1", tmp_path, tmp_path, tmp_path, cfg=ScWorkflowConfig(output_dir=tmp_path)
        )
        assert matrix_dir == outs / "filtered_feature_bc_matrix"
        assert report.estimated_cells == 100

    def test_fastqc_needs_files(self, tmp_path):
        from scworkflow.count import run_fastqc

        with pytest.raises(ValueError):
            run_fastqc([], tmp_path)

    @pytest.mark.skipif(find_tools().get("fastqc") is None, reason="fastqc not installed")
    def test_run_fastqc(self, tmp_path):
        import gzip

        from scworkflow.count import run_fastqc

        fq = tmp_path / "toy_R1.fastq.gz"
        with gzip.open(fq, "wt") as fh:
            for i in range(200):
                fh.write(f"@r{i}\n{'ACGT' * 25}\n+\n{'I' * 100}\n")
        reports = run_fastqc([fq], tmp_path / "fastqc", cfg=ScWorkflowConfig(threads=1))
        assert reports[0].exists()
