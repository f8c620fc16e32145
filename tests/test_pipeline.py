"""End-to-end tests for the pipeline orchestrator."""

from __future__ import annotations

import pandas as pd
import pytest

from scworkflow.config import ScWorkflowConfig


def _fast_config(tmp_path, **fields) -> ScWorkflowConfig:
    defaults = dict(
        output_dir=tmp_path / "out",
        threads=1,
        detect_doublets=False,
        batch_method="combat",
        n_top_genes=200,
        n_pcs=20,
        resolution=0.5,
        resolution_sweep=(0.5,),
        de_min_cells=5,
        dpi=50,
    )
    defaults.update(fields)
    return ScWorkflowConfig(**defaults)


class TestPipeline:
    def test_full_run_from_sample_sheet(self, sample_sheet, tmp_path):
        from scworkflow.pipeline import run_pipeline
        from tests.generate_test_data import marker_sets

        cfg = _fast_config(tmp_path)
        result = run_pipeline(sample_sheet, cfg=cfg, marker_sets=marker_sets())

        out = cfg.output_dir
        assert result.h5ad_path == out / "scworkflow.h5ad"
        assert result.h5ad_path.exists()
        assert result.qc_report.n_cells_after < result.qc_report.n_cells_before
        assert result.embedding_key == "X_pca_combat"
        assert result.label_key == "cell_type"
        for rel in (
            "02_qc/qc_by_sample.csv",
            "03_normalize/hvgs.csv",
            "05_cluster/resolution_sweep.csv",
            "05_cluster/silhouette.csv",
            "06_markers/markers.csv",
            "06_markers/annotation_scores.csv",
            "07_de/pseudobulk_de.csv",
            "08_da/cluster_da.csv",
            "08_da/neighbourhood_da.csv",
            "09_tables/pipeline_summary.csv",
            "09_tables/output_manifest.csv",
        ):
            assert (out / rel).exists(), rel
        assert (out / "02_qc" / "qc_violins.png").exists()
        assert (out / "04_reduce" / "umap_metadata.pdf").exists()
        assert any(p.name.startswith("volcano_") for p in result.plots)

        assert {"X_pca", "X_umap", "X_tsne", "nhoods"} <= set(result.adata.obsm)
        de_sig = result.de[result.de["padj"] < 0.05]
        assert de_sig["gene"].str.startswith("ISG").sum() >= 10
        mono = result.cluster_da.set_index("cell_type").loc["Mono"]
        assert mono["log2FoldChange"] > 0

        summary = pd.read_csv(out / "09_tables" / "pipeline_summary.csv")
        assert {"QC", "Features", "Reduce", "Cluster", "DE", "DA", "Pipeline"} <= set(summary["Step"])
        manifest = pd.read_csv(out / "09_tables" / "output_manifest.csv")
        assert "scworkflow.h5ad" in set(manifest["File"])

    def test_run_from_anndata_without_plots(self, raw_adata, tmp_path):
        from scworkflow.pipeline import run_pipeline

        cfg = _fast_config(tmp_path, batch_method="none", cluster_method="louvain")
        result = run_pipeline(
            raw_adata, cfg=cfg, skip=("markers", "de", "da"), make_plots=False
        )
        assert result.plots == []
        assert result.de is None and result.nhood_da is None
        assert result.cluster_key == "louvain"
        assert result.embedding_key == "X_pca"
        assert "louvain" in result.adata.obs.columns
        assert not list(cfg.output_dir.rglob("*.png"))

    def test_skip_qc_keeps_all_cells(self, raw_adata, tmp_path):
        from scworkflow.pipeline import run_pipeline

        cfg = _fast_config(tmp_path, cluster_method="walktrap")
        result = run_pipeline(
            raw_adata, cfg=cfg, skip=("qc", "integrate", "markers", "de", "da"), make_plots=False
        )
        assert result.adata.n_obs == raw_adata.n_obs
        assert result.qc_report is None
        assert result.sweep is None

    def test_no_replicates_skips_comparisons(self, raw_adata, tmp_path):
        from scworkflow.pipeline import run_pipeline

        adata = raw_adata[raw_adata.obs["sample"].isin(["s1", "s4"]).to_numpy()].copy()
        cfg = _fast_config(tmp_path, batch_method="none")
        result = run_pipeline(adata, cfg=cfg, skip=("markers",), make_plots=False)
        assert result.de is None
        assert result.cluster_da is None

    def test_single_condition_skips_comparisons(self, raw_adata, tmp_path):
        from scworkflow.pipeline import run_pipeline

        adata = raw_adata[(raw_adata.obs["condition"] == "ctrl").to_numpy()].copy()
        cfg = _fast_config(tmp_path, batch_method="none")
        result = run_pipeline(adata, cfg=cfg, skip=("markers",), make_plots=False)
        assert result.de is None
        assert result.cluster_da is None
        assert result.h5ad_path.exists()
        assert (cfg.output_dir / "09_tables" / "output_manifest.csv").exists()

    def test_three_conditions_without_contrast_skip_comparisons(self, raw_adata, tmp_path):
        from scworkflow.pipeline import run_pipeline

        adata = raw_adata.copy()
        adata.obs["condition"] = adata.obs["sample"].map(
            {"s1": "a", "s2": "a", "s3": "b", "s4": "b", "s5": "c", "s6": "c"}
        ).astype(str)
        cfg = _fast_config(tmp_path, batch_method="none")
        result = run_pipeline(adata, cfg=cfg, skip=("markers",), make_plots=False)
        assert result.de is None
        assert result.h5ad_path.exists()

    def test_invalid_skip(self, raw_adata, tmp_path):
        from scworkflow.pipeline import run_pipeline

        with pytest.raises(ValueError, match="Cannot skip"):
            run_pipeline(raw_adata, cfg=_fast_config(tmp_path), skip=("normalize",))
