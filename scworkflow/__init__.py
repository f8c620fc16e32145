"""
scworkflow: the single-cell RNA-seq analysis course as a reproducible
Python workflow.

Pipeline: 10x matrices → Cell QC → Normalise → HVGs → PCA/t-SNE/UMAP
→ Batch correction → Clustering → Markers → Pseudo-bulk DE → Differential
abundance
"""

__version__ = "0.1.0"
__author__ = "scworkflow Team"
