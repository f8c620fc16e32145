"""
Graph-based clustering.

Cells are connected in a shared-nearest-neighbour (SNN) graph built on
the k-NN graph of the (batch-corrected) PCA embedding, and the graph is
partitioned with one of python-igraph's community detection algorithms:
Leiden, Louvain (multilevel) or Walktrap.
"""

from __future__ import annotations

import random
from typing import Optional, Sequence

import igraph as ig
import numpy as np
import pandas as pd
from anndata import AnnData
from scipy import sparse
from sklearn.metrics import silhouette_samples, silhouette_score

from scworkflow.reduce import compute_neighbors
from scworkflow.utils import get_logger, require_obs, require_obsm

METHODS = ("leiden", "louvain", "walktrap")
GRAPH_KINDS = ("snn", "connectivities")

SILHOUETTE_SAMPLE_SIZE = 5000


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------


def snn_from_knn(knn: sparse.spmatrix, *, prune: float = 1 / 15) -> sparse.csr_matrix:
    """
    Jaccard-weighted shared-nearest-neighbour graph from a k-NN matrix.

    Every cell counts as its own neighbour. The weight of an edge is
    ``|N(i) ∩ N(j)| / |N(i) ∪ N(j)|``; edges lighter than *prune* are
    dropped and self-loops removed.
    """
    n = knn.shape[0]
    member = (sparse.csr_matrix(knn) != 0).astype(np.float64)
    member = (member + sparse.identity(n, format="csr")).astype(bool).astype(np.float64)
    degree = np.asarray(member.sum(axis=1)).ravel()

    shared = (member @ member.T).tocoo()
    union = degree[shared.row] + degree[shared.col] - shared.data
    weights = shared.data / union

    keep = (weights >= prune) & (shared.row != shared.col)
    snn = sparse.csr_matrix(
        (weights[keep], (shared.row[keep], shared.col[keep])), shape=(n, n)
    )
    return snn


def build_graph(
    adata: AnnData,
    *,
    kind: str = "snn",
    use_rep: str = "X_pca",
    n_neighbors: int = 10,
    n_pcs: Optional[int] = None,
    seed: int = 0,
) -> str:
    """
    Build the clustering graph and return its ``obsp`` key.

    The k-NN graph is (re)computed when absent or built on another
    representation. ``snn`` stores the SNN graph in ``obsp["snn"]``;
    ``connectivities`` uses scanpy's UMAP-weighted graph directly.
    """
    if kind not in GRAPH_KINDS:
        raise ValueError(f"Unknown graph kind '{kind}'. Choose from: {list(GRAPH_KINDS)}")
    require_obsm(adata, use_rep)

    params = adata.uns.get("neighbors", {}).get("params", {})
    if "distances" not in adata.obsp or params.get("use_rep") != use_rep:
        compute_neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, use_rep=use_rep, seed=seed)

    if kind == "connectivities":
        return "connectivities"

    adata.obsp["snn"] = snn_from_knn(adata.obsp["distances"])
    get_logger().info(f"SNN graph: {adata.obsp['snn'].nnz // 2:,} edges on {adata.n_obs:,} cells")
    return "snn"


def _to_igraph(adjacency: sparse.spmatrix) -> ig.Graph:
    """Undirected weighted igraph from a (possibly asymmetric) adjacency matrix."""
    adj = sparse.csr_matrix(adjacency)
    adj = sparse.triu(adj.maximum(adj.T), k=1).tocoo()
    g = ig.Graph(
        n=adj.shape[0],
        edges=list(zip(adj.row.tolist(), adj.col.tolist())),
        directed=False,
    )
    g.es["weight"] = adj.data.tolist()
    return g


# ---------------------------------------------------------------------------
# Community detection
# ---------------------------------------------------------------------------


def _relabel_by_size(membership: Sequence[int]) -> pd.Categorical:
    """Renumber clusters '0', '1', ... from largest to smallest."""
    membership = np.asarray(membership)
    sizes = pd.Series(membership).value_counts(sort=True)
    order = {old: new for new, old in enumerate(sizes.index)}
    labels = [str(order[m]) for m in membership]
    categories = [str(i) for i in range(len(order))]
    return pd.Categorical(labels, categories=categories)


def cluster_graph(
    adata: AnnData,
    *,
    method: str = "leiden",
    resolution: float = 1.0,
    graph_key: str = "snn",
    key_added: Optional[str] = None,
    seed: int = 0,
) -> pd.Categorical:
    """
    Partition the graph in ``obsp[graph_key]`` and store labels in ``obs``.

    *resolution* is ignored by Walktrap, whose cut is the dendrogram level
    with maximal modularity.
    """
    log = get_logger()
    if method not in METHODS:
        raise ValueError(f"Unknown clustering method '{method}'. Choose from: {list(METHODS)}")
    if graph_key not in adata.obsp:
        raise KeyError(f"Graph '{graph_key}' not found in adata.obsp; run build_graph first")

    g = _to_igraph(adata.obsp[graph_key])
    random.seed(seed)  # igraph draws from Python's RNG
    if method == "leiden":
        part = g.community_leiden(
            objective_function="modularity",
            weights="weight",
            resolution=resolution,
            n_iterations=2,
        )
    elif method == "louvain":
        part = g.community_multilevel(weights="weight", resolution=resolution)
    else:
        part = g.community_walktrap(weights="weight", steps=4).as_clustering()

    labels = _relabel_by_size(part.membership)
    key = key_added or method
    adata.obs[key] = labels
    adata.uns[key] = {
        "params": {"method": method, "resolution": resolution, "graph": graph_key, "seed": seed}
    }
    log.info(f"{method.capitalize()} found {len(labels.categories)} clusters → obs['{key}']")
    return labels


# ---------------------------------------------------------------------------
# Cluster quality
# ---------------------------------------------------------------------------


def _embedding(adata: AnnData, use_rep: str, n_pcs: Optional[int]) -> np.ndarray:
    require_obsm(adata, use_rep)
    x = np.asarray(adata.obsm[use_rep])
    return x[:, :n_pcs] if n_pcs else x


def silhouette_by_cluster(
    adata: AnnData,
    key: str,
    *,
    use_rep: str = "X_pca",
    n_pcs: Optional[int] = None,
) -> pd.DataFrame:
    """Mean silhouette width and share of negative widths per cluster."""
    require_obs(adata, key)
    labels = adata.obs[key].astype(str).to_numpy()
    if len(np.unique(labels)) < 2:
        raise ValueError(f"Silhouette needs at least two clusters in obs['{key}']")

    widths = silhouette_samples(_embedding(adata, use_rep, n_pcs), labels)
    df = pd.DataFrame({"cluster": labels, "width": widths})
    out = df.groupby("cluster").agg(
        n_cells=("width", "size"),
        mean_width=("width", "mean"),
        fraction_negative=("width", lambda w: float((w < 0).mean())),
    )
    return out.reset_index()


def resolution_sweep(
    adata: AnnData,
    resolutions: Sequence[float],
    *,
    method: str = "leiden",
    graph_key: str = "snn",
    use_rep: str = "X_pca",
    n_pcs: Optional[int] = None,
    seed: int = 0,
    keep_labels: bool = False,
) -> pd.DataFrame:
    """
    Cluster at several resolutions and score each partition.

    Returns one row per resolution with the number of clusters and the mean
    silhouette width (NaN when fewer than two clusters). Labels are kept in
    ``obs[f"{method}_res{resolution}"]`` only with *keep_labels*.
    """
    x = _embedding(adata, use_rep, n_pcs)
    rng_state = np.random.RandomState(seed)
    rows = []
    for res in resolutions:
        key = f"{method}_res{res}"
        labels = cluster_graph(
            adata, method=method, resolution=res, graph_key=graph_key, key_added=key, seed=seed
        )
        n_clusters = len(labels.categories)
        score = float("nan")
        if 2 <= n_clusters < adata.n_obs:
            sample_size = SILHOUETTE_SAMPLE_SIZE if adata.n_obs > SILHOUETTE_SAMPLE_SIZE else None
            score = float(
                silhouette_score(
                    x, np.asarray(labels).astype(str), sample_size=sample_size, random_state=rng_state
                )
            )
        rows.append({"resolution": res, "n_clusters": n_clusters, "silhouette": score})
        if not keep_labels:
            del adata.obs[key]
            adata.uns.pop(key, None)
    return pd.DataFrame(rows)
