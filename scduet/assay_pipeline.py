"""
assay_pipeline.py -- Pipeline over the genes × cells assay record.

The same walkthrough as :mod:`scduet.scrna_pipeline`, run on a
:class:`~scduet.records.CellAssaySet` with the numerics delegated to
scikit-learn, umap-learn, python-igraph and scipy:

    1. QC metrics            (nCount_RNA, nFeature_RNA, percent_mt)
    2. Cell & gene filtering (same predicates as the AnnData path)
    3. Normalization         log1p(count / total × scale_factor)
    4. Variable features     binned dispersion z-scores
    5. Scaling               StandardScaler, clipped
    6. PCA                   sklearn PCA, fixed seed
    7. Neighbour graph       kNN + shared-nearest-neighbour Jaccard weights
    8. Louvain clustering    igraph multilevel with resolution
    9. UMAP                  umap-learn, fixed seed
   10. Marker genes          one-vs-rest Wilcoxon rank-sum

plus the trajectory stages (principal graph over cluster centroids,
geodesic pseudotime from root cells).

Each stage takes the record first, fills its slots and returns it;
filtering returns a new, subset record.
"""

from __future__ import annotations

import logging
import random
import warnings
from typing import Optional, Sequence

import igraph as ig
import numpy as np
import pandas as pd
import umap
from scipy import sparse, stats
from scipy.linalg import LinAlgError
from scipy.sparse import csgraph
from scipy.spatial.distance import cdist
from sklearn.decomposition import PCA
from sklearn.neighbors import NearestNeighbors
from sklearn.preprocessing import StandardScaler, normalize
from sklearn.utils.sparsefuncs import mean_variance_axis

from scduet.config import ASSAY_CONFIG, SCRNA_CONFIG
from scduet.errors import is_lapack_condition_error
from scduet.filtering import filtering_stats, min_count_masks, require_nonempty
from scduet.protocols import ProgressCallback
from scduet.records import CellAssaySet, Reduction, stage, verify_stage_order

logger = logging.getLogger(__name__)


def _section(params: Optional[dict], name: str, config: dict = ASSAY_CONFIG) -> dict:
    """Config section *name* overridden by ``params[name]``."""
    merged = dict(config[name])
    if params and name in params:
        merged.update(params[name])
    return merged


# ══════════════════════════════════════════════════════════════════════
# 1. QC Metrics
# ══════════════════════════════════════════════════════════════════════

@stage(
    reads=("assay:counts",),
    writes=("meta_data:nCount_RNA", "meta_data:nFeature_RNA", "meta_data:percent_mt"),
)
def calculate_qc(record: CellAssaySet, mt_prefix: Sequence[str] = ("MT-",)) -> CellAssaySet:
    """Per-cell total counts, detected features and mitochondrial percentage."""
    assay = record.assay()
    counts = assay.counts

    n_count = np.asarray(counts.sum(axis=0)).ravel()
    n_feature = np.asarray((counts > 0).sum(axis=0)).ravel()

    is_mt = assay.feature_names.str.upper().str.startswith(tuple(mt_prefix))
    mt_count = np.asarray(counts[np.asarray(is_mt)].sum(axis=0)).ravel()
    with np.errstate(divide="ignore", invalid="ignore"):
        percent_mt = np.where(n_count > 0, mt_count / n_count * 100.0, 0.0)

    record.meta_data["nCount_RNA"] = n_count
    record.meta_data["nFeature_RNA"] = n_feature.astype(int)
    record.meta_data["percent_mt"] = percent_mt
    logger.info("QC: %d mitochondrial features flagged", int(is_mt.sum()))
    return record


# ══════════════════════════════════════════════════════════════════════
# 2. Cell & Gene Filtering
# ══════════════════════════════════════════════════════════════════════

@stage(
    reads=("meta_data:nCount_RNA", "meta_data:nFeature_RNA"),
    writes=("misc:filtering_stats",),
)
def filter_assay_set(
    record: CellAssaySet,
    min_genes: Optional[int] = 200,
    min_cells: Optional[int] = 3,
    max_genes: Optional[int] = 2500,
    max_pct_mt: Optional[float] = 5.0,
    min_counts: Optional[int] = None,
    max_counts: Optional[int] = None,
) -> CellAssaySet:
    """
    Subset the record with the same predicates as the AnnData path.

    Caps (``nFeature_RNA < max_genes``, ``percent_mt < max_pct_mt``,
    count bounds) first, then the ``min_cells`` / ``min_genes`` fixed
    point on the active assay's counts.

    Raises
    ------
    EmptyFilterResultError
        If no cell or no gene survives.
    """
    n_before_cells, n_before_genes = record.n_cells, record.n_features
    criteria = {
        "min_genes": min_genes, "min_cells": min_cells, "max_genes": max_genes,
        "max_pct_mt": max_pct_mt, "min_counts": min_counts, "max_counts": max_counts,
    }
    meta = record.meta_data

    mask = np.ones(record.n_cells, dtype=bool)
    if max_genes is not None:
        mask &= (meta["nFeature_RNA"] < max_genes).to_numpy()
    if min_counts is not None:
        mask &= (meta["nCount_RNA"] >= min_counts).to_numpy()
    if max_counts is not None:
        mask &= (meta["nCount_RNA"] <= max_counts).to_numpy()
    if max_pct_mt is not None and "percent_mt" in meta.columns:
        mask &= (meta["percent_mt"] < max_pct_mt).to_numpy()
    require_nonempty(mask, "cells", criteria)
    record = record.subset(cells=mask)

    # min_count_masks expects cells × genes
    cells, genes = min_count_masks(
        record.assay().counts.T.tocsr(), min_cells=min_cells, min_genes=min_genes,
    )
    record = record.subset(cells=cells, features=genes)

    record.misc["filtering_stats"] = filtering_stats(
        n_before_cells, record.n_cells, n_before_genes, record.n_features,
    )
    logger.info("Filtering: %d → %d cells, %d → %d genes",
                n_before_cells, record.n_cells, n_before_genes, record.n_features)
    return record


# ══════════════════════════════════════════════════════════════════════
# 3. Normalization
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("assay:counts",), writes=("assay:data",))
def normalize_assay(record: CellAssaySet, scale_factor: float = 1e4) -> CellAssaySet:
    """
    Log-normalize: each cell's counts are divided by its total,
    multiplied by *scale_factor* and passed through ``log1p``.
    """
    assay = record.assay()
    # Columns are cells: L1 normalisation along axis 0 divides by cell totals.
    data = normalize(assay.counts.astype(np.float64), norm="l1", axis=0) * scale_factor
    assay.data = sparse.csc_matrix(data.log1p())
    return record


# ══════════════════════════════════════════════════════════════════════
# 4. Variable Features
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("assay:data",), writes=("assay:variable_features",))
def find_variable_features(
    record: CellAssaySet,
    n_features: int = 2000,
    n_bins: int = 20,
) -> CellAssaySet:
    """
    Rank genes by dispersion z-score within expression-mean bins.

    Mean and dispersion (variance / mean) are computed on the
    non-logged normalized values; genes are binned on log mean and the
    log dispersion is z-scored inside each bin.  The top *n_features*
    become ``assay.variable_features`` (highest score first).
    """
    assay = record.assay()
    expm = assay.data.copy()
    expm.data = np.expm1(expm.data)
    mean, var = mean_variance_axis(expm.tocsr(), axis=1)

    with np.errstate(divide="ignore", invalid="ignore"):
        dispersion = np.log(var / mean)
    dispersion[~np.isfinite(dispersion)] = np.nan
    log_mean = np.log1p(mean)

    table = pd.DataFrame(
        {"mean": log_mean, "dispersion": dispersion},
        index=assay.feature_names,
    )
    table["bin"] = pd.cut(table["mean"], bins=n_bins)
    grouped = table.groupby("bin", observed=True)["dispersion"]
    bin_mean = grouped.transform("mean")
    bin_std = grouped.transform("std")
    scaled = (table["dispersion"] - bin_mean) / bin_std
    # Single-gene bins have no spread.
    table["dispersion_scaled"] = scaled.replace([np.inf, -np.inf], np.nan).fillna(0.0)
    table.loc[table["dispersion"].isna(), "dispersion_scaled"] = -np.inf

    n_features = min(n_features, assay.n_features)
    ranked = table["dispersion_scaled"].sort_values(ascending=False, kind="mergesort")
    top = list(ranked.index[:n_features])

    assay.meta_features["vf_mean"] = table["mean"].to_numpy()
    assay.meta_features["vf_dispersion"] = table["dispersion"].to_numpy()
    assay.meta_features["vf_dispersion_scaled"] = table["dispersion_scaled"].to_numpy()
    assay.meta_features["variable"] = assay.feature_names.isin(top)
    assay.variable_features = top

    record.misc["variable_feature_stats"] = {
        "n_variable": len(top),
        "n_total": assay.n_features,
    }
    return record


# ══════════════════════════════════════════════════════════════════════
# 5. Scaling
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("assay:data", "assay:variable_features"), writes=("assay:scale_data",))
def scale_assay(
    record: CellAssaySet,
    features: Optional[Sequence[str]] = None,
    max_value: Optional[float] = 10.0,
) -> CellAssaySet:
    """
    Center and scale *features* (default: the variable features) per gene,
    clipping at ±max_value.
    """
    assay = record.assay()
    features = list(assay.variable_features if features is None else features)
    rows = assay.feature_names.get_indexer(features)
    if (rows < 0).any():
        missing = [f for f, r in zip(features, rows) if r < 0]
        raise ValueError(f"Features not in assay: {missing[:10]}")

    X = assay.data[rows].T.toarray()
    scaled = StandardScaler().fit_transform(X)
    if max_value is not None:
        np.clip(scaled, -max_value, max_value, out=scaled)

    assay.scale_data = scaled.T
    assay.scaled_features = features
    return record


# ══════════════════════════════════════════════════════════════════════
# 6. PCA
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("assay:scale_data",), writes=("reductions:pca",))
def run_assay_pca(
    record: CellAssaySet,
    n_components: int = 50,
    random_state: int = 42,
) -> CellAssaySet:
    """Linear reduction of the scaled data (deterministic for a fixed seed)."""
    assay = record.assay()
    X = assay.scale_data.T
    n_components = min(n_components, X.shape[0] - 1, X.shape[1] - 1)

    try:
        pca = PCA(n_components=n_components, svd_solver="arpack", random_state=random_state)
        embeddings = pca.fit_transform(X)
    except (LinAlgError, ValueError) as exc:
        if is_lapack_condition_error(exc):
            warnings.warn("PCA arpack hit LAPACK condition error; retrying with full SVD.")
            pca = PCA(n_components=n_components, svd_solver="full", random_state=random_state)
            embeddings = pca.fit_transform(X)
        else:
            raise

    record.reductions["pca"] = Reduction(
        key="pca",
        embeddings=embeddings,
        loadings=pca.components_.T,
        features=list(assay.scaled_features),
        stdev=np.sqrt(pca.explained_variance_),
        variance_ratio=pca.explained_variance_ratio_,
    )
    return record


# ══════════════════════════════════════════════════════════════════════
# 7. Neighbour Graph
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("reductions:pca",), writes=("graphs:knn", "graphs:snn"))
def find_neighbors(
    record: CellAssaySet,
    n_neighbors: int = 20,
    dims: int = 10,
    prune_snn: float = 1 / 15,
) -> CellAssaySet:
    """
    k-nearest-neighbour graph over the first *dims* PCs, and the
    shared-nearest-neighbour graph weighted by Jaccard overlap.

    Each cell counts as its own neighbour.  SNN weights below
    *prune_snn* are dropped.
    """
    emb = record.reductions["pca"].embeddings[:, :dims]
    n = emb.shape[0]
    k = min(n_neighbors, n)

    nn = NearestNeighbors(n_neighbors=k, metric="euclidean").fit(emb)
    _, idx = nn.kneighbors(emb)

    rows = np.repeat(np.arange(n), k)
    knn = sparse.csr_matrix((np.ones(n * k), (rows, idx.ravel())), shape=(n, n))

    shared = (knn @ knn.T).tocoo()
    jaccard = shared.data / (2 * k - shared.data)
    keep = (jaccard >= prune_snn) & (shared.row != shared.col)
    snn = sparse.csr_matrix(
        (jaccard[keep], (shared.row[keep], shared.col[keep])), shape=(n, n),
    )

    record.graphs["knn"] = knn
    record.graphs["snn"] = snn
    return record


# ══════════════════════════════════════════════════════════════════════
# 8. Louvain Clustering
# ══════════════════════════════════════════════════════════════════════

def _relabel_by_size(membership: np.ndarray) -> np.ndarray:
    """Rename communities 0, 1, … from largest to smallest."""
    ids, first, sizes = np.unique(membership, return_index=True, return_counts=True)
    order = sorted(range(len(ids)), key=lambda i: (-sizes[i], first[i]))
    mapping = {ids[i]: rank for rank, i in enumerate(order)}
    return np.array([mapping[m] for m in membership])


@stage(reads=("graphs:snn",), writes=("meta_data:louvain", "misc:louvain_stats"))
def find_clusters(
    record: CellAssaySet,
    resolution: float = 0.5,
    random_state: int = 0,
) -> CellAssaySet:
    """
    Louvain community detection on the SNN graph.

    Higher *resolution* gives more, smaller clusters.  Labels are
    strings ``"0"``, ``"1"`` … numbered by decreasing cluster size.
    """
    snn = sparse.triu(record.graphs["snn"], k=1).tocoo()
    graph = ig.Graph(n=record.n_cells, edges=list(zip(snn.row.tolist(), snn.col.tolist())))
    graph.es["weight"] = snn.data.tolist()

    ig.set_random_number_generator(random.Random(random_state))
    try:
        partition = graph.community_multilevel(weights="weight", resolution=resolution)
    finally:
        ig.set_random_number_generator(random)

    labels = _relabel_by_size(np.asarray(partition.membership))
    categories = [str(i) for i in range(labels.max() + 1)]
    record.meta_data["louvain"] = pd.Categorical(
        [str(x) for x in labels], categories=categories,
    )
    record.misc["louvain_stats"] = {
        "n_clusters": len(categories),
        "resolution": resolution,
        "modularity": float(partition.modularity),
    }
    logger.info("Louvain: %d clusters at resolution %.2f", len(categories), resolution)
    return record


# ══════════════════════════════════════════════════════════════════════
# 9. UMAP
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("reductions:pca",), writes=("reductions:umap",))
def run_assay_umap(
    record: CellAssaySet,
    dims: int = 10,
    n_neighbors: int = 30,
    min_dist: float = 0.3,
    metric: str = "cosine",
    random_state: int = 42,
) -> CellAssaySet:
    """2-D UMAP of the first *dims* PCs (seeded, hence reproducible)."""
    emb = record.reductions["pca"].embeddings[:, :dims]
    reducer = umap.UMAP(
        n_components=2,
        n_neighbors=min(n_neighbors, record.n_cells - 1),
        min_dist=min_dist,
        metric=metric,
        random_state=random_state,
    )
    record.reductions["umap"] = Reduction(key="umap", embeddings=reducer.fit_transform(emb))
    return record


# ══════════════════════════════════════════════════════════════════════
# 10. Marker Genes
# ══════════════════════════════════════════════════════════════════════

MARKER_COLUMNS = [
    "names", "scores", "logfoldchanges", "pvals", "pvals_adj", "pct_1", "pct_2", "cluster",
]


def _test_one_group(
    data: sparse.csr_matrix,
    names: pd.Index,
    in_group: np.ndarray,
    min_pct: float,
    logfc_threshold: float,
    only_pos: bool,
) -> pd.DataFrame:
    """Wilcoxon rank-sum of one group against all other cells."""
    x_in = data[:, in_group]
    x_out = data[:, ~in_group]
    n1, n2 = x_in.shape[1], x_out.shape[1]

    pct_1 = np.asarray((x_in > 0).sum(axis=1)).ravel() / n1
    pct_2 = np.asarray((x_out > 0).sum(axis=1)).ravel() / n2

    mean_in = np.asarray(x_in.expm1().mean(axis=1)).ravel()
    mean_out = np.asarray(x_out.expm1().mean(axis=1)).ravel()
    logfc = np.log2(mean_in + 1) - np.log2(mean_out + 1)

    keep = np.maximum(pct_1, pct_2) >= min_pct
    keep &= (logfc >= logfc_threshold) if only_pos else (np.abs(logfc) >= logfc_threshold)
    rows = np.flatnonzero(keep)
    if rows.size == 0:
        return pd.DataFrame(columns=MARKER_COLUMNS)

    a = x_in[rows].toarray()
    b = x_out[rows].toarray()
    res = stats.mannwhitneyu(a, b, alternative="two-sided", axis=1)
    pvals = np.nan_to_num(res.pvalue, nan=1.0)
    mu = n1 * n2 / 2.0
    sigma = np.sqrt(n1 * n2 * (n1 + n2 + 1) / 12.0)

    return pd.DataFrame({
        "names": names[rows],
        "scores": (res.statistic - mu) / sigma,
        "logfoldchanges": logfc[rows],
        "pvals": pvals,
        # Bonferroni over every feature in the assay
        "pvals_adj": np.minimum(pvals * data.shape[0], 1.0),
        "pct_1": pct_1[rows],
        "pct_2": pct_2[rows],
    })


@stage(reads=("assay:data", "meta_data:louvain"), writes=("misc:markers",))
def find_all_markers(
    record: CellAssaySet,
    groupby: str = "louvain",
    min_pct: float = 0.25,
    logfc_threshold: float = 0.25,
    only_pos: bool = True,
) -> CellAssaySet:
    """
    One-vs-rest markers for every group of ``meta_data[groupby]``.

    Genes are tested only if detected in at least *min_pct* of either
    side and their average log2 fold change (pseudocount 1 on the
    normalized scale) passes *logfc_threshold*.  Groups with fewer than
    3 cells are skipped with a warning.

    The table (columns ``MARKER_COLUMNS``, sorted by p-value within each
    cluster) is stored in ``record.misc["markers"]``.
    """
    if groupby not in record.meta_data.columns:
        raise ValueError(
            f"Group column '{groupby}' not found. Available: {list(record.meta_data.columns)}"
        )
    groups = pd.Categorical(record.meta_data[groupby].astype(str))
    if len(groups.categories) < 2:
        raise ValueError(f"'{groupby}' needs at least two groups to find markers.")

    assay = record.assay()
    data = assay.data.tocsr()
    tables = []
    for group in groups.categories:
        in_group = np.asarray(groups == group)
        if in_group.sum() < 3:
            logger.warning("Skipping group %s: fewer than 3 cells", group)
            continue
        df = _test_one_group(
            data, assay.feature_names, in_group, min_pct, logfc_threshold, only_pos,
        )
        df["cluster"] = group
        df = df.sort_values(["pvals", "logfoldchanges"], ascending=[True, False])
        tables.append(df)

    markers = (
        pd.concat(tables, ignore_index=True)[MARKER_COLUMNS]
        if tables else pd.DataFrame(columns=MARKER_COLUMNS)
    )
    record.misc["markers"] = markers
    return record


def get_assay_markers_df(
    record: CellAssaySet,
    group: Optional[str] = None,
    n_genes: int = 25,
) -> pd.DataFrame:
    """Top *n_genes* markers per cluster (or of one *group*)."""
    markers = record.misc["markers"]
    if group is not None:
        return markers[markers["cluster"] == str(group)].head(n_genes).reset_index(drop=True)
    return markers.groupby("cluster", sort=False).head(n_genes).reset_index(drop=True)


# ══════════════════════════════════════════════════════════════════════
# 11. Trajectory
# ══════════════════════════════════════════════════════════════════════

@stage(
    reads=("reductions:umap", "meta_data:louvain"),
    writes=("misc:principal_graph",),
)
def learn_trajectory(
    record: CellAssaySet,
    reduction: str = "umap",
    groupby: str = "louvain",
) -> CellAssaySet:
    """
    Principal graph over the embedding: the minimum spanning tree of the
    cluster centroids in ``reductions[reduction]``.
    """
    emb = record.reductions[reduction].embeddings
    groups = record.meta_data[groupby].astype(str).to_numpy()
    nodes = sorted(set(groups), key=lambda g: (len(g), g))
    centroids = np.vstack([emb[groups == g].mean(axis=0) for g in nodes])

    dist = cdist(centroids, centroids)
    # csgraph treats exact zeros as missing edges
    off_diag = ~np.eye(len(nodes), dtype=bool)
    dist[off_diag] = np.maximum(dist[off_diag], 1e-12)
    mst = csgraph.minimum_spanning_tree(dist).tocoo()

    record.misc["principal_graph"] = {
        "reduction": reduction,
        "groupby": groupby,
        "nodes": nodes,
        "centroids": centroids,
        "edges": np.column_stack([mst.row, mst.col]),
        "weights": mst.data,
    }
    return record


def _project_onto_tree(points: np.ndarray, centroids: np.ndarray, edges: np.ndarray):
    """Nearest tree segment of every point: (edge index, position t in [0, 1])."""
    if len(edges) == 0:
        return np.zeros(len(points), dtype=int), np.zeros(len(points))

    a = centroids[edges[:, 0]]
    b = centroids[edges[:, 1]]
    ab = b - a
    length2 = np.maximum((ab ** 2).sum(axis=1), 1e-24)

    # points × edges
    t = ((points[:, None, :] - a[None, :, :]) * ab[None, :, :]).sum(axis=2) / length2
    t = np.clip(t, 0.0, 1.0)
    proj = a[None, :, :] + t[:, :, None] * ab[None, :, :]
    d2 = ((points[:, None, :] - proj) ** 2).sum(axis=2)

    best = d2.argmin(axis=1)
    return best, t[np.arange(len(points)), best]


@stage(reads=("misc:principal_graph",), writes=("meta_data:pseudotime",))
def order_cells(record: CellAssaySet, root_cells: Sequence[str]) -> CellAssaySet:
    """
    Pseudotime = geodesic distance along the principal graph from the
    nearest root.

    Each root cell designates the principal-graph node closest to it;
    every cell is projected onto its nearest tree segment and measured
    from the closest root node.

    Raises
    ------
    ValueError
        If *root_cells* is empty or names an unknown barcode.
    """
    roots = list(root_cells)
    if not roots:
        raise ValueError("At least one root cell is required.")
    positions = record.cell_names.get_indexer(roots)
    if (positions < 0).any():
        unknown = [r for r, p in zip(roots, positions) if p < 0]
        raise ValueError(f"Unknown root cell(s): {unknown[:5]}")

    pg = record.misc["principal_graph"]
    emb = record.reductions[pg["reduction"]].embeddings
    centroids, edges, weights = pg["centroids"], pg["edges"], pg["weights"]
    n_nodes = len(pg["nodes"])

    root_nodes = sorted(set(cdist(emb[positions], centroids).argmin(axis=1).tolist()))

    tree = sparse.coo_matrix(
        (weights, (edges[:, 0], edges[:, 1])), shape=(n_nodes, n_nodes),
    ) if len(edges) else sparse.coo_matrix((n_nodes, n_nodes))
    node_dist = csgraph.shortest_path(tree.tocsr(), directed=False, indices=root_nodes)
    node_dist = np.atleast_2d(node_dist).min(axis=0)

    if len(edges) == 0:
        pseudotime = np.zeros(record.n_cells)
    else:
        edge, t = _project_onto_tree(emb, centroids, edges)
        u, v = edges[edge, 0], edges[edge, 1]
        length = weights[edge]
        pseudotime = np.minimum(node_dist[u] + t * length, node_dist[v] + (1 - t) * length)

    record.meta_data["pseudotime"] = pseudotime
    record.misc["pseudotime_stats"] = {
        "roots": roots,
        "root_nodes": [pg["nodes"][i] for i in root_nodes],
    }
    return record


# ══════════════════════════════════════════════════════════════════════
# Full Pipeline Orchestrator
# ══════════════════════════════════════════════════════════════════════

PIPELINE_STAGES = [
    calculate_qc,
    filter_assay_set,
    normalize_assay,
    find_variable_features,
    scale_assay,
    run_assay_pca,
    find_neighbors,
    find_clusters,
    run_assay_umap,
    find_all_markers,
]

PIPELINE_STEPS = [func.stage.name for func in PIPELINE_STAGES]


def run_assay_pipeline(
    record: CellAssaySet,
    params: Optional[dict] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> CellAssaySet:
    """
    Run the assay-record pipeline from raw counts to marker genes.

    Parameters
    ----------
    record : CellAssaySet
        Raw counts, genes × cells.
    params : dict, optional
        Per-section overrides of ``ASSAY_CONFIG`` (and of
        ``SCRNA_CONFIG["qc_defaults"]`` under the key ``"qc_defaults"``).
    progress_callback : callable, optional
        Called with (step_index, total_steps, step_name).
    """
    verify_stage_order([f.stage for f in PIPELINE_STAGES], initial={"assay:counts"})
    total = len(PIPELINE_STEPS)

    def _progress(i):
        if progress_callback:
            progress_callback(i, total, PIPELINE_STEPS[i])
        logger.info("[%d/%d] %s", i + 1, total, PIPELINE_STEPS[i])

    _progress(0)
    record = calculate_qc(record, mt_prefix=SCRNA_CONFIG["qc_gene_prefixes"]["mt"])

    _progress(1)
    record = filter_assay_set(record, **_section(params, "qc_defaults", SCRNA_CONFIG))

    _progress(2)
    record = normalize_assay(record, **_section(params, "normalization"))

    _progress(3)
    record = find_variable_features(record, **_section(params, "variable_features"))

    _progress(4)
    record = scale_assay(record, **_section(params, "scale"))

    _progress(5)
    record = run_assay_pca(record, **_section(params, "pca"))

    _progress(6)
    record = find_neighbors(record, **_section(params, "neighbors"))

    _progress(7)
    louvain = _section(params, "louvain")
    louvain.pop("key_added", None)
    record = find_clusters(record, **louvain)

    _progress(8)
    record = run_assay_umap(record, **_section(params, "umap"))

    _progress(9)
    record = find_all_markers(record, **_section(params, "markers"))

    return record
