"""
scrna_pipeline.py -- scanpy pipeline over an AnnData (cells × genes).

Wraps scanpy functions into a step-by-step pipeline following the
standard scanpy PBMC3k workflow:

    1. QC annotation (mitochondrial, ribosomal, hemoglobin genes)
    2. Cell & gene filtering
    3. Normalization + log1p
    4. Highly variable gene selection
    5. Scaling
    6. PCA
    7. Neighborhood graph
    8. UMAP embedding
    9. Leiden clustering
   10. Marker gene identification

plus two stages run on demand: condition comparison and diffusion
pseudotime.

Every stage is declared with :func:`scduet.records.stage`; it operates
on the AnnData in-place where scanpy does and returns it (filtering and
scaling return a new subset).
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from scduet.config import SCRNA_CONFIG
from scduet.errors import is_lapack_condition_error
from scduet.filtering import filtering_stats, min_count_masks, require_nonempty
from scduet.protocols import ProgressCallback
from scduet.records import stage, verify_stage_order

logger = logging.getLogger(__name__)


def _section(params: Optional[dict], name: str) -> dict:
    """Config section *name* overridden by ``params[name]``."""
    merged = dict(SCRNA_CONFIG[name])
    if params and name in params:
        merged.update(params[name])
    return merged


# ══════════════════════════════════════════════════════════════════════
# 1. Quality Control Annotation
# ══════════════════════════════════════════════════════════════════════

@stage(
    reads=("X",),
    writes=("var:mt", "var:ribo", "var:hb", "obs:n_genes_by_counts",
            "obs:total_counts", "obs:pct_counts_mt"),
)
def annotate_qc(adata: ad.AnnData) -> ad.AnnData:
    """
    Annotate mitochondrial, ribosomal, and hemoglobin genes,
    then compute QC metrics.
    """
    prefixes = SCRNA_CONFIG["qc_gene_prefixes"]
    names = adata.var_names.str.upper()

    # Gene category flags
    adata.var["mt"] = names.str.startswith(prefixes["mt"])
    adata.var["ribo"] = names.str.startswith(prefixes["ribo"])
    adata.var["hb"] = names.str.contains(SCRNA_CONFIG["qc_hb_pattern"], regex=True)

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt", "ribo", "hb"],
        percent_top=None,
        inplace=True,
        log1p=True,
    )
    logger.info("QC: %d mitochondrial genes flagged", int(adata.var["mt"].sum()))
    return adata


# ══════════════════════════════════════════════════════════════════════
# 2. Cell & Gene Filtering
# ══════════════════════════════════════════════════════════════════════

@stage(
    reads=("obs:n_genes_by_counts", "obs:total_counts"),
    writes=("uns:filtering_stats",),
)
def filter_cells_and_genes(
    adata: ad.AnnData,
    min_genes: Optional[int] = 200,
    min_cells: Optional[int] = 3,
    max_genes: Optional[int] = 2500,
    max_pct_mt: Optional[float] = 5.0,
    min_counts: Optional[int] = None,
    max_counts: Optional[int] = None,
) -> ad.AnnData:
    """
    Filter cells by QC caps, then genes/cells by minimum counts.

    The caps (``n_genes_by_counts < max_genes``, ``pct_counts_mt <
    max_pct_mt``, ``min_counts <= total_counts <= max_counts``) are
    applied once, on the metrics computed by :func:`annotate_qc`.  The
    ``min_cells`` / ``min_genes`` lower bounds are then iterated to a
    fixed point, so the result satisfies both.  None disables a bound.

    Returns the filtered AnnData (subset, not in-place).

    Raises
    ------
    EmptyFilterResultError
        If no cell or no gene survives.
    """
    n_before_cells = adata.n_obs
    n_before_genes = adata.n_vars
    criteria = {
        "min_genes": min_genes, "min_cells": min_cells, "max_genes": max_genes,
        "max_pct_mt": max_pct_mt, "min_counts": min_counts, "max_counts": max_counts,
    }

    # Build a single boolean mask for all cap filters, then apply once.
    mask = np.ones(adata.n_obs, dtype=bool)
    if max_genes is not None:
        mask &= (adata.obs["n_genes_by_counts"] < max_genes).to_numpy()
    if min_counts is not None:
        mask &= (adata.obs["total_counts"] >= min_counts).to_numpy()
    if max_counts is not None:
        mask &= (adata.obs["total_counts"] <= max_counts).to_numpy()
    if max_pct_mt is not None and "pct_counts_mt" in adata.obs.columns:
        mask &= (adata.obs["pct_counts_mt"] < max_pct_mt).to_numpy()
    require_nonempty(mask, "cells", criteria)
    adata = adata[mask, :].copy()

    cells, genes = min_count_masks(adata.X, min_cells=min_cells, min_genes=min_genes)
    adata = adata[cells, genes].copy()

    adata.uns["filtering_stats"] = filtering_stats(
        n_before_cells, adata.n_obs, n_before_genes, adata.n_vars,
    )
    logger.info("Filtering: %d → %d cells, %d → %d genes",
                n_before_cells, adata.n_obs, n_before_genes, adata.n_vars)
    return adata


# ══════════════════════════════════════════════════════════════════════
# 3. Normalization
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("X",), writes=("layers:counts",))
def normalize_data(
    adata: ad.AnnData,
    target_sum: Optional[float] = 1e4,
) -> ad.AnnData:
    """
    Save raw counts to a layer, then normalize and log-transform.

    ``X`` becomes ``log1p(count / total * target_sum)``, which is
    monotonic in the raw count within a cell.
    """
    adata.layers["counts"] = adata.X.copy()
    if not np.issubdtype(adata.X.dtype, np.floating):
        adata.X = adata.X.astype(np.float32)

    sc.pp.normalize_total(adata, target_sum=target_sum, inplace=True)
    sc.pp.log1p(adata)
    return adata


# ══════════════════════════════════════════════════════════════════════
# 4. Highly Variable Gene Selection
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("layers:counts",), writes=("var:highly_variable", "uns:hvg_stats"))
def select_hvg(
    adata: ad.AnnData,
    n_top_genes: int = 2000,
    flavor: str = "seurat",
    batch_key: Optional[str] = None,
) -> ad.AnnData:
    """
    Select highly variable genes.

    For flavor='seurat_v3', uses the raw counts layer.
    Otherwise uses the current (log-normalized) X.
    """
    _kw = dict(n_top_genes=min(n_top_genes, adata.n_vars), flavor=flavor, batch_key=batch_key)
    if flavor == "seurat_v3":
        _kw["layer"] = "counts"

    try:
        sc.pp.highly_variable_genes(adata, **_kw)
    except Exception as exc:
        if is_lapack_condition_error(exc) and batch_key is not None:
            # Retry without batch correction (avoids batch-wise regression)
            warnings.warn("HVG selection hit LAPACK error; retrying without batch_key.")
            _kw.pop("batch_key", None)
            sc.pp.highly_variable_genes(adata, **_kw)
        else:
            raise

    adata.uns["hvg_stats"] = {
        "n_hvg": int(adata.var["highly_variable"].sum()),
        "n_total": adata.n_vars,
        "flavor": flavor,
    }
    return adata


# ══════════════════════════════════════════════════════════════════════
# 5. Scaling
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("var:highly_variable",), writes=("raw",))
def scale_data(
    adata: ad.AnnData,
    max_value: Optional[float] = 10.0,
    zero_center: bool = True,
) -> ad.AnnData:
    """
    Subset to highly variable genes and scale to unit variance.

    The log-normalized matrix over all genes stays in ``adata.raw``
    (marker testing and the cell-type rules read it from there).
    """
    adata.raw = adata

    adata = adata[:, adata.var["highly_variable"].to_numpy()].copy()
    sc.pp.scale(adata, max_value=max_value, zero_center=zero_center)
    return adata


# ══════════════════════════════════════════════════════════════════════
# 6. PCA
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("var:highly_variable", "raw"), writes=("obsm:X_pca", "uns:pca"))
def run_pca(adata: ad.AnnData, n_comps: int = 50, random_state: int = 0) -> ad.AnnData:
    """Run PCA on the scaled data (deterministic for a fixed seed)."""
    n_comps = min(n_comps, adata.n_vars - 1, adata.n_obs - 1)
    try:
        sc.tl.pca(adata, n_comps=n_comps, svd_solver="arpack", random_state=random_state)
    except Exception as exc:
        if is_lapack_condition_error(exc):
            # Fallback: default solver
            warnings.warn("PCA arpack hit LAPACK condition error; retrying with default solver.")
            sc.tl.pca(adata, n_comps=n_comps, random_state=random_state)
        else:
            raise
    return adata


# ══════════════════════════════════════════════════════════════════════
# 7. Neighborhood Graph
# ══════════════════════════════════════════════════════════════════════

@stage(
    reads=("obsm:X_pca",),
    writes=("obsp:connectivities", "obsp:distances", "uns:neighbors"),
)
def compute_neighbors(
    adata: ad.AnnData,
    n_neighbors: int = 10,
    n_pcs: int = 40,
) -> ad.AnnData:
    """Build the k-nearest-neighbor graph from PCA coordinates."""
    n_pcs = min(n_pcs, adata.obsm["X_pca"].shape[1])
    try:
        sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs)
    except Exception as exc:
        if is_lapack_condition_error(exc):
            # Retry with fewer PCs which often avoids the degenerate subspace
            _safe_pcs = min(n_pcs, 20)
            warnings.warn(f"Neighbors hit LAPACK condition error; retrying with {_safe_pcs} PCs.")
            sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=_safe_pcs)
        else:
            raise
    return adata


# ══════════════════════════════════════════════════════════════════════
# 8. UMAP
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("uns:neighbors",), writes=("obsm:X_umap",))
def run_umap(
    adata: ad.AnnData,
    min_dist: float = 0.5,
    spread: float = 1.0,
    random_state: int = 42,
) -> ad.AnnData:
    """Compute UMAP embedding (with fixed seed for reproducibility)."""
    sc.tl.umap(adata, min_dist=min_dist, spread=spread, random_state=random_state)
    return adata


# ══════════════════════════════════════════════════════════════════════
# 9. Clustering
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("obsp:connectivities",), writes=("obs:leiden", "uns:leiden_stats"))
def run_leiden(
    adata: ad.AnnData,
    resolution: float = 0.5,
    flavor: str = "igraph",
    n_iterations: int = 2,
    random_state: int = 0,
) -> ad.AnnData:
    """Run Leiden clustering; higher *resolution* gives more clusters."""
    sc.tl.leiden(
        adata,
        resolution=resolution,
        key_added="leiden",
        flavor=flavor,
        n_iterations=n_iterations,
        directed=False,
        random_state=random_state,
    )
    adata.uns["leiden_stats"] = {
        "n_clusters": int(adata.obs["leiden"].nunique()),
        "resolution": resolution,
    }
    logger.info("Leiden: %d clusters at resolution %.2f",
                adata.uns["leiden_stats"]["n_clusters"], resolution)
    return adata


# ══════════════════════════════════════════════════════════════════════
# 10. Marker Gene Identification
# ══════════════════════════════════════════════════════════════════════

def _rank_genes(adata: ad.AnnData, method: str, **kwargs) -> None:
    try:
        sc.tl.rank_genes_groups(adata, method=method, use_raw=True, **kwargs)
    except Exception as exc:
        if is_lapack_condition_error(exc):
            # Fallback: try t-test which doesn't require matrix inversion
            _fallback = "t-test" if method != "t-test" else "t-test_overestim_var"
            warnings.warn(f"Marker genes ({method}) hit LAPACK error; retrying with {_fallback}.")
            sc.tl.rank_genes_groups(adata, method=_fallback, use_raw=True, **kwargs)
        else:
            raise


@stage(reads=("obs:leiden", "raw"), writes=("uns:rank_genes_groups",))
def find_marker_genes(
    adata: ad.AnnData,
    method: str = "wilcoxon",
    n_genes: int = 25,
) -> ad.AnnData:
    """
    Rank genes for characterizing each Leiden cluster (one vs rest).
    Uses the log-normalized expression in ``adata.raw`` (not scaled).
    """
    _rank_genes(adata, method, groupby="leiden", n_genes=n_genes)
    return adata


def get_marker_genes_df(
    adata: ad.AnnData,
    group: Optional[str] = None,
    n_genes: int = 25,
    key: str = "rank_genes_groups",
) -> pd.DataFrame:
    """
    Extract marker genes as a DataFrame.

    Columns: ``names, scores, logfoldchanges, pvals, pvals_adj,
    cluster``.  If group is None, returns markers for all groups.
    """
    if group is not None:
        df = sc.get.rank_genes_groups_df(adata, group=group, key=key).head(n_genes)
        df["cluster"] = group
        return df.reset_index(drop=True)

    # All groups, in the order rank_genes_groups stored them
    groups = list(adata.uns[key]["names"].dtype.names)
    dfs = []
    for g in groups:
        df = sc.get.rank_genes_groups_df(adata, group=g, key=key).head(n_genes)
        df["cluster"] = g
        dfs.append(df)
    return pd.concat(dfs, ignore_index=True)


# ══════════════════════════════════════════════════════════════════════
# 11. Condition Comparison
# ══════════════════════════════════════════════════════════════════════

@stage(reads=("raw",), writes=("uns:condition_de",))
def compare_conditions(
    adata: ad.AnnData,
    condition_col: str,
    test: str,
    reference: str,
    method: str = "wilcoxon",
) -> ad.AnnData:
    """
    Test every gene between two levels of ``adata.obs[condition_col]``.

    Results are stored under ``adata.uns["condition_de"]``; read them
    with ``get_marker_genes_df(adata, group=test, key="condition_de")``.
    """
    if condition_col not in adata.obs.columns:
        raise ValueError(
            f"Condition column '{condition_col}' not found in adata.obs. "
            f"Available columns: {list(adata.obs.columns)}"
        )
    levels = set(adata.obs[condition_col].astype(str))
    for level in (test, reference):
        if level not in levels:
            raise ValueError(
                f"Level '{level}' not found in '{condition_col}'. Available: {sorted(levels)}"
            )

    adata.obs[condition_col] = adata.obs[condition_col].astype(str).astype("category")
    _rank_genes(
        adata, method,
        groupby=condition_col, groups=[test], reference=reference,
        key_added="condition_de", n_genes=adata.raw.n_vars,
    )
    return adata


# ══════════════════════════════════════════════════════════════════════
# 12. Pseudotime (diffusion map + DPT)
# ══════════════════════════════════════════════════════════════════════

@stage(
    reads=("obsp:connectivities",),
    writes=("obsm:X_diffmap", "obs:dpt_pseudotime"),
)
def compute_pseudotime(
    adata: ad.AnnData,
    root_cells: Sequence[str],
    n_dcs: int = 10,
) -> ad.AnnData:
    """
    Order cells by diffusion pseudotime from one or more root cells.

    DPT is run once per root.  scanpy scales each run to [0, 1] by its
    largest finite value, and every cell keeps the smallest of these
    scaled values.  With several roots the result therefore ranks cells
    by relative closeness to their nearest root; it is not an absolute
    diffusion distance.  Roots are 0; cells not connected to any root
    are ``inf``.

    Raises
    ------
    ValueError
        If *root_cells* is empty or names an unknown barcode.
    """
    roots = list(root_cells)
    if not roots:
        raise ValueError("At least one root cell is required.")
    unknown = [r for r in roots if r not in adata.obs_names]
    if unknown:
        raise ValueError(f"Unknown root cell(s): {unknown[:5]}")

    n_comps = min(max(n_dcs + 1, 15), adata.n_obs - 2)
    sc.tl.diffmap(adata, n_comps=n_comps)
    n_dcs = min(n_dcs, n_comps)

    per_root = []
    for root in roots:
        adata.uns["iroot"] = int(adata.obs_names.get_loc(root))
        sc.tl.dpt(adata, n_dcs=n_dcs)
        per_root.append(adata.obs["dpt_pseudotime"].to_numpy(dtype=float))

    adata.obs["dpt_pseudotime"] = np.min(np.vstack(per_root), axis=0)
    adata.uns["pseudotime_stats"] = {
        "roots": roots,
        "n_dcs": n_dcs,
        "n_finite": int(np.isfinite(adata.obs["dpt_pseudotime"]).sum()),
    }
    return adata


# ══════════════════════════════════════════════════════════════════════
# Full Pipeline Orchestrator
# ══════════════════════════════════════════════════════════════════════

PIPELINE_STAGES = [
    annotate_qc,
    filter_cells_and_genes,
    normalize_data,
    select_hvg,
    scale_data,
    run_pca,
    compute_neighbors,
    run_umap,
    run_leiden,
    find_marker_genes,
]

PIPELINE_STEPS = [func.stage.name for func in PIPELINE_STAGES]


def run_scrna_pipeline(
    adata: ad.AnnData,
    params: Optional[dict] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> ad.AnnData:
    """
    Run the scanpy pipeline from raw counts to marker genes.

    Parameters
    ----------
    adata : AnnData
        Raw counts, cells × genes.
    params : dict, optional
        Per-section overrides of ``SCRNA_CONFIG``, e.g.
        ``{"qc_defaults": {"min_genes": 100}, "leiden": {"resolution": 1.0}}``.
    progress_callback : callable, optional
        Called with (step_index, total_steps, step_name) for progress tracking.

    Returns
    -------
    AnnData with all analysis results.
    """
    verify_stage_order([f.stage for f in PIPELINE_STAGES], initial={"X"})
    total = len(PIPELINE_STEPS)

    def _progress(i):
        if progress_callback:
            progress_callback(i, total, PIPELINE_STEPS[i])
        logger.info("[%d/%d] %s", i + 1, total, PIPELINE_STEPS[i])

    _progress(0)
    adata = annotate_qc(adata)

    _progress(1)
    adata = filter_cells_and_genes(adata, **_section(params, "qc_defaults"))

    _progress(2)
    adata = normalize_data(adata, **_section(params, "normalization"))

    _progress(3)
    adata = select_hvg(adata, **_section(params, "hvg"))

    _progress(4)
    adata = scale_data(adata, **_section(params, "scale"))

    _progress(5)
    adata = run_pca(adata, **_section(params, "pca"))

    _progress(6)
    adata = compute_neighbors(adata, **_section(params, "neighbors"))

    _progress(7)
    adata = run_umap(adata, **_section(params, "umap"))

    _progress(8)
    leiden = _section(params, "leiden")
    leiden.pop("key_added", None)
    adata = run_leiden(adata, **leiden)

    _progress(9)
    adata = find_marker_genes(adata, **_section(params, "rank_genes"))

    return adata

