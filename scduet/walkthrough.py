"""
walkthrough.py -- The end-to-end PBMC walkthrough on both toolkits.

A linear sequence of library calls, run once per representation so the
results can be compared side by side:

    1. Locate (or download) the 10X matrix directory
    2. Read it into an AnnData and a CellAssaySet
    3. Diagnostic plots on the raw counts (knee, per-cell histograms)
    4. Preprocess → cluster → markers with each pipeline
    5. Checkpoint both objects
    6. Rule-based cell types
    7. Pseudotime from root cells of one cluster
    8. Compare the two clusterings
    9. Optionally, compare two conditions (per-cell and pseudobulk)

Functions
---------
run_walkthrough(data_dir, params, checkpoint_dir, theme, download, root_group, ...)
    → WalkthroughResult with both objects, figures and audits.

compare_partitions(a, b)
    → Contingency table + adjusted Rand index of two labelings.

root_cells_of(labels, group, n)
    → First *n* barcodes of a group.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import anndata as ad
import matplotlib.pyplot as plt
import pandas as pd
from sklearn.metrics import adjusted_rand_score

from scduet.assay_pipeline import (
    get_assay_markers_df,
    learn_trajectory,
    order_cells,
    run_assay_pipeline,
)
from scduet.audit import build_run_audit
from scduet.classification import annotate_cell_types
from scduet.config import ASSAY_CONFIG, DATASET_CONFIG, DESEQ2_DEFAULTS, SCRNA_CONFIG, PlotTheme
from scduet.data_io import (
    fetch_10x_dataset,
    matrix_dir,
    read_10x_anndata,
    read_10x_assay_set,
    save_checkpoint,
)
from scduet.pseudobulk import compare_assay_conditions
from scduet.records import CellAssaySet
from scduet.scrna_pipeline import (
    compare_conditions,
    compute_pseudotime,
    get_marker_genes_df,
    run_scrna_pipeline,
)
from scduet.scrna_visualization import (
    plot_counts_per_cell,
    plot_embedding,
    plot_genes_per_cell,
    plot_knee,
    plot_marker_ranking,
    plot_pca_variance,
    plot_qc_violin,
)

logger = logging.getLogger(__name__)


@dataclass
class WalkthroughResult:
    """Everything one walkthrough run produces.

    Attributes
    ----------
    adata : AnnData
        scanpy path result (cell types and ``dpt_pseudotime`` in obs).
    record : CellAssaySet
        Assay path result (cell types and ``pseudotime`` in meta_data).
    figures : dict[str, Figure]
        Named figures (``"knee"``, ``"scanpy_umap_clusters"`` …).
    partition_comparison : dict
        Output of :func:`compare_partitions` (Leiden vs Louvain).
    audits : dict[str, dict]
        ``{"scanpy": ..., "assay": ...}`` audit logs.
    checkpoints : dict[str, Path]
        Written checkpoint files, if a checkpoint directory was given.
    condition_de : dict[str, DataFrame]
        Condition comparison tables (``"scanpy"``: per-cell Wilcoxon,
        ``"assay"``: pseudobulk DESeq2), when a test condition was given.
    """

    adata: ad.AnnData
    record: CellAssaySet
    figures: dict[str, plt.Figure] = field(default_factory=dict)
    partition_comparison: dict = field(default_factory=dict)
    audits: dict[str, dict] = field(default_factory=dict)
    checkpoints: dict[str, Path] = field(default_factory=dict)
    condition_de: dict[str, pd.DataFrame] = field(default_factory=dict)


def compare_partitions(a: pd.Series, b: pd.Series) -> dict:
    """
    Compare two labelings of (partly) the same cells.

    Only barcodes present in both are compared.

    Returns
    -------
    dict
        ``crosstab`` (DataFrame, rows = *a* labels), ``ari`` (adjusted
        Rand index) and ``n_shared``.

    Raises
    ------
    ValueError
        If the two labelings share no barcode.
    """
    shared = a.index.intersection(b.index)
    if len(shared) == 0:
        raise ValueError("The two labelings share no cells.")
    la = a.loc[shared].astype(str)
    lb = b.loc[shared].astype(str)
    return {
        "crosstab": pd.crosstab(la, lb),
        "ari": float(adjusted_rand_score(la, lb)),
        "n_shared": int(len(shared)),
    }


def root_cells_of(labels: pd.Series, group: str, n: int = 1) -> list[str]:
    """First *n* barcodes whose label is *group*."""
    members = labels.index[labels.astype(str) == str(group)]
    if len(members) == 0:
        raise ValueError(f"No cell labelled '{group}'.")
    return [str(x) for x in members[:n]]


def _path_params(params: Optional[dict], path: str) -> dict:
    """Overrides for one path: its own sections plus the shared QC section."""
    params = params or {}
    merged = dict(params.get(path, {}))
    if "qc_defaults" in params:
        merged["qc_defaults"] = params["qc_defaults"]
    return merged


def run_walkthrough(
    data_dir: Union[str, Path],
    params: Optional[dict] = None,
    checkpoint_dir: Union[str, Path, None] = None,
    theme: Optional[PlotTheme] = None,
    download: bool = False,
    root_group: str = "0",
    cell_metadata: Optional[pd.DataFrame] = None,
    condition_test: Optional[str] = None,
) -> WalkthroughResult:
    """
    Run the full walkthrough on both representations.

    Parameters
    ----------
    data_dir : path
        Directory holding ``filtered_gene_bc_matrices/<reference>``.
    params : dict, optional
        ``{"qc_defaults": {...}, "scanpy": {...}, "assay": {...}}``.
        ``qc_defaults`` applies to both paths; the other two hold
        section overrides for ``run_scrna_pipeline`` and
        ``run_assay_pipeline`` respectively.
    checkpoint_dir : path, optional
        Where to write the preprocessed objects (``.h5ad`` / ``.pkl``).
    theme : PlotTheme, optional
        Theme for every figure; default preset when None.
    download : bool
        Fetch the public dataset into *data_dir* when it is missing.
    root_group : str
        Cluster whose first cell roots the pseudotime (in each path).
    cell_metadata : DataFrame, optional
        Extra per-cell columns indexed by barcode (e.g. ``sample`` and
        ``condition``), copied into both objects; barcodes it lacks get NaN.
    condition_test : str, optional
        Condition level to compare against the reference level of
        ``DESEQ2_DEFAULTS``.  Needs the sample and condition columns.
    """
    path = matrix_dir(data_dir, DATASET_CONFIG["reference"])
    if not path.is_dir():
        if not download:
            raise FileNotFoundError(f"10X matrix directory not found: {path}")
        path = fetch_10x_dataset(data_dir)

    # ── Load ──────────────────────────────────────────────────────────
    adata = read_10x_anndata(path)
    record = read_10x_assay_set(path)
    if cell_metadata is not None:
        _attach_metadata(adata.obs, cell_metadata)
        _attach_metadata(record.meta_data, cell_metadata)
    figures: dict[str, plt.Figure] = {}

    figures["knee"] = plot_knee(adata.X, theme=theme)
    figures["genes_per_cell"] = plot_genes_per_cell(adata.X, theme=theme)
    figures["counts_per_cell"] = plot_counts_per_cell(adata.X, theme=theme)

    # ── Pipelines ─────────────────────────────────────────────────────
    t0 = time.monotonic()
    adata = run_scrna_pipeline(adata, _path_params(params, "scanpy"))
    scanpy_seconds = time.monotonic() - t0

    t0 = time.monotonic()
    record = run_assay_pipeline(record, _path_params(params, "assay"))
    assay_seconds = time.monotonic() - t0

    checkpoints: dict[str, Path] = {}
    if checkpoint_dir is not None:
        checkpoint_dir = Path(checkpoint_dir)
        project = ASSAY_CONFIG["project"]
        checkpoints["scanpy"] = save_checkpoint(adata, checkpoint_dir / f"{project}_scanpy.h5ad")
        checkpoints["assay"] = save_checkpoint(record, checkpoint_dir / f"{project}_assay.pkl")

    # ── Cell types ────────────────────────────────────────────────────
    annotate_cell_types(adata)
    annotate_cell_types(record)

    # ── Pseudotime ────────────────────────────────────────────────────
    n_dcs = SCRNA_CONFIG["pseudotime"]["n_dcs"]
    adata = compute_pseudotime(
        adata, root_cells_of(adata.obs["leiden"], root_group), n_dcs=n_dcs,
    )
    record = learn_trajectory(record, reduction=ASSAY_CONFIG["trajectory"]["reduction"])
    record = order_cells(record, root_cells_of(record.meta_data["louvain"], root_group))

    # ── Condition comparison ──────────────────────────────────────────
    condition_de: dict[str, pd.DataFrame] = {}
    if condition_test is not None:
        condition_col = DESEQ2_DEFAULTS["condition_col"]
        reference = DESEQ2_DEFAULTS["reference_level"]
        adata = compare_conditions(adata, condition_col, condition_test, reference)
        condition_de["scanpy"] = get_marker_genes_df(
            adata, group=condition_test, n_genes=adata.raw.n_vars, key="condition_de",
        )
        record = compare_assay_conditions(record, test_level=condition_test)
        condition_de["assay"] = record.misc["condition_de"]

    # ── Figures ───────────────────────────────────────────────────────
    umap_a = adata.obsm["X_umap"]
    umap_b = record.reductions["umap"].embeddings
    figures["scanpy_qc"] = plot_qc_violin(adata.obs, theme=theme)
    figures["assay_qc"] = plot_qc_violin(record.meta_data, theme=theme)
    figures["scanpy_elbow"] = plot_pca_variance(adata.uns["pca"]["variance_ratio"], theme=theme)
    figures["assay_elbow"] = plot_pca_variance(
        record.reductions["pca"].variance_ratio, theme=theme,
    )
    figures["scanpy_umap_clusters"] = plot_embedding(
        umap_a, adata.obs["leiden"], "Leiden clusters", theme=theme,
    )
    figures["assay_umap_clusters"] = plot_embedding(
        umap_b, record.meta_data["louvain"], "Louvain clusters", theme=theme,
    )
    figures["scanpy_umap_cell_types"] = plot_embedding(
        umap_a, adata.obs["cell_type"], "Cell types", theme=theme,
    )
    figures["assay_umap_cell_types"] = plot_embedding(
        umap_b, record.meta_data["cell_type"], "Cell types", theme=theme,
    )
    figures["scanpy_pseudotime"] = plot_embedding(
        umap_a, adata.obs["dpt_pseudotime"], "Diffusion pseudotime", theme=theme,
    )
    figures["assay_pseudotime"] = plot_embedding(
        umap_b, record.meta_data["pseudotime"], "Pseudotime", theme=theme,
    )
    figures["scanpy_markers"] = plot_marker_ranking(get_marker_genes_df(adata), theme=theme)
    markers_b = get_assay_markers_df(record)
    if not markers_b.empty:
        figures["assay_markers"] = plot_marker_ranking(markers_b, theme=theme)

    comparison = compare_partitions(adata.obs["leiden"], record.meta_data["louvain"])
    logger.info("Leiden vs Louvain: ARI %.3f over %d shared cells",
                comparison["ari"], comparison["n_shared"])

    return WalkthroughResult(
        adata=adata,
        record=record,
        figures=figures,
        partition_comparison=comparison,
        audits={
            "scanpy": build_run_audit(adata, _path_params(params, "scanpy"), scanpy_seconds),
            "assay": build_run_audit(record, _path_params(params, "assay"), assay_seconds),
        },
        checkpoints=checkpoints,
        condition_de=condition_de,
    )


def _attach_metadata(table: pd.DataFrame, cell_metadata: pd.DataFrame) -> None:
    """Copy the columns of *cell_metadata* into *table*, matched by barcode."""
    unmatched = table.index.difference(cell_metadata.index)
    if len(unmatched):
        logger.warning("%d cell(s) have no metadata row, e.g. %s",
                       len(unmatched), list(unmatched[:5]))
    for col in cell_metadata.columns:
        table[col] = cell_metadata[col].reindex(table.index).to_numpy()
