"""
bridge.py -- Conversion between AnnData and CellAssaySet.

Both functions copy the raw counts (transposing between cells × genes
and genes × cells) without touching their values or dtype, copy the
cell and feature tables, and never modify their input.  Derived slots
(normalized data, embeddings, graphs) are not carried over; the
receiving toolkit recomputes them.

A feature table without a display-name column gets one filled from the
feature identifiers.
"""

from __future__ import annotations

import logging
from typing import Optional

import anndata as ad
import pandas as pd
from anndata.utils import make_index_unique
from scipy import sparse

from scduet.config import ASSAY_CONFIG, DATASET_CONFIG
from scduet.records import Assay, CellAssaySet

logger = logging.getLogger(__name__)


def _with_display_names(features: pd.DataFrame) -> pd.DataFrame:
    col = DATASET_CONFIG["display_name_col"]
    features = features.copy()
    if col not in features.columns:
        features[col] = features.index.astype(str)
    return features


def assay_set_to_anndata(record: CellAssaySet, assay: Optional[str] = None) -> ad.AnnData:
    """
    Convert a CellAssaySet into an AnnData holding raw counts.

    Parameters
    ----------
    record : CellAssaySet
        Source record (left unchanged).
    assay : str, optional
        Assay to export.  Defaults to ``record.active_assay``.

    Returns
    -------
    AnnData
        ``X`` = the assay's counts, cells × genes (CSR); ``obs`` = copy
        of ``meta_data``; ``var`` = copy of the assay's feature table.
    """
    source = record.assay(assay)
    X = source.counts.T.tocsr(copy=True)

    obs = record.meta_data.copy()
    obs.index = obs.index.astype(str)
    var = _with_display_names(source.meta_features)
    var.index = var.index.astype(str)

    adata = ad.AnnData(X=X, obs=obs, var=var)
    logger.info("Converted CellAssaySet → AnnData (%d cells × %d genes)",
                adata.n_obs, adata.n_vars)
    return adata


def anndata_to_assay_set(
    adata: ad.AnnData,
    assay: str = ASSAY_CONFIG["default_assay"],
    layer: Optional[str] = None,
    project: str = ASSAY_CONFIG["project"],
) -> CellAssaySet:
    """
    Convert an AnnData into a single-assay CellAssaySet.

    Raw counts are taken from ``adata.layers[layer]`` when *layer* is
    given, else from ``adata.layers["counts"]`` when present (the
    normalization stage keeps them there), else from ``adata.X``.

    AnnData allows repeated ``var_names``; they are suffixed (``-1``,
    ``-2`` …) to become the record's identifiers, and the original
    names stay in the display-name column.
    """
    if layer is not None:
        X = adata.layers[layer]
    elif "counts" in adata.layers:
        X = adata.layers["counts"]
    else:
        X = adata.X

    counts = sparse.csc_matrix(X.T, copy=True) if sparse.issparse(X) else sparse.csc_matrix(X.T)

    meta_features = _with_display_names(adata.var)
    names = make_index_unique(meta_features.index.astype(str))
    meta_features.index = pd.RangeIndex(len(names))
    rna = Assay(counts=counts, meta_features=meta_features)
    rna.set_feature_names(names)

    record = CellAssaySet(
        assays={assay: rna},
        meta_data=adata.obs.copy(),
        active_assay=assay,
        project=project,
    )
    logger.info("Converted AnnData → CellAssaySet (%d genes × %d cells)",
                record.n_features, record.n_cells)
    return record
