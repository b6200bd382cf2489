"""
filtering.py -- Minimum-cells / minimum-genes filtering shared by both paths.

A gene is kept if it is detected in at least ``min_cells`` cells and a
cell is kept if it has at least ``min_genes`` detected genes.  Removing
cells can push a gene below its threshold (and vice versa), so the two
predicates are applied alternately until neither removes anything.
The result is the largest sub-matrix in which both hold; nothing else
is dropped.

Both representations call :func:`min_count_masks` with a cells × genes
matrix, so the predicate is the same no matter which one filters.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import scanpy as sc

from scduet.errors import EmptyFilterResultError

logger = logging.getLogger(__name__)


def min_count_masks(
    X,
    min_cells: Optional[int] = None,
    min_genes: Optional[int] = None,
    max_rounds: int = 100,
) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(cell_mask, gene_mask)`` satisfying both lower bounds.

    Parameters
    ----------
    X : array-like or sparse matrix
        Cells × genes count matrix.
    min_cells : int or None
        Keep genes detected (count > 0) in ``>= min_cells`` kept cells.
    min_genes : int or None
        Keep cells with ``>= min_genes`` detected kept genes.
    max_rounds : int
        Safety bound on alternations; each round removes at least one
        row or column, so it is only reached on degenerate input.

    Raises
    ------
    EmptyFilterResultError
        If no cell or no gene survives.
    """
    n_cells, n_genes = X.shape
    cells = np.ones(n_cells, dtype=bool)
    genes = np.ones(n_genes, dtype=bool)
    criteria = {"min_cells": min_cells, "min_genes": min_genes}

    for _ in range(max_rounds):
        changed = False

        if min_cells is not None:
            sub = X[cells][:, genes]
            keep, _ = sc.pp.filter_genes(sub, min_cells=min_cells, inplace=False)
            if not keep.all():
                idx = np.flatnonzero(genes)
                genes[idx[~keep]] = False
                changed = True
            if not genes.any():
                raise EmptyFilterResultError("genes", n_genes, criteria)

        if min_genes is not None:
            sub = X[cells][:, genes]
            keep, _ = sc.pp.filter_cells(sub, min_genes=min_genes, inplace=False)
            if not keep.all():
                idx = np.flatnonzero(cells)
                cells[idx[~keep]] = False
                changed = True
            if not cells.any():
                raise EmptyFilterResultError("cells", n_cells, criteria)

        if not changed:
            break

    logger.info(
        "min-count filter kept %d/%d cells and %d/%d genes",
        int(cells.sum()), n_cells, int(genes.sum()), n_genes,
    )
    return cells, genes


def require_nonempty(mask: np.ndarray, axis: str, criteria: dict) -> np.ndarray:
    """Return *mask* unchanged, or raise if it selects nothing."""
    mask = np.asarray(mask, dtype=bool)
    if not mask.any():
        raise EmptyFilterResultError(axis, mask.size, criteria)
    return mask


def filtering_stats(
    cells_before: int,
    cells_after: int,
    genes_before: int,
    genes_after: int,
) -> dict:
    return {
        "cells_before": cells_before,
        "cells_after": cells_after,
        "cells_removed": cells_before - cells_after,
        "genes_before": genes_before,
        "genes_after": genes_after,
        "genes_removed": genes_before - genes_after,
    }
