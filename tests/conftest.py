"""Shared pytest fixtures for the scduet test suite.

Every fixture builds a small synthetic PBMC-like count matrix: three
groups of cells with their own highly expressed gene block and marker
genes, a few mitochondrial genes, and Poisson background noise.
"""

import matplotlib

matplotlib.use("Agg")

import anndata as ad
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest
import scipy.io
from scipy import sparse

from scduet.records import Assay, CellAssaySet


N_PER_GROUP = 30
MARKER_GENES = ["CD3E", "CD4", "CD8A", "MS4A1", "GNLY", "CD14"]
MT_GENES = ["MT-CO1", "MT-ND1", "MT-ATP6"]
N_FILLER = 111

# Genes boosted in each synthetic population.
GROUP_MARKERS = {
    0: ["CD3E", "CD4", "CD8A"],
    1: ["MS4A1"],
    2: ["CD14", "GNLY"],
}


def _synthetic_counts(seed: int = 0):
    rng = np.random.default_rng(seed)
    genes = MARKER_GENES + MT_GENES + [f"GENE{i}" for i in range(N_FILLER)]
    n_cells = 3 * N_PER_GROUP

    lam = np.full((n_cells, len(genes)), 1.0)
    lam[:, len(MARKER_GENES):len(MARKER_GENES) + len(MT_GENES)] = 0.5
    lam[:, :len(MARKER_GENES)] = 0.0
    for group, markers in GROUP_MARKERS.items():
        rows = slice(group * N_PER_GROUP, (group + 1) * N_PER_GROUP)
        block = len(MARKER_GENES) + len(MT_GENES) + group * 20
        lam[rows, block:block + 20] = 8.0
        for gene in markers:
            lam[rows, genes.index(gene)] = 5.0

    counts = rng.poisson(lam).astype(np.int64)
    cells = [f"CELL{i:03d}-1" for i in range(n_cells)]
    return counts, cells, genes


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests on synthetic data")
    config.addinivalue_line("markers", "integration: runs a whole pipeline end to end")


@pytest.fixture
def synthetic_counts():
    """(cells × genes int matrix, cell names, gene names)."""
    return _synthetic_counts()


@pytest.fixture
def adata(synthetic_counts):
    """Raw-count AnnData (cells × genes, CSR)."""
    counts, cells, genes = synthetic_counts
    return ad.AnnData(
        X=sparse.csr_matrix(counts),
        obs=pd.DataFrame(index=pd.Index(cells)),
        var=pd.DataFrame(
            {"gene_ids": [f"ENSG{i:011d}" for i in range(len(genes))]},
            index=pd.Index(genes),
        ),
    )


@pytest.fixture
def record(synthetic_counts):
    """Raw-count CellAssaySet (genes × cells)."""
    counts, cells, genes = synthetic_counts
    rna = Assay(
        counts=sparse.csc_matrix(counts.T),
        meta_features=pd.DataFrame(
            {"gene_ids": [f"ENSG{i:011d}" for i in range(len(genes))]},
            index=pd.Index(genes),
        ),
    )
    return CellAssaySet(
        assays={"RNA": rna},
        meta_data=pd.DataFrame({"orig_ident": "test"}, index=pd.Index(cells)),
    )


@pytest.fixture
def tenx_dir(tmp_path, synthetic_counts):
    """Cell Ranger 1.x style matrix directory written from the synthetic counts."""
    counts, cells, genes = synthetic_counts
    path = tmp_path / "filtered_gene_bc_matrices" / "hg19"
    path.mkdir(parents=True)
    scipy.io.mmwrite(str(path / "matrix.mtx"), sparse.coo_matrix(counts.T))
    pd.DataFrame(
        {"id": [f"ENSG{i:011d}" for i in range(len(genes))], "symbol": genes}
    ).to_csv(path / "genes.tsv", sep="\t", header=False, index=False)
    pd.Series(cells).to_csv(path / "barcodes.tsv", sep="\t", header=False, index=False)
    return path


@pytest.fixture
def small_params():
    """Pipeline overrides sized for the synthetic data."""
    return {
        "qc_defaults": {
            "min_genes": 10, "min_cells": 3, "max_genes": None,
            "max_pct_mt": None, "min_counts": None, "max_counts": None,
        },
        "scanpy": {
            "hvg": {"n_top_genes": 60},
            "pca": {"n_comps": 10},
            "neighbors": {"n_neighbors": 10, "n_pcs": 10},
            "rank_genes": {"n_genes": 10},
        },
        "assay": {
            "variable_features": {"n_features": 60, "n_bins": 10},
            "pca": {"n_components": 10},
            "neighbors": {"n_neighbors": 10, "dims": 10},
            "umap": {"dims": 10, "n_neighbors": 15},
            "markers": {"min_pct": 0.1, "logfc_threshold": 0.1},
        },
    }


@pytest.fixture(autouse=True)
def close_figures():
    """Close every matplotlib figure a test opened."""
    yield
    plt.close("all")
