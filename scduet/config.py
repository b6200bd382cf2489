"""
config.py — Central configuration for scduet.

All default parameters, thresholds and plot settings used by the two
analysis paths (scanpy / AnnData and the genes × cells assay record)
live here, so the pipelines never carry magic numbers of their own.

Sections
--------
0. Plot themes : PlotTheme, THEME_PRESETS, get_theme()
   → Immutable colour/typography values passed explicitly to every
     plotting call.

1. DATASET_CONFIG : dict
   → Public 10X dataset location and on-disk layout.

2. SCRNA_CONFIG : dict
   → Defaults for the scanpy (AnnData) path and shared QC thresholds.

3. ASSAY_CONFIG : dict
   → Defaults for the assay-record path.

4. CELL_TYPE_MARKERS : dict
   → Marker genes used by the rule-based cell-type classifier.

5. DESEQ2_DEFAULTS / MEMORY_CONFIG : dict
   → Pseudobulk condition testing.

Usage example
-------------
    from scduet.config import SCRNA_CONFIG, get_theme

    min_genes = SCRNA_CONFIG["qc_defaults"]["min_genes"]
    theme = get_theme("dark")
"""

from __future__ import annotations

from dataclasses import dataclass, replace


# ──────────────────────────────────────────────────────────────────────
# 0. Plot themes: Light · Dark
# ──────────────────────────────────────────────────────────────────────
# A theme is a frozen value.  Plotting functions receive it as an
# argument; nothing in the package keeps an "active" theme.

@dataclass(frozen=True)
class PlotTheme:
    """Colours, fonts and grid settings for one visual preset."""

    name: str
    # ── Surfaces ──────────────────────────────────────────────────────
    bg: str
    surface: str
    border: str
    # ── Typography ────────────────────────────────────────────────────
    text: str
    text_muted: str
    text_subtle: str
    font_family: str
    # ── Accents ───────────────────────────────────────────────────────
    highlight: str
    muted: str
    accent: str
    # ── Categorical palette ───────────────────────────────────────────
    palette: tuple[str, ...]
    # ── Grid ──────────────────────────────────────────────────────────
    grid_color: str
    grid_width: float = 0.6
    grid_style: str = ":"
    # ── Colormaps ─────────────────────────────────────────────────────
    cmap_sequential: str = "viridis"
    cmap_diverging: str = "RdBu_r"
    # ── Font sizes ────────────────────────────────────────────────────
    font_title: int = 13
    font_axes: int = 11
    font_legend: int = 9
    font_annotation: int = 9
    font_ticks: int = 9
    # ── Legend / annotation boxes ─────────────────────────────────────
    legend_bg: str = "#ffffff"
    legend_edge: str = "#d0d7de"
    legend_alpha: float = 0.95
    annot_bg: str = "#f0f2f5"
    annot_edge: str = "#d0d7de"
    annot_alpha: float = 0.95

    def cluster_colors(self, n: int) -> list[str]:
        """Return *n* colours from the palette, cycling if needed."""
        return [self.palette[i % len(self.palette)] for i in range(n)]

    def with_overrides(self, **changes) -> PlotTheme:
        """Return a copy of this theme with some fields replaced."""
        return replace(self, **changes)


THEME_LIGHT = PlotTheme(
    name="light",
    bg="#ffffff",
    surface="#f8f9fa",
    border="#d0d7de",
    text="#1f2328",
    text_muted="#656d76",
    text_subtle="#8b949e",
    font_family="sans-serif",
    highlight="#c62828",
    muted="#9e9e9e",
    accent="#1565c0",
    palette=(
        "#1f77b4", "#ff7f0e", "#2ca02c", "#d62728", "#9467bd",
        "#8c564b", "#e377c2", "#7f7f7f", "#bcbd22", "#17becf",
        "#aec7e8", "#ffbb78", "#98df8a", "#ff9896", "#c5b0d5",
        "#c49c94", "#f7b6d2", "#c7c7c7", "#dbdb8d", "#9edae5",
    ),
    grid_color="#e1e4e8",
)

THEME_DARK = PlotTheme(
    name="dark",
    bg="#0e1117",
    surface="#161b22",
    border="#2a3444",
    text="#e6edf3",
    text_muted="#8b949e",
    text_subtle="#6e7681",
    font_family="monospace",
    highlight="#f85149",
    muted="#484f58",
    accent="#58a6ff",
    palette=(
        "#58d5c1", "#f85149", "#58a6ff", "#d29922", "#bc8cff",
        "#f778ba", "#3fb950", "#db6d28", "#79c0ff", "#d2a8ff",
        "#56d364", "#ff7b72", "#a5d6ff", "#e3b341", "#7ee787",
        "#ffa657", "#b392f0", "#f0883e", "#39d353", "#da3633",
    ),
    grid_color="#21262d",
    legend_bg="#161b22",
    legend_edge="#2a3444",
    legend_alpha=0.92,
    annot_bg="#1c2333",
    annot_edge="#2a3444",
    annot_alpha=0.92,
)

# ── Preset registry ──────────────────────────────────────────────────
THEME_PRESETS: dict[str, PlotTheme] = {
    "light": THEME_LIGHT,
    "dark": THEME_DARK,
}

DEFAULT_THEME_NAME = "light"


def get_theme(name: str = DEFAULT_THEME_NAME) -> PlotTheme:
    """Return the preset theme called *name*.

    Parameters
    ----------
    name : str
        One of ``"light"`` or ``"dark"``.

    Raises
    ------
    ValueError
        If *name* is not a known preset.
    """
    preset = THEME_PRESETS.get(name)
    if preset is None:
        raise ValueError(f"Unknown theme '{name}'. Choose from: {list(THEME_PRESETS)}")
    return preset


# ──────────────────────────────────────────────────────────────────────
# 1. Public dataset
# ──────────────────────────────────────────────────────────────────────
DATASET_CONFIG: dict = {
    # 3k PBMCs from a healthy donor, Cell Ranger 1.1.0 output.
    "url": (
        "https://cf.10xgenomics.com/samples/cell-exp/1.1.0/pbmc3k/"
        "pbmc3k_filtered_gene_bc_matrices.tar.gz"
    ),
    # Directory layout inside the archive:
    #   filtered_gene_bc_matrices/<reference>/{matrix.mtx,genes.tsv,barcodes.tsv}
    "matrix_root": "filtered_gene_bc_matrices",
    "reference": "hg19",

    # Column of genes.tsv / features.tsv used as the feature identifier
    # (0 = Ensembl ID, 1 = gene symbol).
    "gene_column": 1,

    # Name of the feature-metadata column holding display names.
    # Synthesised from the feature identifier when absent.
    "display_name_col": "gene_symbols",
    "gene_id_col": "gene_ids",
}

# HTTP settings for dataset download
HTTP_CONFIG: dict = {
    "request_timeout": 60,
    "download_timeout": 600,
    "max_retries": 3,
    "backoff_base": 2,
    "stream_chunk_bytes": 1024 * 256,
}

# ──────────────────────────────────────────────────────────────────────
# 2. scanpy (AnnData) path + shared QC thresholds
# ──────────────────────────────────────────────────────────────────────
SCRNA_CONFIG: dict = {
    # ── Quality Control ───────────────────────────────────────────────
    # min_genes / min_cells are closed lower bounds (>=).  The caps are
    # applied before the lower bounds; None disables a cap.
    "qc_defaults": {
        "min_genes": 200,
        "min_cells": 3,
        "max_genes": 2500,
        "max_pct_mt": 5.0,
        "min_counts": None,
        "max_counts": None,
    },

    # Gene-name prefixes used for QC flags (case-insensitive).
    "qc_gene_prefixes": {
        "mt": ("MT-",),
        "ribo": ("RPS", "RPL"),
    },
    "qc_hb_pattern": "^HB[^(P)]",

    # ── Normalization ─────────────────────────────────────────────────
    "normalization": {
        "target_sum": 1e4,
    },

    # ── Highly Variable Genes ────────────────────────────────────────
    "hvg": {
        "n_top_genes": 2000,
        "flavor": "seurat",
        "batch_key": None,
    },

    # ── Scaling ───────────────────────────────────────────────────────
    "scale": {
        "max_value": 10.0,
    },

    # ── PCA ────────────────────────────────────────────────────────────
    "pca": {
        "n_comps": 50,
        "random_state": 0,
    },

    # ── Neighbors & Embedding ────────────────────────────────────────
    "neighbors": {
        "n_neighbors": 10,
        "n_pcs": 40,
    },
    "umap": {
        "min_dist": 0.5,
        "spread": 1.0,
        "random_state": 42,
    },

    # ── Clustering ────────────────────────────────────────────────────
    "leiden": {
        "resolution": 0.5,
        "flavor": "igraph",
        "n_iterations": 2,
        "random_state": 0,
        "key_added": "leiden",
    },

    # ── Marker Genes ──────────────────────────────────────────────────
    "rank_genes": {
        "method": "wilcoxon",
        "n_genes": 25,
    },

    # ── Pseudotime ────────────────────────────────────────────────────
    "pseudotime": {
        "n_dcs": 10,
    },

    # ── Plot styling ──────────────────────────────────────────────────
    "plot": {
        "figsize_knee": (6, 5),
        "figsize_hist": (7, 4.5),
        "figsize_qc": (12, 4),
        "figsize_elbow": (8, 4),
        "figsize_embedding": (8, 6.5),
        "point_size": 12,
        "point_alpha": 0.8,
        "dpi": 150,
        "knee_threshold": 1000,
        "hist_threshold": 0,
        "hist_bins": 50,
    },
}

# ──────────────────────────────────────────────────────────────────────
# 3. Assay-record (genes × cells) path
# ──────────────────────────────────────────────────────────────────────
ASSAY_CONFIG: dict = {
    "default_assay": "RNA",
    "project": "pbmc3k",

    # ── Normalization (log1p(count / total * scale_factor)) ───────────
    "normalization": {
        "scale_factor": 1e4,
    },

    # ── Variable features (binned dispersion z-scores) ───────────────
    "variable_features": {
        "n_features": 2000,
        "n_bins": 20,
    },

    "scale": {
        "max_value": 10.0,
    },

    "pca": {
        "n_components": 50,
        "random_state": 42,
    },

    # ── Shared-nearest-neighbour graph ───────────────────────────────
    "neighbors": {
        "n_neighbors": 20,
        "dims": 10,
        # Jaccard overlaps below this are pruned from the SNN graph.
        "prune_snn": 1 / 15,
    },

    # ── Louvain clustering ───────────────────────────────────────────
    "louvain": {
        "resolution": 0.5,
        "random_state": 0,
        "key_added": "louvain",
    },

    "umap": {
        "dims": 10,
        "n_neighbors": 30,
        "min_dist": 0.3,
        "metric": "cosine",
        "random_state": 42,
    },

    # ── Marker genes (one-vs-rest Wilcoxon rank-sum) ─────────────────
    "markers": {
        "min_pct": 0.25,
        "logfc_threshold": 0.25,
        "only_pos": True,
    },

    "trajectory": {
        "reduction": "umap",
    },
}

# ──────────────────────────────────────────────────────────────────────
# 4. Cell-type markers
# ──────────────────────────────────────────────────────────────────────
CELL_TYPE_MARKERS: dict = {
    # Pan-T-cell gate used by every rule.
    "pan_t": "CD3E",
    "b_cell": "MS4A1",
    "cd4": "CD4",
    "cd8": "CD8A",
    "nk": "GNLY",
    "monocyte": "CD14",
    "unknown_label": "Unknown",
    "key_added": "cell_type",
}

# ──────────────────────────────────────────────────────────────────────
# 5. Pseudobulk condition testing (PyDESeq2)
# ──────────────────────────────────────────────────────────────────────
DESEQ2_DEFAULTS: dict = {
    "condition_col": "condition",
    "sample_col": "sample",
    "reference_level": "control",
    "alpha": 0.05,
    # Pseudobulk samples whose summed library is below this are dropped.
    "min_library_size": 1,
}

MEMORY_CONFIG: dict = {
    # PyDESeq2 joblib workers each receive a copy of the counts.
    "deseq2_n_cpus": 4,
}
