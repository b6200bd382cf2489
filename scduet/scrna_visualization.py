"""
scrna_visualization.py -- Diagnostic and result plots for both paths.

Generates matplotlib figures for each step of the walkthrough:
    - Knee plot (barcode rank vs total counts)
    - Genes-per-cell and counts-per-cell histograms
    - QC violin plots
    - PCA variance ratio (elbow plot)
    - 2-D embedding coloured by a categorical or numeric vector
    - Marker gene ranking bar plot

Matrices are cells × genes (dense or sparse); the assay path passes
``record.assay().counts.T``.  The data behind each diagnostic plot is
computed by a pure ``prepare_*`` function; pre-computed per-cell
statistics may be passed in and are used as-is.

Every plotting function takes an explicit ``theme`` (a
:class:`~scduet.config.PlotTheme`, ``None`` for the default preset) and
returns a matplotlib Figure.  Styling is scoped with
``plt.rc_context``; global rcParams are never changed.
"""

from __future__ import annotations

import io
from typing import Optional, Sequence

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import sparse

from scduet.config import SCRNA_CONFIG, PlotTheme, get_theme

matplotlib.use("Agg")

_PLOT_CFG = SCRNA_CONFIG["plot"]


# ══════════════════════════════════════════════════════════════════════
# Helpers
# ══════════════════════════════════════════════════════════════════════

def _resolve(theme: Optional[PlotTheme]) -> PlotTheme:
    return get_theme() if theme is None else theme


def figure_to_bytes(fig: plt.Figure, fmt: str = "png", dpi: int = _PLOT_CFG["dpi"]) -> bytes:
    """Serialize a figure to bytes for saving."""
    buf = io.BytesIO()
    fig.savefig(buf, format=fmt, dpi=dpi, bbox_inches="tight",
                facecolor=fig.get_facecolor())
    buf.seek(0)
    return buf.getvalue()


def _style_axes(fig, ax, theme: PlotTheme) -> None:
    """Apply *theme* to a figure and axes."""
    fig.patch.set_facecolor(theme.bg)
    ax.set_facecolor(theme.surface)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.spines["left"].set_color(theme.border)
    ax.spines["bottom"].set_color(theme.border)
    ax.yaxis.grid(True, linestyle=theme.grid_style,
                  linewidth=theme.grid_width, color=theme.grid_color)
    ax.xaxis.grid(False)
    ax.set_axisbelow(True)
    ax.tick_params(
        axis="both", which="major",
        labelsize=theme.font_ticks, colors=theme.text_muted,
        direction="out", length=4, width=0.8,
    )


def _themed_subplots(theme: PlotTheme, figsize, nrows: int = 1, ncols: int = 1):
    """Create a figure + axes with *theme* pre-applied to every axes."""
    with plt.rc_context({"font.family": theme.font_family}):
        fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)
    for ax in axes.ravel():
        _style_axes(fig, ax, theme)
    return fig, axes


def _label_axes(ax, theme: PlotTheme, xlabel: str, ylabel: str, title: str) -> None:
    ax.set_xlabel(xlabel, fontsize=theme.font_axes, color=theme.text_muted)
    ax.set_ylabel(ylabel, fontsize=theme.font_axes, color=theme.text_muted)
    ax.set_title(title, fontsize=theme.font_title, fontweight="bold", color=theme.text)


def _annotate(ax, theme: PlotTheme, text: str) -> None:
    """Boxed annotation in the upper-right corner of *ax*."""
    ax.text(
        0.97, 0.95, text,
        transform=ax.transAxes, ha="right", va="top",
        fontsize=theme.font_annotation, color=theme.text,
        bbox=dict(boxstyle="round,pad=0.4", facecolor=theme.annot_bg,
                  edgecolor=theme.annot_edge, alpha=theme.annot_alpha),
    )


def _apply_legend(ax, theme: PlotTheme, **extra_kw) -> None:
    """Legend outside the axes (right side) so it never overlaps data points."""
    legend_kw = dict(
        loc="upper left",
        fontsize=theme.font_legend,
        frameon=True,
        framealpha=theme.legend_alpha,
        facecolor=theme.legend_bg,
        edgecolor=theme.legend_edge,
        labelcolor=theme.text,
        bbox_to_anchor=(1.02, 1),
        borderaxespad=0,
    )
    legend_kw.update(extra_kw)
    legend = ax.legend(**legend_kw)
    legend.set_zorder(10)


# ══════════════════════════════════════════════════════════════════════
# Per-cell statistics
# ══════════════════════════════════════════════════════════════════════

def compute_counts_per_cell(matrix) -> np.ndarray:
    """Total counts of every cell (row sums of a cells × genes matrix)."""
    return np.asarray(matrix.sum(axis=1)).ravel()


def compute_genes_per_cell(matrix) -> np.ndarray:
    """Number of detected (count > 0) genes of every cell."""
    if sparse.issparse(matrix):
        return np.asarray((matrix > 0).sum(axis=1)).ravel()
    return (np.asarray(matrix) > 0).sum(axis=1)


# ══════════════════════════════════════════════════════════════════════
# Knee Plot
# ══════════════════════════════════════════════════════════════════════

def prepare_knee_data(
    matrix=None,
    threshold: float = _PLOT_CFG["knee_threshold"],
    counts_per_cell: Optional[np.ndarray] = None,
) -> dict:
    """
    Data behind the knee plot.

    Parameters
    ----------
    matrix : array-like or sparse, optional
        Cells × genes counts.  Not read when *counts_per_cell* is given.
    threshold : float
        Cells with total count strictly greater than this are "cells".
    counts_per_cell : np.ndarray, optional
        Pre-computed per-cell totals, trusted as-is.

    Returns
    -------
    dict
        ``counts`` (sorted descending), ``rank`` (1-based), ``above``
        (bool mask aligned with ``counts``), ``n_cells`` and
        ``threshold``.
    """
    totals = _totals(matrix, counts_per_cell)
    ordered = np.sort(totals)[::-1]
    above = ordered > threshold
    return {
        "counts": ordered,
        "rank": np.arange(1, len(ordered) + 1),
        "above": above,
        "n_cells": int(above.sum()),
        "threshold": threshold,
    }


def plot_knee(
    matrix=None,
    threshold: float = _PLOT_CFG["knee_threshold"],
    counts_per_cell: Optional[np.ndarray] = None,
    theme: Optional[PlotTheme] = None,
) -> plt.Figure:
    """Log-log barcode rank vs total count, coloured by ``count > threshold``.

    The annotation reads ``Cells: N`` with N the number of barcodes
    above the threshold.
    """
    theme = _resolve(theme)
    knee = prepare_knee_data(matrix, threshold, counts_per_cell)
    fig, axes = _themed_subplots(theme, _PLOT_CFG["figsize_knee"])
    ax = axes[0, 0]

    for mask, color, label in (
        (knee["above"], theme.highlight, f"> {threshold:g}"),
        (~knee["above"], theme.muted, f"≤ {threshold:g}"),
    ):
        ax.scatter(knee["rank"][mask], knee["counts"][mask], s=4, color=color,
                   edgecolors="none", label=label)
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.axhline(threshold, color=theme.text_subtle, linestyle="--", linewidth=0.8)

    _label_axes(ax, theme, "Barcode rank", "Total counts", "Knee plot")
    _annotate(ax, theme, f"Cells: {knee['n_cells']}")
    _apply_legend(ax, theme)
    fig.tight_layout()
    return fig


# ══════════════════════════════════════════════════════════════════════
# Per-cell Histograms
# ══════════════════════════════════════════════════════════════════════

def _totals(matrix, counts_per_cell: Optional[np.ndarray]) -> np.ndarray:
    if counts_per_cell is not None:
        return np.asarray(counts_per_cell)
    if matrix is None:
        raise ValueError("Either a matrix or pre-computed counts_per_cell is required.")
    return compute_counts_per_cell(matrix)


def prepare_cell_histogram(
    statistic: np.ndarray,
    counts_per_cell: np.ndarray,
    threshold: float = _PLOT_CFG["hist_threshold"],
) -> dict:
    """
    Restrict a per-cell *statistic* to cells with total count above
    *threshold*.

    Returns
    -------
    dict
        ``values`` (kept statistic), ``mean`` and ``n_cells``.
    """
    values = np.asarray(statistic)[np.asarray(counts_per_cell) > threshold]
    return {
        "values": values,
        "mean": float(values.mean()) if values.size else float("nan"),
        "n_cells": int(values.size),
    }


def _plot_histogram(hist: dict, bins: int, xlabel: str, title: str,
                    theme: PlotTheme) -> plt.Figure:
    fig, axes = _themed_subplots(theme, _PLOT_CFG["figsize_hist"])
    ax = axes[0, 0]
    ax.hist(hist["values"], bins=bins, color=theme.accent, alpha=0.85,
            edgecolor=theme.surface)
    if hist["n_cells"]:
        ax.axvline(hist["mean"], color=theme.highlight, linestyle="--", linewidth=1)
    _label_axes(ax, theme, xlabel, "Cells", title)
    _annotate(ax, theme, f"Mean: {hist['mean']:.1f}\nCells: {hist['n_cells']}")
    fig.tight_layout()
    return fig


def plot_genes_per_cell(
    matrix=None,
    threshold: float = _PLOT_CFG["hist_threshold"],
    bins: int = _PLOT_CFG["hist_bins"],
    genes_per_cell: Optional[np.ndarray] = None,
    counts_per_cell: Optional[np.ndarray] = None,
    theme: Optional[PlotTheme] = None,
) -> plt.Figure:
    """Histogram of detected genes per cell, over cells with count > threshold."""
    if genes_per_cell is None:
        if matrix is None:
            raise ValueError("Either a matrix or pre-computed genes_per_cell is required.")
        genes_per_cell = compute_genes_per_cell(matrix)
    hist = prepare_cell_histogram(genes_per_cell, _totals(matrix, counts_per_cell), threshold)
    return _plot_histogram(hist, bins, "Genes detected per cell", "Genes per cell",
                           _resolve(theme))


def plot_counts_per_cell(
    matrix=None,
    threshold: float = _PLOT_CFG["hist_threshold"],
    bins: int = _PLOT_CFG["hist_bins"],
    counts_per_cell: Optional[np.ndarray] = None,
    theme: Optional[PlotTheme] = None,
) -> plt.Figure:
    """Histogram of total counts per cell, over cells with count > threshold."""
    totals = _totals(matrix, counts_per_cell)
    hist = prepare_cell_histogram(totals, totals, threshold)
    return _plot_histogram(hist, bins, "Transcripts per cell", "Counts per cell",
                           _resolve(theme))


# ══════════════════════════════════════════════════════════════════════
# QC Violin
# ══════════════════════════════════════════════════════════════════════

def plot_qc_violin(
    obs: pd.DataFrame,
    keys: Optional[Sequence[str]] = None,
    theme: Optional[PlotTheme] = None,
) -> plt.Figure:
    """Violin plots of per-cell QC columns.

    Parameters
    ----------
    obs : pd.DataFrame
        ``adata.obs`` or ``record.meta_data``.
    keys : list[str] | None
        Columns to plot.  Defaults to whichever QC columns of either
        path are present.
    """
    theme = _resolve(theme)
    if keys is None:
        keys = [k for k in ("n_genes_by_counts", "total_counts", "pct_counts_mt",
                            "nFeature_RNA", "nCount_RNA", "percent_mt")
                if k in obs.columns]
    if not keys:
        raise ValueError("No QC columns to plot; run the QC stage first.")

    fig, axes = _themed_subplots(theme, _PLOT_CFG["figsize_qc"], ncols=len(keys))
    for ax, key in zip(axes.ravel(), keys):
        parts = ax.violinplot(obs[key].dropna().to_numpy(dtype=float),
                              showmeans=True, showmedians=True)
        for pc in parts["bodies"]:
            pc.set_facecolor(theme.accent)
            pc.set_alpha(0.7)
        for partname in ("cmeans", "cmedians", "cbars", "cmins", "cmaxes"):
            if partname in parts:
                parts[partname].set_color(theme.text_muted)
        ax.set_title(key, fontsize=theme.font_axes, color=theme.text)
        ax.set_xticks([])

    fig.suptitle("Quality control", fontsize=theme.font_title, fontweight="bold",
                 color=theme.text)
    fig.tight_layout()
    return fig


# ══════════════════════════════════════════════════════════════════════
# PCA Elbow
# ══════════════════════════════════════════════════════════════════════

def plot_pca_variance(
    variance_ratio: Sequence[float],
    n_pcs: int = 30,
    theme: Optional[PlotTheme] = None,
) -> plt.Figure:
    """Elbow plot of the variance explained by each principal component.

    *variance_ratio* is ``adata.uns["pca"]["variance_ratio"]`` or
    ``record.reductions["pca"].variance_ratio``.
    """
    theme = _resolve(theme)
    fig, axes = _themed_subplots(theme, _PLOT_CFG["figsize_elbow"])
    ax = axes[0, 0]
    ratio = np.asarray(variance_ratio)
    n = min(n_pcs, len(ratio))
    ax.bar(range(1, n + 1), ratio[:n], color=theme.accent, alpha=0.8)
    _label_axes(ax, theme, "Principal component", "Variance ratio", "PCA elbow plot")
    fig.tight_layout()
    return fig


# ══════════════════════════════════════════════════════════════════════
# Embedding
# ══════════════════════════════════════════════════════════════════════

def plot_embedding(
    coords: np.ndarray,
    values: Optional[Sequence] = None,
    title: str = "UMAP",
    theme: Optional[PlotTheme] = None,
    axis_prefix: str = "UMAP",
) -> plt.Figure:
    """2-D scatter of cells.

    Categorical *values* (clusters, cell types) get one palette colour
    per category and a legend; numeric values (pseudotime, a gene) use
    the sequential colormap with a colorbar.
    """
    theme = _resolve(theme)
    coords = np.asarray(coords)
    fig, axes = _themed_subplots(theme, _PLOT_CFG["figsize_embedding"])
    ax = axes[0, 0]
    ax.yaxis.grid(False)
    point_kw = dict(s=_PLOT_CFG["point_size"], alpha=_PLOT_CFG["point_alpha"],
                    edgecolors="none")

    if values is None:
        ax.scatter(coords[:, 0], coords[:, 1], color=theme.accent, **point_kw)
    else:
        series = pd.Series(values)
        if pd.api.types.is_numeric_dtype(series) and not isinstance(
            series.dtype, pd.CategoricalDtype
        ):
            finite = np.isfinite(series.to_numpy(dtype=float))
            ax.scatter(coords[~finite, 0], coords[~finite, 1], color=theme.muted, **point_kw)
            sc_ = ax.scatter(coords[finite, 0], coords[finite, 1],
                             c=series.to_numpy(dtype=float)[finite],
                             cmap=theme.cmap_sequential, **point_kw)
            cbar = fig.colorbar(sc_, ax=ax, shrink=0.8)
            cbar.ax.tick_params(colors=theme.text_muted, labelsize=theme.font_ticks)
        else:
            cats = series.astype("category")
            colors = theme.cluster_colors(len(cats.cat.categories))
            for color, cat in zip(colors, cats.cat.categories):
                mask = (cats == cat).to_numpy()
                ax.scatter(coords[mask, 0], coords[mask, 1], color=color,
                           label=str(cat), **point_kw)
            _apply_legend(ax, theme, markerscale=2)

    _label_axes(ax, theme, f"{axis_prefix} 1", f"{axis_prefix} 2", title)
    ax.set_xticks([])
    ax.set_yticks([])
    fig.tight_layout()
    return fig


# ══════════════════════════════════════════════════════════════════════
# Marker Genes
# ══════════════════════════════════════════════════════════════════════

def plot_marker_ranking(
    markers: pd.DataFrame,
    n_genes: int = 5,
    n_cols: int = 4,
    theme: Optional[PlotTheme] = None,
) -> plt.Figure:
    """Horizontal bar plot of top marker genes per cluster, ranked by score.

    *markers* is the table of either path (columns ``names``,
    ``scores``, ``cluster``), already sorted best-first per cluster.
    """
    theme = _resolve(theme)
    groups = list(dict.fromkeys(markers["cluster"].astype(str)))
    if not groups:
        raise ValueError("Marker table is empty.")
    n_groups = len(groups)
    n_cols = min(n_cols, n_groups)
    n_rows = (n_groups + n_cols - 1) // n_cols
    colors = theme.cluster_colors(n_groups)

    fig, axes = _themed_subplots(theme, (3.5 * n_cols, 3 * n_rows), nrows=n_rows, ncols=n_cols)
    for idx, group in enumerate(groups):
        ax = axes[divmod(idx, n_cols)]
        ax.yaxis.grid(False)
        df = markers[markers["cluster"].astype(str) == group].head(n_genes)
        ax.barh(range(len(df)), df["scores"].to_numpy(dtype=float),
                color=colors[idx], alpha=0.85)
        ax.set_yticks(range(len(df)))
        ax.set_yticklabels(df["names"].astype(str).to_numpy(), fontsize=7,
                           color=theme.text_muted)
        ax.invert_yaxis()
        ax.set_title(group, fontsize=theme.font_axes, fontweight="bold", color=theme.text)
        ax.set_xlabel("Score", fontsize=8, color=theme.text_muted)

    # Hide unused axes
    for idx in range(n_groups, n_rows * n_cols):
        axes[divmod(idx, n_cols)].axis("off")

    fig.tight_layout(rect=[0, 0, 1, 0.95])
    fig.suptitle("Top marker genes", fontsize=theme.font_title, fontweight="bold",
                 color=theme.text, y=0.98)
    return fig
