"""
scduet/audit.py -- Reproducibility log for a walkthrough run.

Records what is needed to repeat a run of either pipeline: the
parameter overrides, installed library versions, data dimensions before
and after filtering, the stage history, the fixed seeds and a summary
of the results.

Functions
---------
get_library_versions()
    Installed version of every library the pipelines call.

build_run_audit(obj, params, elapsed_seconds)
    JSON-safe audit dict for an AnnData or a CellAssaySet.

format_audit_text(audit)
    Plain-text rendering of an audit dict.
"""

from __future__ import annotations

import datetime
import platform
from importlib import metadata
from typing import Any, Optional

import anndata as ad
import numpy as np
import pandas as pd

from scduet.config import ASSAY_CONFIG, SCRNA_CONFIG
from scduet.records import CellAssaySet, stage_history

# import name -> distribution name on the package index
AUDITED_LIBRARIES: dict[str, str] = {
    "scanpy": "scanpy",
    "anndata": "anndata",
    "numpy": "numpy",
    "scipy": "scipy",
    "pandas": "pandas",
    "sklearn": "scikit-learn",
    "umap": "umap-learn",
    "igraph": "igraph",
    "pydeseq2": "pydeseq2",
    "matplotlib": "matplotlib",
    "requests": "requests",
}


# ══════════════════════════════════════════════════════════════════════
# Library versions
# ══════════════════════════════════════════════════════════════════════

def get_library_versions() -> dict[str, str]:
    """``{import name: version}`` read from the installed distributions.

    A library without an installed distribution maps to ``"not installed"``.
    """
    versions: dict[str, str] = {}
    for module, dist in AUDITED_LIBRARIES.items():
        try:
            versions[module] = metadata.version(dist)
        except metadata.PackageNotFoundError:
            versions[module] = "not installed"
    return versions


# ══════════════════════════════════════════════════════════════════════
# JSON conversion
# ══════════════════════════════════════════════════════════════════════

def _to_json(value: Any) -> Any:
    """Convert numpy / pandas values inside *value* to plain Python."""
    if isinstance(value, dict):
        return {str(k): _to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_json(v) for v in value]
    if isinstance(value, np.ndarray):
        return _to_json(value.tolist())
    if isinstance(value, (pd.Series, pd.Index)):
        return _to_json(value.tolist())
    if isinstance(value, np.generic):
        return value.item()
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    return str(value)


# ══════════════════════════════════════════════════════════════════════
# Audit builder
# ══════════════════════════════════════════════════════════════════════

_ANNDATA_STATS = ("filtering_stats", "hvg_stats", "leiden_stats", "pseudotime_stats")
_RECORD_STATS = ("filtering_stats", "variable_feature_stats", "louvain_stats",
                 "pseudotime_stats")


def _seed(config: dict, params: Optional[dict], section: str):
    """Seed a pipeline step actually used: the override if given, else the default."""
    overrides = (params or {}).get(section, {})
    return overrides.get("random_state", config[section]["random_state"])


def build_run_audit(
    obj,
    params: Optional[dict] = None,
    elapsed_seconds: float | None = None,
) -> dict:
    """Build a JSON-serializable audit log from a completed pipeline run.

    Parameters
    ----------
    obj : AnnData or CellAssaySet
        The object returned by ``run_scrna_pipeline()`` /
        ``run_assay_pipeline()``.
    params : dict, optional
        The ``params`` dict passed to the pipeline.
    elapsed_seconds : float, optional
        Total wall-clock time of the pipeline run.

    Returns
    -------
    dict
        Complete audit log, safe for ``json.dumps()``.
    """
    if isinstance(obj, CellAssaySet):
        store = obj.misc
        stat_keys = _RECORD_STATS
        cluster_stats = store.get("louvain_stats", {})
        n_cells, n_genes = obj.n_cells, obj.n_features
        has_markers = "markers" in store
        pipeline = "assay_record"
        seeds = {
            f"{name}_random_state": _seed(ASSAY_CONFIG, params, name)
            for name in ("pca", "louvain", "umap")
        }
    elif isinstance(obj, ad.AnnData):
        store = obj.uns
        stat_keys = _ANNDATA_STATS
        cluster_stats = store.get("leiden_stats", {})
        n_cells, n_genes = obj.n_obs, obj.n_vars
        has_markers = "rank_genes_groups" in store
        pipeline = "scanpy"
        seeds = {
            f"{name}_random_state": _seed(SCRNA_CONFIG, params, name)
            for name in ("pca", "umap", "leiden")
        }
    else:
        raise TypeError(f"Unsupported object type: {type(obj).__name__}")

    # ── Collect per-step stats already stored on the object ───────
    step_stats = {key: dict(store[key]) for key in stat_keys if key in store}
    filtering = store.get("filtering_stats", {})

    audit = {
        "scduet": {
            "pipeline": pipeline,
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "stage_history": stage_history(obj),
        },
        "environment": {
            "python": platform.python_version(),
            "platform": platform.platform(),
            "libraries": get_library_versions(),
        },
        "input_data": {
            "n_cells_before_filter": filtering.get("cells_before", "unknown"),
            "n_genes_before_filter": filtering.get("genes_before", "unknown"),
        },
        "parameters": params or {},
        "seeds": seeds,
        "execution": {
            "total_seconds": elapsed_seconds,
            "step_stats": step_stats,
        },
        "results_summary": {
            "n_cells_final": int(n_cells),
            "n_genes_final": int(n_genes),
            "n_clusters": int(cluster_stats.get("n_clusters", 0)),
            "has_marker_genes": has_markers,
        },
    }
    return _to_json(audit)


# ══════════════════════════════════════════════════════════════════════
# Text report
# ══════════════════════════════════════════════════════════════════════

def _render(lines: list[str], value: Any, depth: int) -> None:
    pad = "  " * depth
    for key, item in value.items():
        if isinstance(item, dict):
            lines.append(f"{pad}{key}:")
            _render(lines, item, depth + 1)
        else:
            lines.append(f"{pad}{key}: {item}")


def format_audit_text(audit: dict) -> str:
    """Render *audit* as plain text, one ``key: value`` per line.

    Meant for pasting into a lab notebook or a methods section.
    """
    rule = "=" * 60
    meta = audit.get("scduet", {})
    lines = [
        rule,
        "scduet -- Run Audit Log",
        rule,
        "",
        f"Pipeline : {meta.get('pipeline', 'unknown')}",
        f"Timestamp: {meta.get('timestamp', 'unknown')}",
    ]
    if meta.get("stage_history"):
        lines.append(f"Stages   : {' → '.join(meta['stage_history'])}")

    for title, key in (
        ("Environment", "environment"),
        ("Input Data", "input_data"),
        ("Parameters", "parameters"),
        ("Seeds", "seeds"),
    ):
        lines += ["", f"--- {title} ---"]
        _render(lines, audit.get(key, {}), 1)

    execution = audit.get("execution", {})
    lines += ["", "--- Execution ---"]
    if execution.get("total_seconds") is not None:
        lines.append(f"  Total time: {execution['total_seconds']:.1f}s")
    if execution.get("step_stats"):
        lines.append("  Step statistics:")
        _render(lines, execution["step_stats"], 2)

    lines += ["", "--- Results Summary ---"]
    _render(lines, audit.get("results_summary", {}), 1)
    lines += ["", rule]
    return "\n".join(lines)
