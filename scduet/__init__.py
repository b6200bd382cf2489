"""
scduet -- One scRNA-seq walkthrough, two toolkits.

The PBMC 3k workflow expressed twice: once on AnnData with scanpy, once
on the genes × cells CellAssaySet record. Both paths share the QC,
filtering, plotting and cell-type rules so their results can be compared
cell by cell.

Usage:
    from scduet import run_walkthrough
    from scduet.scrna_pipeline import run_scrna_pipeline
    from scduet.assay_pipeline import run_assay_pipeline
"""

from scduet.records import (
    Assay,
    CellAssaySet,
    Reduction,
    stage,
    stage_history,
    verify_stage_order,
)
from scduet.errors import (
    DuplicateFeatureNameError,
    EmptyFilterResultError,
    StageOrderError,
)
from scduet.protocols import ProgressCallback
from scduet.config import THEME_PRESETS, PlotTheme, get_theme

# --- Lazy imports for the scanpy-backed modules --------------------
_LAZY = {
    "run_scrna_pipeline": "scduet.scrna_pipeline",
    "run_assay_pipeline": "scduet.assay_pipeline",
    "read_10x_anndata": "scduet.data_io",
    "read_10x_assay_set": "scduet.data_io",
    "fetch_10x_dataset": "scduet.data_io",
    "assay_set_to_anndata": "scduet.bridge",
    "anndata_to_assay_set": "scduet.bridge",
    "annotate_cell_types": "scduet.classification",
    "build_run_audit": "scduet.audit",
    "format_audit_text": "scduet.audit",
    "run_walkthrough": "scduet.walkthrough",
    "compare_partitions": "scduet.walkthrough",
}


def __getattr__(name: str):
    if name in _LAZY:
        import importlib
        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module 'scduet' has no attribute {name!r}")


__all__ = [
    "Assay",
    "CellAssaySet",
    "Reduction",
    "stage",
    "stage_history",
    "verify_stage_order",
    "DuplicateFeatureNameError",
    "EmptyFilterResultError",
    "StageOrderError",
    "ProgressCallback",
    "THEME_PRESETS",
    "PlotTheme",
    "get_theme",
    *_LAZY,
]
