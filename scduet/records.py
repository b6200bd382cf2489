"""
scduet/records.py -- Versioned genes × cells record and stage declarations.

The assay record (``CellAssaySet``) is the second in-memory
representation of a dataset, next to ``anndata.AnnData``.  It holds one
or more named assays (genes × cells), a cell-metadata table, and named
optional slots that pipeline stages fill in one after another.

Every stage in both pipelines is declared with :func:`stage`, naming
the fields it reads and the fields it writes.  Field names use the form
``"<slot>:<key>"``:

=================  =============================================
AnnData            ``X``, ``raw``, ``layers:<k>``, ``obs:<k>``,
                   ``var:<k>``, ``obsm:<k>``, ``obsp:<k>``,
                   ``uns:<k>``
CellAssaySet       ``assay:counts``, ``assay:data``,
                   ``assay:scale_data``, ``assay:variable_features``,
                   ``meta_data:<k>``, ``meta_features:<k>``,
                   ``reductions:<k>``, ``graphs:<k>``, ``misc:<k>``
=================  =============================================

``verify_stage_order`` checks a planned sequence of stages without
running anything; the decorator repeats the check at call time against
the actual object and records the stage in the object's history.
"""

from __future__ import annotations

import copy
import functools
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from scduet.errors import DuplicateFeatureNameError, StageOrderError


# ══════════════════════════════════════════════════════════════════════
# Record types
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Reduction:
    """A low-dimensional embedding of the cells.

    Attributes
    ----------
    key : str
        Reduction name (``"pca"``, ``"umap"``).
    embeddings : np.ndarray
        Cells × components coordinates.
    loadings : np.ndarray or None
        Features × components loadings (linear reductions only).
    features : list[str] or None
        Feature names matching the rows of ``loadings``.
    stdev : np.ndarray or None
        Standard deviation captured by each component.
    variance_ratio : np.ndarray or None
        Fraction of variance explained by each component.
    """

    key: str
    embeddings: np.ndarray
    loadings: Optional[np.ndarray] = None
    features: Optional[list[str]] = None
    stdev: Optional[np.ndarray] = None
    variance_ratio: Optional[np.ndarray] = None

    def subset_cells(self, mask: np.ndarray) -> Reduction:
        return Reduction(
            key=self.key,
            embeddings=self.embeddings[mask],
            loadings=self.loadings,
            features=self.features,
            stdev=self.stdev,
            variance_ratio=self.variance_ratio,
        )


@dataclass
class Assay:
    """One named count collection, genes × cells.

    ``counts`` is the raw integer matrix and never changes after
    construction (apart from subsetting); ``data`` and ``scale_data``
    are derived by the normalization and scaling stages.
    """

    counts: sparse.csc_matrix
    meta_features: pd.DataFrame
    data: Optional[sparse.csc_matrix] = None
    scale_data: Optional[np.ndarray] = None
    scaled_features: Optional[list[str]] = None
    variable_features: Optional[list[str]] = None

    def __post_init__(self):
        if not sparse.issparse(self.counts):
            self.counts = sparse.csc_matrix(self.counts)
        elif not sparse.isspmatrix_csc(self.counts):
            self.counts = self.counts.tocsc()
        if self.counts.shape[0] != self.meta_features.shape[0]:
            raise ValueError(
                f"Feature metadata has {self.meta_features.shape[0]} rows but the "
                f"count matrix has {self.counts.shape[0]} features."
            )

    @property
    def n_features(self) -> int:
        return self.counts.shape[0]

    @property
    def feature_names(self) -> pd.Index:
        return self.meta_features.index

    def set_feature_names(self, names: Iterable[str]) -> None:
        """Assign new feature identifiers.

        Raises
        ------
        DuplicateFeatureNameError
            If *names* contains duplicates.  Nothing is changed.
        ValueError
            If the number of names does not match the feature count.
        """
        index = pd.Index([str(n) for n in names])
        if len(index) != self.n_features:
            raise ValueError(
                f"Got {len(index)} feature names for {self.n_features} features."
            )
        if index.has_duplicates:
            raise DuplicateFeatureNameError(sorted(set(index[index.duplicated()])))

        rename = dict(zip(self.meta_features.index, index))
        self.meta_features.index = index
        if self.variable_features is not None:
            self.variable_features = [rename[f] for f in self.variable_features]
        if self.scaled_features is not None:
            self.scaled_features = [rename[f] for f in self.scaled_features]

    def subset(
        self,
        cells: Optional[np.ndarray] = None,
        features: Optional[np.ndarray] = None,
    ) -> Assay:
        """Return a new assay restricted to *cells* / *features* (boolean masks)."""
        n_cells = self.counts.shape[1]
        cell_mask = np.ones(n_cells, dtype=bool) if cells is None else np.asarray(cells, dtype=bool)
        feat_mask = (
            np.ones(self.n_features, dtype=bool) if features is None
            else np.asarray(features, dtype=bool)
        )

        meta = self.meta_features.loc[feat_mask].copy()
        kept = set(meta.index)

        data = None
        if self.data is not None:
            data = self.data[feat_mask][:, cell_mask].tocsc()

        scale_data = None
        scaled_features = None
        if self.scale_data is not None and self.scaled_features is not None:
            rows = np.array([f in kept for f in self.scaled_features], dtype=bool)
            scale_data = self.scale_data[rows][:, cell_mask]
            scaled_features = [f for f in self.scaled_features if f in kept]

        variable = None
        if self.variable_features is not None:
            variable = [f for f in self.variable_features if f in kept]

        return Assay(
            counts=self.counts[feat_mask][:, cell_mask].tocsc(),
            meta_features=meta,
            data=data,
            scale_data=scale_data,
            scaled_features=scaled_features,
            variable_features=variable,
        )


@dataclass
class CellAssaySet:
    """Genes × cells dataset with named assays and incrementally filled slots.

    Attributes
    ----------
    assays : dict[str, Assay]
        Named assays.  All share the cell axis described by ``meta_data``.
    meta_data : pd.DataFrame
        One row per cell (index = barcodes).
    active_assay : str
        Assay used when a stage is not told otherwise.
    project : str
        Free-text project label.
    reductions : dict[str, Reduction]
        Filled by the PCA / UMAP stages.
    graphs : dict[str, sparse.csr_matrix]
        Cell × cell graphs filled by the neighbour stage.
    misc : dict
        Anything else a stage produces (marker tables, trajectory graph).
    version : int
        Incremented every time a stage runs on this record.
    history : list[str]
        Names of the stages applied so far, in order.
    """

    assays: dict[str, Assay]
    meta_data: pd.DataFrame
    active_assay: str = "RNA"
    project: str = "scduet"
    reductions: dict[str, Reduction] = field(default_factory=dict)
    graphs: dict[str, sparse.csr_matrix] = field(default_factory=dict)
    misc: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    history: list[str] = field(default_factory=list)

    def __post_init__(self):
        self.validate()

    # ── Invariants ───────────────────────────────────────────────────

    def validate(self) -> None:
        """Check the dimension invariants between assays and metadata.

        Raises
        ------
        ValueError
            If the active assay is missing or a dimension disagrees.
        """
        if self.active_assay not in self.assays:
            raise ValueError(
                f"Active assay '{self.active_assay}' not found. "
                f"Available assays: {list(self.assays)}"
            )
        n_cells = self.meta_data.shape[0]
        for name, assay in self.assays.items():
            if assay.counts.shape[1] != n_cells:
                raise ValueError(
                    f"Assay '{name}' has {assay.counts.shape[1]} cells but the "
                    f"cell metadata has {n_cells} rows."
                )
        for key, red in self.reductions.items():
            if red.embeddings.shape[0] != n_cells:
                raise ValueError(
                    f"Reduction '{key}' has {red.embeddings.shape[0]} rows for {n_cells} cells."
                )

    # ── Accessors ────────────────────────────────────────────────────

    def assay(self, name: Optional[str] = None) -> Assay:
        """Return assay *name*, or the active assay when *name* is None."""
        name = self.active_assay if name is None else name
        if name not in self.assays:
            raise ValueError(f"Assay '{name}' not found. Available assays: {list(self.assays)}")
        return self.assays[name]

    @property
    def n_cells(self) -> int:
        return self.meta_data.shape[0]

    @property
    def n_features(self) -> int:
        return self.assay().n_features

    @property
    def cell_names(self) -> pd.Index:
        return self.meta_data.index

    @property
    def feature_names(self) -> pd.Index:
        return self.assay().feature_names

    def __repr__(self) -> str:
        return (
            f"CellAssaySet(project={self.project!r}, {self.n_features} features × "
            f"{self.n_cells} cells, assays={list(self.assays)}, "
            f"active={self.active_assay!r}, reductions={list(self.reductions)}, "
            f"version={self.version})"
        )

    # ── Derivation ───────────────────────────────────────────────────

    def copy(self) -> CellAssaySet:
        return copy.deepcopy(self)

    def subset(
        self,
        cells: Optional[np.ndarray] = None,
        features: Optional[np.ndarray] = None,
    ) -> CellAssaySet:
        """Return a new record restricted to the given boolean masks.

        *features* applies to the active assay only; other assays keep
        their features and lose the dropped cells.
        """
        cell_mask = (
            np.ones(self.n_cells, dtype=bool) if cells is None
            else np.asarray(cells, dtype=bool)
        )
        assays = {
            name: assay.subset(
                cells=cell_mask,
                features=features if name == self.active_assay else None,
            )
            for name, assay in self.assays.items()
        }
        graphs = {
            key: g[cell_mask][:, cell_mask].tocsr() for key, g in self.graphs.items()
        }
        return CellAssaySet(
            assays=assays,
            meta_data=self.meta_data.loc[cell_mask].copy(),
            active_assay=self.active_assay,
            project=self.project,
            reductions={k: r.subset_cells(cell_mask) for k, r in self.reductions.items()},
            graphs=graphs,
            misc=copy.deepcopy(self.misc),
            version=self.version,
            history=list(self.history),
        )


# ══════════════════════════════════════════════════════════════════════
# Field lookup
# ══════════════════════════════════════════════════════════════════════

def _split_field(name: str) -> tuple[str, Optional[str]]:
    slot, _, key = name.partition(":")
    return slot, (key or None)


def _anndata_has(adata: ad.AnnData, slot: str, key: Optional[str]) -> bool:
    if slot == "X":
        return adata.X is not None
    if slot == "raw":
        return adata.raw is not None
    container = {
        "layers": adata.layers,
        "obs": adata.obs,
        "var": adata.var,
        "obsm": adata.obsm,
        "obsp": adata.obsp,
        "uns": adata.uns,
    }.get(slot)
    if container is None:
        raise ValueError(f"Unknown AnnData slot '{slot}'.")
    return key in container


def _record_has(record: CellAssaySet, slot: str, key: Optional[str]) -> bool:
    if slot == "assay":
        return getattr(record.assay(), key, None) is not None
    if slot == "meta_data":
        return key in record.meta_data.columns
    if slot == "meta_features":
        return key in record.assay().meta_features.columns
    if slot in ("reductions", "graphs", "misc"):
        return key in getattr(record, slot)
    raise ValueError(f"Unknown CellAssaySet slot '{slot}'.")


def has_field(obj, name: str) -> bool:
    """Return True if *obj* (AnnData or CellAssaySet) holds field *name*."""
    slot, key = _split_field(name)
    if isinstance(obj, CellAssaySet):
        return _record_has(obj, slot, key)
    if isinstance(obj, ad.AnnData):
        return _anndata_has(obj, slot, key)
    raise TypeError(f"Unsupported object type: {type(obj).__name__}")


# ══════════════════════════════════════════════════════════════════════
# Stage declarations
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Stage:
    """Static description of one pipeline stage."""

    name: str
    reads: tuple[str, ...] = ()
    writes: tuple[str, ...] = ()


def _mark_applied(obj, name: str) -> None:
    if isinstance(obj, CellAssaySet):
        obj.version += 1
        obj.history.append(name)
    elif isinstance(obj, ad.AnnData):
        meta = dict(obj.uns.get("scduet", {}))
        meta["history"] = [str(h) for h in meta.get("history", [])] + [name]
        meta["version"] = int(meta.get("version", 0)) + 1
        obj.uns["scduet"] = meta


def stage(
    reads: Iterable[str] = (),
    writes: Iterable[str] = (),
    name: Optional[str] = None,
) -> Callable:
    """Declare a pipeline stage.

    The decorated function takes the record (AnnData or CellAssaySet) as
    its first argument.  Before it runs, every field in *reads* must be
    present on the record, otherwise :class:`StageOrderError` is raised.
    After it runs, the stage is appended to the history of the returned
    record (or of the input record when the function returns something
    else, e.g. a marker table).

    The declaration is available as ``func.stage``.
    """
    def decorator(func: Callable) -> Callable:
        declared = Stage(name or func.__name__, tuple(reads), tuple(writes))

        @functools.wraps(func)
        def wrapper(obj, *args, **kwargs):
            missing = [f for f in declared.reads if not has_field(obj, f)]
            if missing:
                raise StageOrderError(declared.name, missing)
            result = func(obj, *args, **kwargs)
            target = result if isinstance(result, (ad.AnnData, CellAssaySet)) else obj
            _mark_applied(target, declared.name)
            return result

        wrapper.stage = declared
        return wrapper

    return decorator


def verify_stage_order(
    stages: Iterable[Stage],
    initial: Iterable[str] = (),
) -> set[str]:
    """Check that each stage only reads fields available before it runs.

    Parameters
    ----------
    stages : iterable of Stage
        Planned stages, in execution order.
    initial : iterable of str
        Fields present on the record before the first stage.

    Returns
    -------
    set[str]
        Fields available after the last stage.

    Raises
    ------
    StageOrderError
        For the first stage that reads an unavailable field.
    """
    available = set(initial)
    for declared in stages:
        missing = [f for f in declared.reads if f not in available]
        if missing:
            raise StageOrderError(declared.name, missing)
        available.update(declared.writes)
    return available


def stage_history(obj) -> list[str]:
    """Return the names of the stages applied to *obj* so far."""
    if isinstance(obj, CellAssaySet):
        return list(obj.history)
    return [str(h) for h in obj.uns.get("scduet", {}).get("history", [])]
