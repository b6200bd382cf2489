"""
classification.py — Rule-based cell-type labelling from marker genes.

Each cell is labelled from the normalized expression of five lineage
markers gated by a pan-T-cell marker:

    ========  ==========  ==============
    label     CD3E gate   lineage marker
    ========  ==========  ==============
    B         absent      MS4A1
    CD4 T     present     CD4
    CD8 T     present     CD8A
    NK        absent      GNLY
    Monocyte  absent      CD14
    ========  ==========  ==============

"Present" means expression > 0 and "absent" means expression == 0.
Every cell starts as "Unknown"; the rules are applied in the order
above and each one overwrites the label of every cell it matches, so
for a cell matching several rules the LAST matching rule wins (a cell
with MS4A1 and CD14 but no CD3E ends up "Monocyte").

Functions
---------
classify_cells(expression, rules)
    → Label each cell (rows of a cells × genes frame).

expression_frame(obj, genes)
    → Normalized expression of *genes* from AnnData or CellAssaySet.

annotate_cell_types(obj, rules)
    → Write the labels into ``obs`` / ``meta_data``.

Example
-------
    from scduet.classification import annotate_cell_types

    adata = annotate_cell_types(adata)
    adata.obs["cell_type"].value_counts()
"""

from __future__ import annotations

from typing import Optional, Sequence, Union

import anndata as ad
import pandas as pd
import scanpy as sc

from scduet.config import CELL_TYPE_MARKERS
from scduet.records import CellAssaySet

_M = CELL_TYPE_MARKERS

# Evaluation order matters: later rules overwrite earlier ones.
CELL_TYPE_RULES: list[dict] = [
    {"label": "B", "gate": _M["pan_t"], "gate_present": False, "marker": _M["b_cell"]},
    {"label": "CD4 T", "gate": _M["pan_t"], "gate_present": True, "marker": _M["cd4"]},
    {"label": "CD8 T", "gate": _M["pan_t"], "gate_present": True, "marker": _M["cd8"]},
    {"label": "NK", "gate": _M["pan_t"], "gate_present": False, "marker": _M["nk"]},
    {"label": "Monocyte", "gate": _M["pan_t"], "gate_present": False, "marker": _M["monocyte"]},
]

UNKNOWN_LABEL: str = _M["unknown_label"]

CELL_TYPE_LABELS: list[str] = [r["label"] for r in CELL_TYPE_RULES] + [UNKNOWN_LABEL]


def rule_genes(rules: Sequence[dict] = CELL_TYPE_RULES) -> list[str]:
    """Genes read by *rules*, in first-use order."""
    genes: list[str] = []
    for rule in rules:
        for gene in (rule["gate"], rule["marker"]):
            if gene not in genes:
                genes.append(gene)
    return genes


def classify_cells(
    expression: pd.DataFrame,
    rules: Sequence[dict] = CELL_TYPE_RULES,
    unknown_label: str = UNKNOWN_LABEL,
) -> pd.Series:
    """
    Label each cell with the last rule it matches.

    Parameters
    ----------
    expression : pd.DataFrame
        Normalized expression, cells × genes (columns = gene names).
    rules : sequence of dict
        Ordered rules with keys ``label``, ``gate``, ``gate_present``
        and ``marker``.
    unknown_label : str
        Label of cells matching no rule.

    Returns
    -------
    pd.Series
        One label per cell (index = ``expression.index``).

    Raises
    ------
    ValueError
        If a gene used by the rules is not a column of *expression*.
    """
    missing = [g for g in rule_genes(rules) if g not in expression.columns]
    if missing:
        raise ValueError(
            f"Marker gene(s) not found in the expression matrix: {', '.join(missing)}"
        )

    labels = pd.Series(unknown_label, index=expression.index, dtype=object)
    for rule in rules:
        gate_on = expression[rule["gate"]] > 0
        if not rule["gate_present"]:
            gate_on = ~gate_on
        mask = gate_on & (expression[rule["marker"]] > 0)
        labels[mask] = rule["label"]

    return labels


def expression_frame(
    obj: Union[ad.AnnData, CellAssaySet],
    genes: Sequence[str],
    assay: Optional[str] = None,
) -> pd.DataFrame:
    """
    Normalized expression of *genes* as a cells × genes DataFrame.

    AnnData: read from ``adata.raw`` when present (the scaling stage
    keeps the log-normalized full matrix there), else from ``X``.
    CellAssaySet: read from ``assay.data``.

    Raises
    ------
    ValueError
        If a gene is absent, or the record has not been normalized yet.
    """
    genes = list(genes)
    if isinstance(obj, CellAssaySet):
        source = obj.assay(assay)
        if source.data is None:
            raise ValueError("Assay has no normalized data; run normalize_assay first.")
        rows = source.feature_names.get_indexer(genes)
        missing = [g for g, r in zip(genes, rows) if r < 0]
        if missing:
            raise ValueError(f"Gene(s) not found in the assay: {', '.join(missing)}")
        values = source.data[rows].T.toarray()
        return pd.DataFrame(values, index=obj.cell_names.copy(), columns=genes)

    use_raw = obj.raw is not None
    var_names = obj.raw.var_names if use_raw else obj.var_names
    missing = [g for g in genes if g not in var_names]
    if missing:
        raise ValueError(f"Gene(s) not found in the AnnData: {', '.join(missing)}")
    return sc.get.obs_df(obj, keys=genes, use_raw=use_raw)


def annotate_cell_types(
    obj: Union[ad.AnnData, CellAssaySet],
    rules: Sequence[dict] = CELL_TYPE_RULES,
    key_added: str = _M["key_added"],
) -> Union[ad.AnnData, CellAssaySet]:
    """
    Classify every cell and store the labels as a categorical column
    ``key_added`` of ``adata.obs`` / ``record.meta_data``.
    """
    labels = classify_cells(expression_frame(obj, rule_genes(rules)), rules)
    categories = [r["label"] for r in rules if r["label"] in set(labels)]
    if UNKNOWN_LABEL in set(labels):
        categories.append(UNKNOWN_LABEL)
    column = pd.Categorical(labels.to_numpy(), categories=list(dict.fromkeys(categories)))

    table = obj.meta_data if isinstance(obj, CellAssaySet) else obj.obs
    table[key_added] = column
    return obj
