"""Tests for the rule-based cell-type classifier."""

import pandas as pd
import pytest

from scduet import assay_pipeline, scrna_pipeline
from scduet.classification import (
    CELL_TYPE_LABELS,
    CELL_TYPE_RULES,
    UNKNOWN_LABEL,
    annotate_cell_types,
    classify_cells,
    expression_frame,
    rule_genes,
)

pytestmark = pytest.mark.unit


def _cells(**rows) -> pd.DataFrame:
    """One row per keyword: ``name={gene: value}``; unset genes are 0."""
    genes = rule_genes()
    return pd.DataFrame(
        [[rows[name].get(g, 0.0) for g in genes] for name in rows],
        index=list(rows), columns=genes,
    )


def test_six_possible_labels():
    assert len(CELL_TYPE_LABELS) == 6
    assert CELL_TYPE_LABELS[-1] == UNKNOWN_LABEL


def test_single_rule_matches():
    expr = _cells(
        b={"MS4A1": 1.2},
        cd4={"CD3E": 2.0, "CD4": 1.0},
        cd8={"CD3E": 2.0, "CD8A": 0.5},
        nk={"GNLY": 3.0},
        mono={"CD14": 1.5},
        none={},
        t_no_lineage={"CD3E": 1.0},
    )
    labels = classify_cells(expr)
    assert labels.to_dict() == {
        "b": "B", "cd4": "CD4 T", "cd8": "CD8 T", "nk": "NK",
        "mono": "Monocyte", "none": "Unknown", "t_no_lineage": "Unknown",
    }


def test_last_matching_rule_wins():
    labels = classify_cells(_cells(cell={"MS4A1": 1.0, "CD14": 1.0}))
    assert labels["cell"] == "Monocyte"

    labels = classify_cells(_cells(cell={"CD3E": 1.0, "CD4": 1.0, "CD8A": 1.0}))
    assert labels["cell"] == "CD8 T"


def test_gate_blocks_lineage_marker():
    # CD3E present: B / NK / Monocyte rules cannot fire.
    labels = classify_cells(_cells(cell={"CD3E": 1.0, "MS4A1": 1.0, "CD14": 1.0}))
    assert labels["cell"] == "Unknown"


def test_deterministic_and_total(adata):
    adata = scrna_pipeline.normalize_data(adata)
    expr = expression_frame(adata, rule_genes())
    first = classify_cells(expr)
    second = classify_cells(expr)

    pd.testing.assert_series_equal(first, second)
    assert len(first) == adata.n_obs
    assert set(first) <= set(CELL_TYPE_LABELS)


def test_missing_marker_gene_raises():
    expr = _cells(cell={}).drop(columns=["GNLY"])
    with pytest.raises(ValueError, match="GNLY"):
        classify_cells(expr)


def test_custom_rules():
    rules = [{"label": "X", "gate": "A", "gate_present": True, "marker": "B"}]
    expr = pd.DataFrame({"A": [1.0, 0.0], "B": [1.0, 1.0]}, index=["c1", "c2"])
    assert classify_cells(expr, rules).tolist() == ["X", "Unknown"]


def test_both_representations_agree(adata, record):
    adata = scrna_pipeline.normalize_data(adata)
    record = assay_pipeline.normalize_assay(record)

    annotate_cell_types(adata)
    annotate_cell_types(record)

    assert adata.obs["cell_type"].dtype == "category"
    assert list(adata.obs["cell_type"].astype(str)) == list(
        record.meta_data["cell_type"].astype(str)
    )


def test_synthetic_populations_labelled(adata):
    adata = scrna_pipeline.normalize_data(adata)
    annotate_cell_types(adata)
    labels = adata.obs["cell_type"].astype(str)
    # Population 1 expresses only MS4A1, population 2 CD14 + GNLY.
    assert (labels.iloc[30:60] == "B").mean() > 0.9
    assert (labels.iloc[60:90] == "Monocyte").mean() > 0.9


def test_record_needs_normalized_data(record):
    with pytest.raises(ValueError, match="normalized"):
        expression_frame(record, rule_genes(CELL_TYPE_RULES))
