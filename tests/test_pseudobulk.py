"""Tests for pseudobulk aggregation and the DESeq2 condition comparison."""

import numpy as np
import pandas as pd
import pytest

from scduet.pseudobulk import (
    build_deseq_dataset,
    compare_assay_conditions,
    compute_contrast,
    pseudobulk_counts,
    run_deseq2,
)
from scduet.records import stage_history

pytestmark = pytest.mark.unit

SAMPLES = [f"s{i}" for i in range(6)]


def _annotate(meta: pd.DataFrame) -> None:
    idx = np.arange(len(meta)) % 6
    meta["sample"] = [SAMPLES[i] for i in idx]
    meta["condition"] = np.where(idx < 3, "control", "treated")


@pytest.fixture
def annotated_record(record):
    _annotate(record.meta_data)
    return record


def test_pseudobulk_sums_per_sample(annotated_record, synthetic_counts):
    counts, _, genes = synthetic_counts
    counts_df, metadata_df = pseudobulk_counts(annotated_record)

    assert counts_df.shape == (len(genes), 6)
    assert list(counts_df.index) == genes
    expected = counts[np.arange(len(counts)) % 6 == 4].sum(axis=0)
    np.testing.assert_array_equal(counts_df["s4"].to_numpy(), expected)
    assert counts_df.dtypes.unique().tolist() == [np.dtype("int64")]
    assert metadata_df.loc["s0", "condition"] == "control"
    assert metadata_df.loc["s5", "condition"] == "treated"


def test_anndata_and_record_aggregate_identically(adata, annotated_record):
    _annotate(adata.obs)
    from_adata, _ = pseudobulk_counts(adata)
    from_record, _ = pseudobulk_counts(annotated_record)
    pd.testing.assert_frame_equal(from_adata, from_record)


def test_missing_column_raises(record):
    with pytest.raises(ValueError, match="sample"):
        pseudobulk_counts(record)


def test_sample_spanning_conditions_raises(annotated_record):
    annotated_record.meta_data.iloc[0, annotated_record.meta_data.columns.get_loc("condition")] = "treated"
    with pytest.raises(ValueError, match="more than one condition"):
        pseudobulk_counts(annotated_record)


def test_small_libraries_dropped(annotated_record):
    counts_df, metadata_df = pseudobulk_counts(annotated_record, min_library_size=10**9)
    assert counts_df.shape[1] == 0
    assert metadata_df.empty


def test_unknown_reference_level(annotated_record):
    counts_df, metadata_df = pseudobulk_counts(annotated_record)
    with pytest.raises(ValueError, match="Reference level"):
        build_deseq_dataset(counts_df, metadata_df, "condition", "untreated")


def test_unknown_test_level(annotated_record):
    _, metadata_df = pseudobulk_counts(annotated_record)
    # the level check runs before any model is touched
    with pytest.raises(ValueError, match="Test level"):
        compute_contrast(None, metadata_df, "condition", "control", test_level="mutant")


def test_anndata_subset_to_variable_genes_raises(adata):
    _annotate(adata.obs)
    adata.raw = adata
    subset = adata[:, :20].copy()
    with pytest.raises(ValueError, match="scale_data"):
        pseudobulk_counts(subset)


@pytest.mark.integration
def test_deseq2_contrast(annotated_record):
    counts_df, metadata_df = pseudobulk_counts(annotated_record)
    dds = build_deseq_dataset(counts_df, metadata_df, "condition", "control", n_cpus=1)

    steps = []
    dds, elapsed = run_deseq2(dds, progress_callback=lambda i, n, name: steps.append(i))
    assert steps == [0, 1]
    assert elapsed >= 0

    results, test_level = compute_contrast(dds, metadata_df, "condition", "control", shrink=False)
    assert test_level == "treated"
    assert {"baseMean", "log2FoldChange", "pvalue", "padj"} <= set(results.columns)
    assert len(results) == len(counts_df)
    assert results.attrs["shrinkage_applied"] is False
    assert results["significant"].dtype == bool
    padj = results["padj"].dropna().to_numpy()
    assert (np.diff(padj) >= 0).all()
    n_tested = int(results["padj"].notna().sum())
    assert results["padj"].iloc[:n_tested].notna().all()


@pytest.mark.integration
def test_compare_assay_conditions_stage(annotated_record):
    record = compare_assay_conditions(annotated_record, test_level="treated", n_cpus=1)
    assert "log2FoldChange_MLE" in record.misc["condition_de"].columns
    assert stage_history(record) == ["compare_assay_conditions"]
