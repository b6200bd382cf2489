"""End-to-end walkthrough on a synthetic 10X directory."""

import pandas as pd
import pytest

from scduet.data_io import load_checkpoint
from scduet.walkthrough import compare_partitions, root_cells_of, run_walkthrough

pytestmark = pytest.mark.unit


def test_compare_partitions_identical_up_to_renaming():
    a = pd.Series(["x", "x", "y", "y"], index=list("abcd"))
    b = pd.Series(["1", "1", "0", "0"], index=list("dcba"))[::-1]
    result = compare_partitions(a, b)
    assert result["ari"] == pytest.approx(1.0)
    assert result["n_shared"] == 4
    assert result["crosstab"].loc["x", "0"] == 2


def test_compare_partitions_uses_shared_cells_only():
    a = pd.Series(["x", "y", "y"], index=["a", "b", "c"])
    b = pd.Series(["0", "1"], index=["b", "z"])
    assert compare_partitions(a, b)["n_shared"] == 1
    with pytest.raises(ValueError):
        compare_partitions(a, pd.Series(["0"], index=["q"]))


def test_root_cells_of():
    labels = pd.Series(["1", "0", "0"], index=["a", "b", "c"])
    assert root_cells_of(labels, "0") == ["b"]
    assert root_cells_of(labels, "0", n=2) == ["b", "c"]
    with pytest.raises(ValueError):
        root_cells_of(labels, "7")


def test_missing_dataset_without_download(tmp_path):
    with pytest.raises(FileNotFoundError):
        run_walkthrough(tmp_path)


@pytest.mark.integration
def test_walkthrough_end_to_end(tenx_dir, small_params, tmp_path):
    data_dir = tenx_dir.parent.parent
    result = run_walkthrough(data_dir, params=small_params, checkpoint_dir=tmp_path / "ckpt")

    assert result.adata.n_obs == result.record.n_cells
    assert "cell_type" in result.adata.obs
    assert "cell_type" in result.record.meta_data
    assert "dpt_pseudotime" in result.adata.obs
    assert "pseudotime" in result.record.meta_data

    assert {"knee", "genes_per_cell", "counts_per_cell", "scanpy_umap_clusters",
            "assay_umap_clusters", "scanpy_pseudotime", "assay_pseudotime"} <= set(result.figures)
    assert -1.0 <= result.partition_comparison["ari"] <= 1.0
    assert result.partition_comparison["n_shared"] == result.adata.n_obs

    assert result.audits["scanpy"]["scduet"]["pipeline"] == "scanpy"
    assert result.audits["assay"]["scduet"]["pipeline"] == "assay_record"

    reloaded = load_checkpoint(result.checkpoints["assay"])
    assert reloaded.n_cells == result.record.n_cells
    assert load_checkpoint(result.checkpoints["scanpy"]).n_obs == result.adata.n_obs


@pytest.mark.integration
def test_walkthrough_compares_conditions(tenx_dir, small_params, synthetic_counts):
    _, cells, _ = synthetic_counts
    idx = [i % 6 for i in range(len(cells))]
    cell_metadata = pd.DataFrame(
        {
            "sample": [f"s{i}" for i in idx],
            "condition": ["control" if i < 3 else "treated" for i in idx],
        },
        index=cells,
    )
    result = run_walkthrough(
        tenx_dir.parent.parent, params=small_params,
        cell_metadata=cell_metadata, condition_test="treated",
    )

    assert set(result.adata.obs["condition"]) == {"control", "treated"}
    assert set(result.record.meta_data["sample"]) == {f"s{i}" for i in range(6)}
    assert {"scanpy", "assay"} == set(result.condition_de)
    # pseudobulk runs on the record, which keeps every filtered gene
    assert len(result.condition_de["assay"]) == result.record.n_features
    assert "significant" in result.condition_de["assay"].columns
    assert (result.condition_de["scanpy"]["cluster"] == "treated").all()
