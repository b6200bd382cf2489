"""Tests for the assay-record pipeline."""

import numpy as np
import pytest

from scduet import assay_pipeline as ap
from scduet.assay_pipeline import MARKER_COLUMNS
from scduet.errors import StageOrderError

pytestmark = pytest.mark.integration


def _params(small_params):
    params = dict(small_params["assay"])
    params["qc_defaults"] = small_params["qc_defaults"]
    return params


@pytest.fixture
def processed(record, small_params):
    return ap.run_assay_pipeline(record, _params(small_params))


def test_full_pipeline(processed):
    record = processed
    assert record.history == ap.PIPELINE_STEPS
    assert record.version == len(ap.PIPELINE_STEPS)

    assay = record.assay()
    assert assay.data.shape == assay.counts.shape
    assert len(assay.variable_features) == 60
    assert assay.scale_data.shape == (60, record.n_cells)
    assert np.abs(assay.scale_data).max() <= 10.0

    pca = record.reductions["pca"]
    assert pca.embeddings.shape == (record.n_cells, 10)
    assert pca.loadings.shape == (60, 10)
    assert np.all(np.diff(pca.variance_ratio) <= 1e-12)
    assert record.reductions["umap"].embeddings.shape == (record.n_cells, 2)


def test_clusters_recover_populations(processed):
    labels = processed.meta_data["louvain"].astype(str).to_numpy()
    assert processed.misc["louvain_stats"]["n_clusters"] >= 3
    # Each synthetic population sits mostly in one cluster.
    for start in (0, 30, 60):
        block = labels[start:start + 30]
        _, sizes = np.unique(block, return_counts=True)
        assert sizes.max() >= 20


def test_cluster_labels_ordered_by_size(processed):
    sizes = processed.meta_data["louvain"].value_counts(sort=False)
    ordered = sizes.loc[list(processed.meta_data["louvain"].cat.categories)].to_numpy()
    assert np.all(np.diff(ordered) <= 0)


def test_louvain_is_reproducible(record, small_params):
    a = ap.run_assay_pipeline(record.copy(), _params(small_params))
    b = ap.run_assay_pipeline(record.copy(), _params(small_params))
    assert list(a.meta_data["louvain"]) == list(b.meta_data["louvain"])
    np.testing.assert_allclose(a.reductions["umap"].embeddings, b.reductions["umap"].embeddings)


def test_normalization_totals(record):
    record = ap.normalize_assay(record, scale_factor=1e4)
    totals = np.asarray(record.assay().data.expm1().sum(axis=0)).ravel()
    np.testing.assert_allclose(totals, 1e4)


def test_snn_graph_is_symmetric_without_self_loops(processed):
    snn = processed.graphs["snn"]
    assert (abs(snn - snn.T) > 1e-12).nnz == 0
    assert snn.diagonal().sum() == 0
    assert snn.data.min() >= 1 / 15
    assert snn.data.max() <= 1.0


def test_markers_table(processed):
    markers = processed.misc["markers"]
    assert list(markers.columns) == MARKER_COLUMNS
    assert (markers["logfoldchanges"] >= 0.1).all()
    assert markers["pvals_adj"].between(0, 1).all()

    top = ap.get_assay_markers_df(processed, n_genes=3)
    assert top.groupby("cluster").size().max() <= 3


def test_block_genes_mark_their_population(processed):
    labels = processed.meta_data["louvain"].astype(str)
    b_cluster = labels.iloc[30:60].mode()[0]
    top = ap.get_assay_markers_df(processed, group=b_cluster, n_genes=30)
    assert "MS4A1" in set(top["names"])


def test_stage_out_of_order_raises(record):
    with pytest.raises(StageOrderError) as excinfo:
        ap.find_clusters(record)
    assert excinfo.value.missing == ["graphs:snn"]


def test_trajectory_pseudotime(processed):
    record = ap.learn_trajectory(processed)
    graph = record.misc["principal_graph"]
    n_nodes = len(graph["nodes"])
    assert len(graph["edges"]) == n_nodes - 1

    labels = record.meta_data["louvain"].astype(str)
    roots = [labels.index[labels == "0"][0]]
    record = ap.order_cells(record, roots)

    pt = record.meta_data["pseudotime"].to_numpy()
    assert np.isfinite(pt).all()
    assert (pt >= 0).all()
    assert record.misc["pseudotime_stats"]["roots"] == roots


def test_more_roots_never_increase_pseudotime(processed):
    record = ap.learn_trajectory(processed)
    labels = record.meta_data["louvain"].astype(str)
    one = ap.order_cells(record, [labels.index[labels == "0"][0]])
    pt_one = one.meta_data["pseudotime"].to_numpy().copy()
    two = ap.order_cells(record, [labels.index[labels == "0"][0], labels.index[labels == "1"][0]])
    assert np.all(two.meta_data["pseudotime"].to_numpy() <= pt_one + 1e-9)


def test_order_cells_rejects_unknown_root(processed):
    record = ap.learn_trajectory(processed)
    with pytest.raises(ValueError, match="Unknown root"):
        ap.order_cells(record, ["nope"])
