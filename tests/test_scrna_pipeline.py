"""Tests for the scanpy (AnnData) pipeline."""

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scanpy as sc

from scduet import scrna_pipeline as sp
from scduet.errors import StageOrderError
from scduet.records import stage_history

pytestmark = pytest.mark.integration


def _params(small_params):
    params = dict(small_params["scanpy"])
    params["qc_defaults"] = small_params["qc_defaults"]
    return params


@pytest.fixture
def processed(adata, small_params):
    return sp.run_scrna_pipeline(adata, _params(small_params))


def test_full_pipeline(processed):
    adata = processed
    assert stage_history(adata) == sp.PIPELINE_STEPS
    assert adata.uns["scduet"]["version"] == len(sp.PIPELINE_STEPS)

    assert "X_pca" in adata.obsm
    assert adata.obsm["X_umap"].shape == (adata.n_obs, 2)
    assert adata.raw is not None
    assert adata.n_vars == adata.uns["hvg_stats"]["n_hvg"]
    assert adata.uns["leiden_stats"]["n_clusters"] >= 2
    assert adata.obs["leiden"].dtype == "category"


def test_qc_on_small_gene_panel():
    rng = np.random.default_rng(2)
    genes = ["MT-CO1", "RPS3", "HBB"] + [f"GENE{i}" for i in range(37)]
    adata = ad.AnnData(
        X=rng.poisson(2.0, (30, len(genes))).astype(np.float32),
        var=pd.DataFrame(index=genes),
    )
    adata = sp.annotate_qc(adata)

    assert adata.n_vars < 50
    assert {"n_genes_by_counts", "total_counts", "pct_counts_mt"} <= set(adata.obs.columns)
    assert adata.var[["mt", "ribo", "hb"]].sum().tolist() == [1, 1, 1]
    np.testing.assert_allclose(adata.obs["total_counts"], adata.X.sum(axis=1))


def test_counts_layer_holds_raw_counts(adata, small_params):
    raw = adata.X.copy()
    out = sp.run_scrna_pipeline(adata, _params(small_params))
    kept_cells = adata.obs_names.get_indexer(out.obs_names)
    kept_genes = adata.var_names.get_indexer(out.var_names)
    expected = raw[kept_cells][:, kept_genes]
    assert (out.layers["counts"] != expected).nnz == 0


def test_progress_callback(adata, small_params):
    seen = []
    sp.run_scrna_pipeline(adata, _params(small_params),
                          progress_callback=lambda i, n, name: seen.append((i, n, name)))
    assert [name for _, _, name in seen] == sp.PIPELINE_STEPS
    assert {n for _, n, _ in seen} == {len(sp.PIPELINE_STEPS)}


def test_marker_table(processed):
    df = sp.get_marker_genes_df(processed, n_genes=5)
    assert set(df.columns) >= {"names", "scores", "logfoldchanges", "pvals", "pvals_adj", "cluster"}
    assert df.groupby("cluster").size().max() <= 5

    one = sp.get_marker_genes_df(processed, group="0", n_genes=3)
    assert len(one) == 3
    assert (one["cluster"] == "0").all()


def test_normalization_is_monotonic_within_cell(adata):
    raw = adata.X.toarray()
    adata = sp.normalize_data(adata)
    norm = adata.X.toarray()
    cell = 0
    order = np.argsort(raw[cell], kind="stable")
    assert np.all(np.diff(norm[cell][order]) >= -1e-6)
    np.testing.assert_allclose(np.expm1(norm).sum(axis=1), 1e4, rtol=1e-4)


def test_stage_out_of_order_raises(adata):
    with pytest.raises(StageOrderError):
        sp.run_pca(adata)


def test_pseudotime_from_multiple_roots(processed):
    adata = processed
    group_of = adata.obs["leiden"].astype(str)
    roots = [adata.obs_names[group_of == "0"][0], adata.obs_names[group_of == "1"][0]]
    adata = sp.compute_pseudotime(adata, roots, n_dcs=5)

    pt = adata.obs["dpt_pseudotime"].to_numpy()
    assert pt.shape == (adata.n_obs,)
    for root in roots:
        assert pt[adata.obs_names.get_loc(root)] == pytest.approx(0.0)
    assert adata.uns["pseudotime_stats"]["roots"] == roots


def test_pseudotime_rejects_unknown_root(processed):
    with pytest.raises(ValueError, match="Unknown root"):
        sp.compute_pseudotime(processed, ["nope"])
    with pytest.raises(ValueError):
        sp.compute_pseudotime(processed, [])


def test_condition_comparison(processed):
    adata = processed
    adata.obs["condition"] = np.where(np.arange(adata.n_obs) % 2 == 0, "treated", "control")
    adata = sp.compare_conditions(adata, "condition", test="treated", reference="control")

    df = sp.get_marker_genes_df(adata, group="treated", n_genes=adata.raw.n_vars,
                                key="condition_de")
    assert len(df) == adata.raw.n_vars


def test_condition_comparison_validates_levels(processed):
    processed.obs["condition"] = "control"
    with pytest.raises(ValueError, match="treated"):
        sp.compare_conditions(processed, "condition", test="treated", reference="control")


def test_pseudotime_on_disconnected_clusters():
    rng = np.random.default_rng(0)
    blobs = np.vstack([rng.normal(0.0, 1.0, (25, 5)), rng.normal(100.0, 1.0, (25, 5))])
    adata = ad.AnnData(
        X=rng.poisson(1.0, (50, 20)).astype(np.float32),
        obs=pd.DataFrame(index=[f"C{i:02d}" for i in range(50)]),
    )
    adata.obsm["X_pca"] = blobs
    sc.pp.neighbors(adata, n_neighbors=10, use_rep="X_pca")

    roots = ["C00", "C30"]
    adata = sp.compute_pseudotime(adata, roots, n_dcs=5)

    pt = adata.obs["dpt_pseudotime"].to_numpy()
    assert pt[0] == pytest.approx(0.0)
    assert pt[30] == pytest.approx(0.0)
    # Every cell is reachable from one of the two roots.
    assert np.isfinite(pt).all()
    assert pt.min() >= 0.0 and pt.max() <= 1.0


def test_single_root_leaves_other_component_unreachable():
    rng = np.random.default_rng(1)
    blobs = np.vstack([rng.normal(0.0, 1.0, (25, 5)), rng.normal(100.0, 1.0, (25, 5))])
    adata = ad.AnnData(X=rng.poisson(1.0, (50, 20)).astype(np.float32))
    adata.obsm["X_pca"] = blobs
    sc.pp.neighbors(adata, n_neighbors=10, use_rep="X_pca")

    adata = sp.compute_pseudotime(adata, [adata.obs_names[0]], n_dcs=5)
    pt = adata.obs["dpt_pseudotime"].to_numpy()
    assert np.isfinite(pt[:25]).all()
    assert np.isinf(pt[25:]).all()
    assert adata.uns["pseudotime_stats"]["n_finite"] == 25
