"""Tests for dataset download, 10X reading and checkpoints."""

import io
import tarfile

import numpy as np
import pytest
import requests
from scipy import sparse

from scduet import data_io
from scduet.data_io import (
    fetch_10x_dataset,
    load_checkpoint,
    matrix_dir,
    read_10x_anndata,
    read_10x_assay_set,
    save_checkpoint,
)
from scduet.errors import DuplicateFeatureNameError
from scduet.records import CellAssaySet

pytestmark = pytest.mark.unit


# =========================================================================
# Reading
# =========================================================================


def test_both_readers_agree(tenx_dir, synthetic_counts):
    counts, cells, genes = synthetic_counts
    adata = read_10x_anndata(tenx_dir)
    record = read_10x_assay_set(tenx_dir)

    assert adata.shape == (len(cells), len(genes))
    assert record.n_cells == len(cells)
    assert record.n_features == len(genes)
    assert list(adata.var_names) == list(record.feature_names) == genes
    assert list(adata.obs_names) == list(record.cell_names) == cells
    np.testing.assert_array_equal(record.assay().counts.T.toarray(), counts)
    np.testing.assert_array_equal(adata.X.toarray(), counts)


def test_assay_reader_metadata(tenx_dir):
    record = read_10x_assay_set(tenx_dir, project="demo")
    assert record.project == "demo"
    assert (record.meta_data["orig_ident"] == "demo").all()
    assert record.assay().meta_features["gene_ids"].iloc[0] == "ENSG00000000000"


def test_gene_id_column(tenx_dir):
    record = read_10x_assay_set(tenx_dir, gene_column=0)
    assert record.feature_names[0] == "ENSG00000000000"
    assert record.assay().meta_features["gene_ids"].iloc[0] == "CD3E"


def _duplicate_symbol(tenx_dir):
    genes_file = tenx_dir / "genes.tsv"
    lines = genes_file.read_text().splitlines()
    gene_id = lines[1].split("\t")[0]
    lines[1] = f"{gene_id}\tCD3E"
    genes_file.write_text("\n".join(lines) + "\n")


def test_duplicate_symbols_made_unique(tenx_dir):
    _duplicate_symbol(tenx_dir)
    record = read_10x_assay_set(tenx_dir)
    assert list(record.feature_names[:2]) == ["CD3E", "CD3E-1"]
    assert list(read_10x_anndata(tenx_dir).var_names[:2]) == ["CD3E", "CD3E-1"]


def test_duplicate_symbols_fatal_without_make_unique(tenx_dir):
    _duplicate_symbol(tenx_dir)
    with pytest.raises(DuplicateFeatureNameError):
        read_10x_assay_set(tenx_dir, make_unique=False)


def test_missing_matrix_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_10x_assay_set(tmp_path)


# =========================================================================
# Download
# =========================================================================


def _tarball(tenx_dir) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        tar.add(tenx_dir.parent, arcname="filtered_gene_bc_matrices")
    return buf.getvalue()


class _FakeResponse:
    def __init__(self, payload: bytes, status: int = 200):
        self.payload = payload
        self.status_code = status
        self.headers = {"Content-Length": str(len(payload))}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def iter_content(self, chunk_size):
        for i in range(0, len(self.payload), chunk_size):
            yield self.payload[i:i + chunk_size]

    def close(self):
        pass


def test_fetch_extracts_archive(tmp_path, tenx_dir, monkeypatch):
    payload = _tarball(tenx_dir)
    calls = []

    def fake_request(method, url, **kwargs):
        calls.append((method, url))
        return _FakeResponse(payload)

    monkeypatch.setattr(data_io.requests, "request", fake_request)
    progress = []
    dest = tmp_path / "download"
    path = fetch_10x_dataset(dest, url="https://example.org/pbmc.tar.gz",
                             progress_callback=lambda d, t, m: progress.append((d, t)))

    assert path == matrix_dir(dest)
    assert (path / "matrix.mtx").exists()
    assert calls == [("GET", "https://example.org/pbmc.tar.gz")]
    assert progress[-1] == (len(payload), len(payload))
    assert list(dest.glob("*.tar.gz")) == []

    # Second call finds the directory and does not download again.
    fetch_10x_dataset(dest, url="https://example.org/pbmc.tar.gz")
    assert len(calls) == 1


def test_fetch_refuses_members_outside_destination(tmp_path, monkeypatch):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        data = b"outside"
        info = tarfile.TarInfo("../escape.txt")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    payload = buf.getvalue()

    monkeypatch.setattr(data_io.requests, "request",
                        lambda method, url, **kwargs: _FakeResponse(payload))
    dest = tmp_path / "download"
    with pytest.raises(tarfile.OutsideDestinationError):
        fetch_10x_dataset(dest, url="https://example.org/bad.tar.gz")
    assert not (tmp_path / "escape.txt").exists()
    assert list(dest.glob("*.tar.gz")) == []


def test_fetch_retries_then_raises(tmp_path, monkeypatch):
    attempts = []

    def failing(method, url, **kwargs):
        attempts.append(url)
        return _FakeResponse(b"", status=503)

    monkeypatch.setattr(data_io.requests, "request", failing)
    monkeypatch.setattr(data_io.time, "sleep", lambda s: None)
    with pytest.raises(requests.HTTPError):
        fetch_10x_dataset(tmp_path, url="https://example.org/x.tar.gz")
    assert len(attempts) == data_io.HTTP_CONFIG["max_retries"]


# =========================================================================
# Checkpoints
# =========================================================================


def test_anndata_checkpoint_round_trip(tmp_path, adata):
    path = save_checkpoint(adata, tmp_path / "ckpt" / "a.h5ad")
    loaded = load_checkpoint(path)
    assert loaded.shape == adata.shape
    assert (sparse.csr_matrix(loaded.X) != adata.X).nnz == 0


def test_record_checkpoint_round_trip(tmp_path, record):
    record.misc["note"] = {"k": 1}
    loaded = load_checkpoint(save_checkpoint(record, tmp_path / "r.pkl"))
    assert isinstance(loaded, CellAssaySet)
    assert loaded.misc["note"] == {"k": 1}
    assert (loaded.assay().counts != record.assay().counts).nnz == 0


def test_checkpoint_rejects_other_types(tmp_path):
    with pytest.raises(TypeError):
        save_checkpoint({"not": "a record"}, tmp_path / "x.pkl")
