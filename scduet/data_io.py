"""
data_io.py -- Dataset download, 10X matrix reading and checkpoints.

The public PBMC dataset ships as a tarball laid out as::

    filtered_gene_bc_matrices/
    └── hg19/
        ├── matrix.mtx      (genes × cells, Matrix Market)
        ├── genes.tsv       (gene_id <TAB> gene_symbol)
        └── barcodes.tsv

Cell Ranger 3+ directories (``features.tsv.gz`` etc.) are read too.

Functions
---------
fetch_10x_dataset(dest_dir, url)
    → Download and extract a 10X tarball (retrying with backoff).

matrix_dir(root, reference)
    → Path of the matrix directory inside an extracted dataset.

read_10x_anndata(path)
    → AnnData (cells × genes) via ``scanpy.read_10x_mtx``.

read_10x_assay_set(path)
    → CellAssaySet (genes × cells) via ``scipy.io.mmread`` + pandas.

save_checkpoint(obj, path) / load_checkpoint(path)
    → Persist either representation between sessions.
"""

from __future__ import annotations

import logging
import pickle
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional, Union

import anndata as ad
import pandas as pd
import requests
import scanpy as sc
import scipy.io
from anndata.utils import make_index_unique
from scipy import sparse

from scduet.config import ASSAY_CONFIG, DATASET_CONFIG, HTTP_CONFIG
from scduet.records import Assay, CellAssaySet

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


# ══════════════════════════════════════════════════════════════════════
# 1. Download
# ══════════════════════════════════════════════════════════════════════

def _request_with_retry(
    method: str,
    url: str,
    retries: int = HTTP_CONFIG["max_retries"],
    **kwargs,
) -> requests.Response:
    """
    Make an HTTP request with exponential-backoff retry.

    Raises
    ------
    requests.RequestException
        The last error once all retries are exhausted.
    """
    kwargs.setdefault("timeout", HTTP_CONFIG["request_timeout"])
    last_exc: Exception | None = None

    for attempt in range(retries):
        try:
            resp = requests.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except requests.RequestException as exc:
            last_exc = exc
            logger.warning("Request to %s failed (attempt %d/%d): %s",
                           url, attempt + 1, retries, exc)
            if attempt < retries - 1:
                time.sleep(HTTP_CONFIG["backoff_base"] ** attempt)

    raise last_exc  # type: ignore[misc]


def matrix_dir(
    root: PathLike,
    reference: str = DATASET_CONFIG["reference"],
    matrix_root: str = DATASET_CONFIG["matrix_root"],
) -> Path:
    """Return ``<root>/filtered_gene_bc_matrices/<reference>``."""
    return Path(root) / matrix_root / reference


def fetch_10x_dataset(
    dest_dir: PathLike,
    url: str = DATASET_CONFIG["url"],
    reference: str = DATASET_CONFIG["reference"],
    progress_callback: Optional[Callable[[int, int, str], None]] = None,
) -> Path:
    """
    Download a 10X tarball and extract it under *dest_dir*.

    Nothing is downloaded if the matrix directory already exists.

    Parameters
    ----------
    dest_dir : path
        Directory the archive is extracted into.
    url : str
        Tarball URL.
    reference : str
        Genome reference sub-directory expected inside the archive.
    progress_callback : callable or None
        Called as ``progress_callback(bytes_done, bytes_total, message)``.

    Returns
    -------
    Path
        The matrix directory (``filtered_gene_bc_matrices/<reference>``).

    Raises
    ------
    FileNotFoundError
        If the archive does not contain the expected directory.
    tarfile.FilterError
        If an archive member would be written outside *dest_dir*.
    """
    dest_dir = Path(dest_dir)
    target = matrix_dir(dest_dir, reference)
    if target.is_dir():
        logger.info("Dataset already present at %s", target)
        return target

    dest_dir.mkdir(parents=True, exist_ok=True)
    resp = _request_with_retry(
        "GET", url, stream=True, timeout=HTTP_CONFIG["download_timeout"],
    )

    content_length = int(resp.headers.get("Content-Length", 0))
    downloaded = 0
    with tempfile.NamedTemporaryFile(
        suffix=".tar.gz", dir=dest_dir, delete=False,
    ) as tmp:
        archive_path = Path(tmp.name)
        for chunk in resp.iter_content(chunk_size=HTTP_CONFIG["stream_chunk_bytes"]):
            tmp.write(chunk)
            downloaded += len(chunk)
            if progress_callback:
                progress_callback(downloaded, content_length, "download")
    resp.close()
    logger.info("Downloaded %s (%d bytes)", url, downloaded)

    try:
        with tarfile.open(archive_path, mode="r:*") as tar:
            tar.extractall(path=dest_dir, filter="data")
    finally:
        archive_path.unlink(missing_ok=True)

    if not target.is_dir():
        raise FileNotFoundError(
            f"Archive from {url} did not contain '{target.relative_to(dest_dir)}'."
        )
    return target


# ══════════════════════════════════════════════════════════════════════
# 2. Reading 10X matrices
# ══════════════════════════════════════════════════════════════════════

def _find_file(path: Path, stems: tuple[str, ...]) -> Path:
    for stem in stems:
        for candidate in (path / stem, path / f"{stem}.gz"):
            if candidate.exists():
                return candidate
    raise FileNotFoundError(f"None of {list(stems)} (or .gz) found in {path}.")


def read_10x_anndata(
    path: PathLike,
    gene_column: int = DATASET_CONFIG["gene_column"],
) -> ad.AnnData:
    """
    Read a 10X matrix directory into a cells × genes AnnData.

    Gene symbols (``gene_column=1``) become ``var_names`` and are made
    unique with a ``-1``, ``-2`` … suffix; the other column is kept in
    ``adata.var``.
    """
    var_names = "gene_symbols" if gene_column == 1 else "gene_ids"
    adata = sc.read_10x_mtx(Path(path), var_names=var_names, make_unique=True, cache=False)
    adata.obs_names_make_unique()
    logger.info("Read AnnData %d cells × %d genes from %s", adata.n_obs, adata.n_vars, path)
    return adata


def read_10x_assay_set(
    path: PathLike,
    gene_column: int = DATASET_CONFIG["gene_column"],
    make_unique: bool = True,
    assay: str = ASSAY_CONFIG["default_assay"],
    project: str = ASSAY_CONFIG["project"],
) -> CellAssaySet:
    """
    Read a 10X matrix directory into a genes × cells CellAssaySet.

    Parameters
    ----------
    path : path
        Directory with matrix / genes (features) / barcodes files.
    gene_column : int
        Column of the genes file used as feature identifier
        (0 = Ensembl ID, 1 = symbol).
    make_unique : bool
        Suffix duplicated identifiers (``-1``, ``-2`` …).  When False,
        duplicated identifiers are fatal.
    assay, project : str
        Assay name and project label of the new record.

    Raises
    ------
    DuplicateFeatureNameError
        If ``make_unique=False`` and identifiers repeat.
    """
    path = Path(path)
    matrix_file = _find_file(path, ("matrix.mtx",))
    genes_file = _find_file(path, ("features.tsv", "genes.tsv"))
    barcodes_file = _find_file(path, ("barcodes.tsv",))

    counts = sparse.csc_matrix(scipy.io.mmread(matrix_file))
    genes = pd.read_csv(genes_file, sep="\t", header=None, dtype=str)
    barcodes = pd.read_csv(barcodes_file, sep="\t", header=None, dtype=str)[0]

    # Single-column features files: the identifier doubles as the ID.
    if genes.shape[1] == 1:
        genes[1] = genes[0]
    id_col = 0 if gene_column == 1 else 1

    meta_features = pd.DataFrame(
        {DATASET_CONFIG["gene_id_col"]: genes[id_col].values},
        index=pd.RangeIndex(genes.shape[0]),
    )
    if genes.shape[1] > 2:
        meta_features["feature_types"] = genes[2].values

    names = pd.Index(genes[gene_column].values)
    if make_unique:
        names = make_index_unique(names)

    rna = Assay(counts=counts, meta_features=meta_features)
    rna.set_feature_names(names)

    meta_data = pd.DataFrame(
        {"orig_ident": project},
        index=make_index_unique(pd.Index(barcodes.values)),
    )
    record = CellAssaySet(
        assays={assay: rna},
        meta_data=meta_data,
        active_assay=assay,
        project=project,
    )
    logger.info("Read CellAssaySet %d genes × %d cells from %s",
                record.n_features, record.n_cells, path)
    return record


# ══════════════════════════════════════════════════════════════════════
# 3. Checkpoints
# ══════════════════════════════════════════════════════════════════════

def save_checkpoint(obj: Union[ad.AnnData, CellAssaySet], path: PathLike) -> Path:
    """
    Persist either representation.

    AnnData is written as ``.h5ad``; CellAssaySet is pickled.  The
    serialisation format is whatever the underlying library defines.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(obj, ad.AnnData):
        obj.write_h5ad(path)
    elif isinstance(obj, CellAssaySet):
        with open(path, "wb") as fh:
            pickle.dump(obj, fh, protocol=pickle.HIGHEST_PROTOCOL)
    else:
        raise TypeError(f"Cannot checkpoint object of type {type(obj).__name__}")
    logger.info("Checkpoint written to %s", path)
    return path


def load_checkpoint(path: PathLike) -> Union[ad.AnnData, CellAssaySet]:
    """Load a checkpoint written by :func:`save_checkpoint`."""
    path = Path(path)
    if path.suffix == ".h5ad":
        return sc.read_h5ad(path)
    with open(path, "rb") as fh:
        obj = pickle.load(fh)
    if not isinstance(obj, CellAssaySet):
        raise TypeError(f"{path} does not contain a CellAssaySet")
    return obj

