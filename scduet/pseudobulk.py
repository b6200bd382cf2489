"""
pseudobulk.py — Condition comparison by pseudobulk DESeq2.

Single cells from the same biological sample are not independent
replicates, so conditions are compared on per-sample sums of the raw
counts ("pseudobulk") with pydeseq2:

1. Sum counts of all cells of each sample (genes × samples).
2. Count normalization (median-of-ratios size factors).
3. Dispersion estimation and negative-binomial GLM fit.
4. Wald test ``test_level`` vs ``reference_level``.
5. Benjamini-Hochberg adjustment.

Works on either representation: the AnnData path reads
``layers["counts"]`` (or ``X``), the assay path reads the active
assay's counts.

Functions
---------
pseudobulk_counts(obj, sample_col, condition_col)
    -> Summed counts (genes × samples) + sample metadata.

build_deseq_dataset(counts_df, metadata_df, condition_col, reference_level)
    -> DeseqDataSet ready to fit.

run_deseq2(dds, progress_callback)
    -> Fit the model; returns the dataset and the elapsed time.

compute_contrast(dds, metadata_df, condition_col, reference_level, alpha, test_level)
    -> Results table of the contrast.

compare_assay_conditions(record, ...)
    -> Whole flow as a stage of the assay pipeline.

Usage example
--------------
    from scduet.pseudobulk import pseudobulk_counts, build_deseq_dataset, run_deseq2, compute_contrast

    counts_df, metadata_df = pseudobulk_counts(record, "sample", "condition")
    dds = build_deseq_dataset(counts_df, metadata_df, "condition", "control")
    dds, _ = run_deseq2(dds)
    results_df, test_level = compute_contrast(dds, metadata_df, "condition", "control")
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Union

import anndata as ad
import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats
from scipy import sparse

from scduet.config import DESEQ2_DEFAULTS, MEMORY_CONFIG
from scduet.records import CellAssaySet, stage

logger = logging.getLogger(__name__)


def pseudobulk_counts(
    obj: Union[ad.AnnData, CellAssaySet],
    sample_col: str = DESEQ2_DEFAULTS["sample_col"],
    condition_col: str = DESEQ2_DEFAULTS["condition_col"],
    min_library_size: int = DESEQ2_DEFAULTS["min_library_size"],
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Sum raw counts per sample.

    Parameters
    ----------
    obj : AnnData or CellAssaySet
        Cells annotated with *sample_col* and *condition_col*.
    sample_col, condition_col : str
        Cell-metadata columns naming the sample and its condition.
    min_library_size : int
        Samples whose summed counts fall below this are dropped.

    Returns
    -------
    tuple[pd.DataFrame, pd.DataFrame]
        - counts_df: integer counts, genes × samples.
        - metadata_df: one row per sample with *condition_col*.

    Raises
    ------
    ValueError
        If a column is missing, a sample spans several conditions, or
        the AnnData has been subset to its variable genes.
    """
    if isinstance(obj, CellAssaySet):
        assay = obj.assay()
        X = assay.counts.T.tocsr()
        obs = obj.meta_data
        genes = assay.feature_names
    else:
        if obj.raw is not None and obj.raw.n_vars > obj.n_vars:
            # scale_data keeps only the variable genes (and their counts)
            raise ValueError(
                f"AnnData holds counts for {obj.n_vars} of {obj.raw.n_vars} genes "
                "(subset by scale_data). Aggregate before scaling, or convert "
                "the raw counts with anndata_to_assay_set and use the record."
            )
        X = obj.layers["counts"] if "counts" in obj.layers else obj.X
        X = X if sparse.issparse(X) else sparse.csr_matrix(X)
        obs = obj.obs
        genes = obj.var_names

    for col in (sample_col, condition_col):
        if col not in obs.columns:
            raise ValueError(
                f"Column '{col}' not found in the cell metadata. "
                f"Available columns: {list(obs.columns)}"
            )

    samples = obs[sample_col].astype(str).to_numpy()
    per_sample = obs.groupby(obs[sample_col].astype(str), observed=True)[condition_col].nunique()
    mixed = per_sample[per_sample > 1].index.tolist()
    if mixed:
        raise ValueError(f"Samples assigned to more than one condition: {mixed[:10]}")

    codes, names = pd.factorize(samples)
    indicator = sparse.csr_matrix(
        (np.ones(len(codes)), (codes, np.arange(len(codes)))),
        shape=(len(names), len(codes)),
    )
    summed = np.asarray((indicator @ X).todense())
    counts_df = pd.DataFrame(
        np.rint(summed.T).astype(np.int64),
        index=pd.Index(genes, name="gene"),
        columns=pd.Index(names, name=sample_col),
    )

    conditions = (
        obs.assign(_sample=samples)
        .drop_duplicates("_sample")
        .set_index("_sample")[condition_col]
        .astype(str)
    )
    metadata_df = pd.DataFrame({condition_col: conditions.reindex(names).to_numpy()},
                               index=pd.Index(names, name=sample_col))

    lib_sizes = counts_df.sum(axis=0)
    small = lib_sizes[lib_sizes < min_library_size].index
    if len(small):
        logger.warning("Dropping %d pseudobulk sample(s) below %d counts: %s",
                       len(small), min_library_size, list(small))
        counts_df = counts_df.drop(columns=small)
        metadata_df = metadata_df.drop(index=small)

    logger.info("Pseudobulk: %d samples × %d genes", counts_df.shape[1], counts_df.shape[0])
    return counts_df, metadata_df


def build_deseq_dataset(
    counts_df: pd.DataFrame,
    metadata_df: pd.DataFrame,
    condition_col: str = DESEQ2_DEFAULTS["condition_col"],
    reference_level: str = DESEQ2_DEFAULTS["reference_level"],
    n_cpus: Optional[int] = None,
) -> DeseqDataSet:
    """
    Build the DeseqDataSet object pydeseq2 needs.

    pydeseq2 expects the counts TRANSPOSED (samples × genes), but the
    pseudobulk table is genes × samples; this function transposes.

    Raises
    ------
    ValueError
        If *reference_level* is not a level of *condition_col* or fewer
        than two levels are present.
    """
    levels = metadata_df[condition_col].astype(str)
    if reference_level not in set(levels):
        raise ValueError(
            f"Reference level '{reference_level}' not found in '{condition_col}'. "
            f"Available: {sorted(set(levels))}"
        )
    if levels.nunique() < 2:
        raise ValueError(f"'{condition_col}' needs at least two levels to compare.")

    counts_t = pd.DataFrame(
        counts_df.values.T,
        index=counts_df.columns.astype(str),
        columns=counts_df.index.astype(str),
    )
    # Formula parsing needs plain string metadata
    metadata = metadata_df.astype(str)
    metadata.index = metadata.index.astype(str)

    return DeseqDataSet(
        counts=counts_t,
        metadata=metadata,
        design=f"~ {condition_col}",
        n_cpus=n_cpus or MEMORY_CONFIG.get("deseq2_n_cpus", 4),
        quiet=True,
    )


def run_deseq2(
    dds: DeseqDataSet,
    progress_callback: Callable[[int, int, str], None] | None = None,
) -> tuple[DeseqDataSet, float]:
    """
    Fit size factors, dispersions and the GLM.

    Returns
    -------
    tuple[DeseqDataSet, float]
        The fitted DeseqDataSet and the elapsed seconds.
    """
    if progress_callback:
        progress_callback(0, 1, "deseq2")
    t0 = time.monotonic()
    dds.deseq2()
    elapsed = time.monotonic() - t0
    logger.info("DESeq2 fit finished in %.1f s", elapsed)
    if progress_callback:
        progress_callback(1, 1, "deseq2")
    return dds, elapsed


def _test_level_for(
    metadata_df: pd.DataFrame,
    condition_col: str,
    reference_level: str,
    test_level: Optional[str],
) -> str:
    levels = sorted(set(metadata_df[condition_col].astype(str)) - {reference_level})
    if not levels:
        raise ValueError(f"'{condition_col}' has no level besides '{reference_level}'.")
    if test_level is None:
        return levels[0]
    if test_level not in levels:
        raise ValueError(
            f"Test level '{test_level}' not found in '{condition_col}'. Available: {levels}"
        )
    return test_level


def compute_contrast(
    dds: DeseqDataSet,
    metadata_df: pd.DataFrame,
    condition_col: str = DESEQ2_DEFAULTS["condition_col"],
    reference_level: str = DESEQ2_DEFAULTS["reference_level"],
    alpha: float = DESEQ2_DEFAULTS["alpha"],
    test_level: str | None = None,
    shrink: bool = True,
) -> tuple[pd.DataFrame, str]:
    """
    Wald test of one condition against the reference, per gene.

    Returns one row per pseudobulk gene, most significant first:
    pydeseq2's ``baseMean``, ``log2FoldChange``, ``lfcSE``, ``stat``,
    ``pvalue`` and ``padj``, plus ``log2FoldChange_MLE`` (the unshrunk
    estimate) and ``significant`` (``padj < alpha``).  Genes without a
    p-value (all-zero across samples) come last.

    With *shrink*, fold changes and their standard errors are replaced
    by apeGLM estimates; p-values come from the unshrunk fit either way.
    Whether shrinkage succeeded is recorded in
    ``results.attrs["shrinkage_applied"]``.

    Parameters
    ----------
    test_level : str, optional
        Level compared against *reference_level*.  Defaults to the
        alphabetically first other level.

    Raises
    ------
    ValueError
        If *test_level* is not a level of *condition_col*, or there is
        no level besides the reference.
    """
    test_level = _test_level_for(metadata_df, condition_col, reference_level, test_level)

    wald = DeseqStats(
        dds,
        contrast=[condition_col, test_level, reference_level],
        alpha=alpha,
        quiet=True,
    )
    wald.summary()
    results = wald.results_df.copy()
    results["log2FoldChange_MLE"] = results["log2FoldChange"]

    shrunk = False
    if shrink:
        try:
            wald.lfc_shrink(coeff=f"{condition_col}[T.{test_level}]")
        except (KeyError, ValueError, RuntimeError, np.linalg.LinAlgError) as exc:
            logger.warning("apeGLM shrinkage of %s vs %s failed, keeping MLE fold changes: %s",
                           test_level, reference_level, exc)
        else:
            results[["log2FoldChange", "lfcSE"]] = wald.results_df[["log2FoldChange", "lfcSE"]]
            shrunk = True

    results["significant"] = results["padj"] < alpha
    results = results.sort_values("padj", na_position="last", kind="mergesort")
    results.index.name = "gene"
    results.attrs["shrinkage_applied"] = shrunk
    logger.info("%s vs %s: %d of %d genes with padj < %g",
                test_level, reference_level, int(results["significant"].sum()),
                len(results), alpha)
    return results, test_level


@stage(reads=("assay:counts",), writes=("misc:condition_de",))
def compare_assay_conditions(
    record: CellAssaySet,
    test_level: str,
    reference_level: str = DESEQ2_DEFAULTS["reference_level"],
    sample_col: str = DESEQ2_DEFAULTS["sample_col"],
    condition_col: str = DESEQ2_DEFAULTS["condition_col"],
    alpha: float = DESEQ2_DEFAULTS["alpha"],
    n_cpus: Optional[int] = None,
) -> CellAssaySet:
    """
    Pseudobulk DESeq2 between two conditions of the record's cells.

    The results table is stored in ``record.misc["condition_de"]``.
    """
    counts_df, metadata_df = pseudobulk_counts(record, sample_col, condition_col)
    keep = metadata_df[condition_col].isin([test_level, reference_level])
    counts_df = counts_df.loc[:, keep.to_numpy()]
    metadata_df = metadata_df.loc[keep]

    dds = build_deseq_dataset(counts_df, metadata_df, condition_col, reference_level, n_cpus)
    dds, _ = run_deseq2(dds)
    results_df, _ = compute_contrast(
        dds, metadata_df, condition_col, reference_level, alpha, test_level,
    )
    record.misc["condition_de"] = results_df
    return record
