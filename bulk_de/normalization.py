#!/usr/bin/env python3
"""
Low-count filtering and normalization for bulk RNA-seq counts

The normalization factors and log-CPM table produced here are for reporting and
plots only. The differential expression fit takes the raw filtered counts and
normalizes internally.
"""

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference

from bulk_de.errors import EmptyFilterResult, NormalizationError


def library_sizes(counts_df):
    """Total counts per sample"""
    return counts_df.sum(axis=0).astype(float)


def compute_cpm(counts_df, lib_sizes=None):
    """Counts per million relative to each sample's library size

    Args:
        counts_df: Count matrix (genes x samples)
        lib_sizes: Optional library sizes (defaults to column sums)

    Returns:
        DataFrame of CPM values
    """
    if lib_sizes is None:
        lib_sizes = library_sizes(counts_df)
    lib_sizes = lib_sizes.replace(0, np.nan)
    return counts_df.div(lib_sizes, axis=1).fillna(0.0) * 1e6


def filter_low_counts(counts_df, min_cpm=0.5, min_samples=2):
    """Keep genes with CPM > min_cpm in at least min_samples samples

    Args:
        counts_df: Count matrix (genes x samples)
        min_cpm: CPM threshold (strict)
        min_samples: Minimum number of samples above the threshold

    Returns:
        Tuple of (filtered counts, stats dict with kept/dropped counts)
    """
    print("Filtering lowly expressed genes...")

    cpm = compute_cpm(counts_df)
    keep = (cpm > min_cpm).sum(axis=1) >= min_samples
    filtered = counts_df.loc[keep]

    stats = {
        "n_genes_input": int(counts_df.shape[0]),
        "n_genes_kept": int(keep.sum()),
        "n_genes_dropped": int((~keep).sum()),
        "min_cpm": float(min_cpm),
        "min_samples": int(min_samples),
    }

    if filtered.shape[0] == 0:
        raise EmptyFilterResult(
            f"No genes have CPM > {min_cpm} in at least {min_samples} samples "
            f"(input: {counts_df.shape[0]} genes x {counts_df.shape[1]} samples)"
        )

    print(
        f"  Kept {stats['n_genes_kept']:,} genes, dropped {stats['n_genes_dropped']:,} "
        f"(CPM > {min_cpm} in >= {min_samples} samples)"
    )
    return filtered, stats


def fit_size_factors(counts_df, n_cpus=1):
    """PyDESeq2 size factors on an intercept-only model

    Median-of-ratios by default; PyDESeq2 switches to its iterative estimator
    when every gene has a zero in at least one sample.

    Args:
        counts_df: Filtered count matrix (genes x samples)
        n_cpus: CPUs for pydeseq2

    Returns:
        Series of size factors indexed by sample
    """
    # Intercept-only design; size factors do not depend on the groups
    intercept = pd.DataFrame({"intercept": 1.0}, index=counts_df.columns)
    dds = DeseqDataSet(
        counts=counts_df.T.astype(int),
        metadata=pd.DataFrame(index=counts_df.columns),
        design=intercept,
        inference=DefaultInference(n_cpus=n_cpus),
        quiet=True,
    )
    dds.fit_size_factors()
    return pd.Series(np.asarray(dds.obs["size_factors"], dtype=float), index=counts_df.columns)


def calc_median_ratio_factors(counts_df, n_cpus=1):
    """Size factors expressed as library-size normalization factors

    Args:
        counts_df: Filtered count matrix (genes x samples)
        n_cpus: CPUs for pydeseq2

    Returns:
        Series of factors (geometric mean 1) indexed by sample
    """
    size_factors = fit_size_factors(counts_df, n_cpus=n_cpus)
    factors = size_factors / library_sizes(counts_df)
    factors = factors / np.exp(np.mean(np.log(factors)))
    factors.name = "norm_factor"
    return factors


def calc_norm_factors(counts_df, method="median_ratio", n_cpus=1):
    """Per-sample normalization factors

    Args:
        counts_df: Filtered count matrix (genes x samples)
        method: "median_ratio" (PyDESeq2 size factors) or "none" (library size only)
        n_cpus: CPUs for pydeseq2

    Returns:
        Series of strictly positive factors indexed by sample
    """
    print(f"Computing {method} normalization factors...")
    if method == "median_ratio":
        factors = calc_median_ratio_factors(counts_df, n_cpus=n_cpus)
    elif method == "none":
        factors = pd.Series(1.0, index=counts_df.columns, name="norm_factor")
    else:
        raise ValueError(f"Unknown normalization method: {method}")

    values = factors.to_numpy(dtype=float)
    if not (np.all(np.isfinite(values)) and np.all(values > 0)):
        raise NormalizationError(
            f"Normalization factors are not all positive and finite: {factors.to_dict()}"
        )

    for sample, value in factors.items():
        print(f"  {sample}: {value:.4f}")
    return factors


def log_cpm(counts_df, norm_factors=None, prior_count=2):
    """log2 CPM with effective library sizes and a scaled prior count

    Args:
        counts_df: Count matrix (genes x samples)
        norm_factors: Optional normalization factors per sample
        prior_count: Average prior count added to every observation

    Returns:
        DataFrame of log2 CPM values
    """
    lib_sizes = library_sizes(counts_df)
    if norm_factors is not None:
        lib_sizes = lib_sizes * norm_factors.reindex(counts_df.columns)

    # Prior scaled by relative library size so small libraries are not over-smoothed
    prior = prior_count * lib_sizes / lib_sizes.mean()
    adj_lib = lib_sizes + 2 * prior
    values = counts_df.add(prior, axis=1).div(adj_lib, axis=1) * 1e6
    return np.log2(values)


def filter_and_normalize(
    counts_df, min_cpm=0.5, min_samples=2, norm_method="median_ratio", prior_count=2, n_cpus=1
):
    """Run the filter / normalization stage

    Args:
        counts_df: Raw count matrix (genes x samples)
        min_cpm: CPM threshold
        min_samples: Minimum samples above threshold
        norm_method: "median_ratio" or "none"
        prior_count: Prior count for the log-CPM table
        n_cpus: CPUs for pydeseq2

    Returns:
        Dict with filtered counts, library sizes, factors, log-CPM table and stats
    """
    filtered, stats = filter_low_counts(counts_df, min_cpm=min_cpm, min_samples=min_samples)

    lib_sizes = library_sizes(filtered)
    factors = calc_norm_factors(filtered, method=norm_method, n_cpus=n_cpus)
    norm_log_cpm = log_cpm(filtered, norm_factors=factors, prior_count=prior_count)

    stats["norm_method"] = norm_method
    return {
        "counts": filtered,
        "lib_sizes": lib_sizes,
        "norm_factors": factors,
        "log_cpm": norm_log_cpm,
        "stats": stats,
    }
