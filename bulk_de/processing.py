#!/usr/bin/env python3
"""
Processing utilities for bulk RNA-seq exploration
Handles the variance-stabilizing transform and PCA on the most variable genes
"""

import anndata
import numpy as np
import pandas as pd
import scanpy as sc
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference


def variance_stabilize(counts_df, metadata, n_cpus=1):
    """Blind variance-stabilizing transform of raw counts

    Args:
        counts_df: Raw count matrix (genes x samples)
        metadata: Sample metadata indexed by sample id
        n_cpus: CPUs for pydeseq2

    Returns:
        DataFrame of VST values (expressed genes x samples)
    """
    print("Running variance-stabilizing transform...")

    # Genes without a single read carry no information for the dispersion fit
    counts_df = counts_df.loc[counts_df.sum(axis=1) > 0]

    # Intercept-only design; the transform is blind to the groups
    intercept = pd.DataFrame({"intercept": 1.0}, index=counts_df.columns)

    dds = DeseqDataSet(
        counts=counts_df.T.astype(int),
        metadata=metadata.loc[counts_df.columns],
        design=intercept,
        inference=DefaultInference(n_cpus=n_cpus),
        quiet=True,
    )
    dds.vst(use_design=False)

    vst = pd.DataFrame(
        np.asarray(dds.layers["vst_counts"]).T,
        index=counts_df.index,
        columns=counts_df.columns,
    )
    return vst


def select_top_variable_genes(expr_df, top_n=500):
    """Return the top_n genes by row variance (all genes if top_n exceeds the gene count)"""
    n = min(top_n, expr_df.shape[0])
    variances = expr_df.var(axis=1)
    top_genes = variances.sort_values(ascending=False, kind="mergesort").index[:n]
    return expr_df.loc[top_genes]


def run_pca(expr_df, metadata=None, color_by=None, top_n=500):
    """PCA of samples on the most variable genes

    Args:
        expr_df: Variance-stabilized expression (genes x samples)
        metadata: Optional sample metadata to carry along for plotting
        color_by: Metadata column(s) to keep in the output
        top_n: Number of most variable genes to use

    Returns:
        Tuple of (coordinates DataFrame with PC1/PC2 per sample,
                  list with the percentage of variance explained by PC1 and PC2)
    """
    top = select_top_variable_genes(expr_df, top_n=top_n)
    print(f"Running PCA on top {top.shape[0]} variable genes...")

    # AnnData is samples x genes
    adata = anndata.AnnData(
        X=top.T.to_numpy(dtype=np.float64),
        obs=pd.DataFrame(index=top.columns.astype(str)),
        var=pd.DataFrame(index=top.index.astype(str)),
    )
    sc.tl.pca(adata, n_comps=2, svd_solver="arpack", zero_center=True)

    coords = pd.DataFrame(
        adata.obsm["X_pca"][:, :2],
        index=top.columns,
        columns=["PC1", "PC2"],
    )
    percent_var = [float(v) * 100 for v in adata.uns["pca"]["variance_ratio"][:2]]

    if metadata is not None and color_by:
        if isinstance(color_by, str):
            color_by = [color_by]
        for col in color_by:
            coords[col] = metadata.loc[coords.index, col].values

    print(f"  PC1: {percent_var[0]:.1f}% variance, PC2: {percent_var[1]:.1f}% variance")
    return coords, percent_var


def explore_samples(counts_df, metadata, color_by=None, top_n=500, n_cpus=1):
    """Exploratory stage: VST followed by top-variance PCA

    Args:
        counts_df: Raw count matrix (genes x samples)
        metadata: Sample metadata
        color_by: Metadata column(s) defining the groups of interest
        top_n: Number of most variable genes
        n_cpus: CPUs for pydeseq2

    Returns:
        Dict with the VST matrix, PCA coordinates and percent variance
    """
    vst = variance_stabilize(counts_df, metadata, n_cpus=n_cpus)
    coords, percent_var = run_pca(vst, metadata=metadata, color_by=color_by, top_n=top_n)
    return {"vst": vst, "pca": coords, "percent_var": percent_var}
