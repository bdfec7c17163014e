#!/usr/bin/env python3
"""
Differential expression analysis utilities for bulk RNA-seq
Builds the design matrix and runs the negative binomial GLM (PyDESeq2) for one contrast
"""

import numpy as np
import pandas as pd

from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats

from bulk_de.errors import FitConvergenceError

RESULT_COLUMNS = [
    "gene",
    "logFC",
    "AveExpr",
    "lfcSE",
    "stat",
    "P.Value",
    "adj.P.Val",
    "contrast",
    "significant",
    "upregulated",
    "downregulated",
]


def contrast_label(group1, group2):
    """Name used for output files, e.g. 'treated_vs_control'"""
    label = f"{group1}_vs_{group2}"
    return label.replace(" ", "_").replace("/", "-")


def build_design_matrix(metadata, group_col):
    """Indicator design matrix with one column per group level (no intercept)

    Args:
        metadata: Sample metadata indexed by sample id
        group_col: Column holding the group labels

    Returns:
        DataFrame of 0/1 floats, rows aligned with metadata rows
    """
    if group_col not in metadata.columns:
        raise FitConvergenceError(f"Group column '{group_col}' not found in metadata")

    levels = sorted(metadata[group_col].astype(str).unique())
    groups = metadata[group_col].astype(str)
    design = pd.DataFrame(
        {level: (groups == level).astype(float) for level in levels},
        index=metadata.index,
    )
    return design


def make_contrast_vector(design, group1, group2):
    """+1 on the tested level, -1 on the reference level"""
    vector = np.zeros(design.shape[1])
    vector[list(design.columns).index(group1)] = 1.0
    vector[list(design.columns).index(group2)] = -1.0
    return vector


def _check_contrast(design, group1, group2):
    """Make sure the contrast can be estimated from this design"""
    if group1 == group2:
        raise FitConvergenceError(f"Contrast levels must differ (got '{group1}' twice)")

    missing = [g for g in (group1, group2) if g not in design.columns]
    if missing:
        raise FitConvergenceError(
            f"Contrast level(s) {missing} not present; available levels: {list(design.columns)}"
        )

    n_samples, n_coefs = design.shape
    if n_samples <= n_coefs:
        raise FitConvergenceError(
            f"Design has {n_coefs} coefficients for {n_samples} samples; "
            "at least one replicate is needed to estimate dispersion"
        )


def run_differential_expression(
    counts_df,
    metadata,
    group1,
    group2,
    group_col="condition",
    design=None,
    fdr_threshold=0.05,
    fc_threshold=1.0,
    cooks_filter=True,
    independent_filter=False,
    n_cpus=1,
):
    """Run PyDESeq2 for a single contrast

    The raw filtered counts are passed to the model; size factors are estimated
    inside the engine.

    Args:
        counts_df: Filtered raw count matrix (genes x samples)
        metadata: Sample metadata indexed by sample id
        group1: Tested level of group_col
        group2: Reference level of group_col
        group_col: Metadata column with the groups
        design: Optional formula string; None uses the group indicator matrix
        fdr_threshold: Adjusted p-value cutoff for the significance flags
        fc_threshold: |log2FC| cutoff for the significance flags
        cooks_filter: Set p-values of Cooks outliers to NaN
        independent_filter: Use DESeq2 independent filtering instead of plain BH
        n_cpus: CPUs for pydeseq2

    Returns:
        DataFrame with one row per gene in input order
    """
    label = contrast_label(group1, group2)
    metadata = metadata.loc[counts_df.columns].copy()
    design_matrix = build_design_matrix(metadata, group_col)
    _check_contrast(design_matrix, group1, group2)

    n1 = int(design_matrix[group1].sum())
    n2 = int(design_matrix[group2].sum())
    print(f"  Testing {label} ({n1} vs {n2} samples)")
    print(f"    Input: {counts_df.shape[0]} genes × {counts_df.shape[1]} samples")

    # PyDESeq2 expects counts as samples × genes
    counts_transposed = pd.DataFrame(
        np.round(counts_df.to_numpy()).astype(int).T,
        index=counts_df.columns,
        columns=counts_df.index.astype(str),
    )

    assert all(counts_transposed.index == metadata.index), \
        "Sample IDs in counts and metadata do not match"

    if design is None:
        model_design = design_matrix
        contrast = make_contrast_vector(design_matrix, group1, group2)
    else:
        metadata[group_col] = pd.Categorical(metadata[group_col].astype(str))
        model_design = design
        contrast = [group_col, group1, group2]

    inference = DefaultInference(n_cpus=n_cpus)
    try:
        dds = DeseqDataSet(
            counts=counts_transposed,
            metadata=metadata,
            design=model_design,
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()

        stat_res = DeseqStats(
            dds,
            contrast=contrast,
            alpha=fdr_threshold,
            cooks_filter=cooks_filter,
            independent_filter=independent_filter,
            inference=inference,
            quiet=True,
        )
        stat_res.summary()
    except (ValueError, KeyError, RuntimeError, np.linalg.LinAlgError) as exc:
        raise FitConvergenceError(
            f"PyDESeq2 failed for {label} "
            f"(counts shape {counts_transposed.shape}, design {design or 'indicators'}): {exc}"
        ) from exc

    results_df = stat_res.results_df.copy()
    if results_df["pvalue"].isna().all():
        raise FitConvergenceError(f"No gene could be tested for {label}: all p-values are missing")

    results_df = results_df.rename(
        columns={
            "log2FoldChange": "logFC",
            "pvalue": "P.Value",
            "padj": "adj.P.Val",
            "baseMean": "AveExpr",
        }
    )
    results_df = results_df.reindex(counts_df.index.astype(str))
    results_df["gene"] = results_df.index
    results_df["contrast"] = label

    results_df = add_significance_flags(results_df, fdr_threshold, fc_threshold)

    n_sig = results_df["significant"].sum()
    n_up = results_df["upregulated"].sum()
    n_down = results_df["downregulated"].sum()
    print(f"    ✓ {n_sig} significant genes ({n_up} up, {n_down} down)")

    return results_df[RESULT_COLUMNS].reset_index(drop=True)


def add_significance_flags(results_df, fdr_threshold=0.05, fc_threshold=1.0):
    """Add significant / upregulated / downregulated boolean columns"""
    results_df = results_df.copy()
    results_df["significant"] = (
        (results_df["adj.P.Val"] < fdr_threshold)
        & (results_df["logFC"].abs() > fc_threshold)
        & (results_df["adj.P.Val"].notna())
    )
    results_df["upregulated"] = results_df["significant"] & (results_df["logFC"] > 0)
    results_df["downregulated"] = results_df["significant"] & (results_df["logFC"] < 0)
    return results_df


def summarize_de(results_df, fdr_threshold=0.05):
    """Count up / down / not significant genes at an FDR threshold

    Args:
        results_df: DE results
        fdr_threshold: Adjusted p-value cutoff

    Returns:
        Dict with counts
    """
    sig = results_df["adj.P.Val"] < fdr_threshold
    summary = {
        "contrast": results_df["contrast"].iloc[0] if len(results_df) else None,
        "fdr_threshold": fdr_threshold,
        "n_tested": int(results_df["P.Value"].notna().sum()),
        "n_up": int((sig & (results_df["logFC"] > 0)).sum()),
        "n_down": int((sig & (results_df["logFC"] < 0)).sum()),
    }
    summary["n_not_sig"] = int(len(results_df) - summary["n_up"] - summary["n_down"])
    return summary


def top_genes(results_df, n=20):
    """Top genes by ascending p-value (ties keep gene order)"""
    return results_df.sort_values("P.Value", kind="mergesort", na_position="last").head(n)


def select_significant_genes(
    results_df, fdr_threshold=0.05, fc_threshold=1.0, direction="up", id_column="gene"
):
    """Genes passing the FDR and fold-change cutoffs, in the chosen identifier namespace

    Args:
        results_df: DE results (with annotation columns if id_column is not 'gene')
        fdr_threshold: Adjusted p-value cutoff (strict)
        fc_threshold: log2 fold-change cutoff (strict)
        direction: "up" (logFC > t), "down" (logFC < -t) or "both"
        id_column: Column holding the identifiers to return

    Returns:
        List of unique identifiers
    """
    passing = results_df["adj.P.Val"] < fdr_threshold
    if direction == "up":
        passing &= results_df["logFC"] > fc_threshold
    elif direction == "down":
        passing &= results_df["logFC"] < -fc_threshold
    elif direction == "both":
        passing &= results_df["logFC"].abs() > fc_threshold
    else:
        raise ValueError(f"Unknown direction: {direction}")

    ids = results_df.loc[passing, id_column].dropna().astype(str)
    return list(dict.fromkeys(ids))


def rank_genes(results_df, metric="logFC", id_column="gene"):
    """Ranked gene list for preranked GSEA

    Args:
        results_df: DE results
        metric: "logFC" or "signed_significance" (logFC * -log10 p-value)
        id_column: Column holding the identifiers used as the index

    Returns:
        Series indexed by identifier, sorted descending, with unique strictly
        decreasing values
    """
    required = [id_column, "logFC", "P.Value"]
    clean = results_df.dropna(subset=required).copy()
    if clean.empty:
        return pd.Series(dtype=float)

    if metric == "logFC":
        clean["rank_score"] = clean["logFC"]
    elif metric == "signed_significance":
        pvals = clean["P.Value"].clip(lower=np.finfo(float).tiny)
        clean["rank_score"] = clean["logFC"] * -np.log10(pvals)
    else:
        raise ValueError(f"Unknown rank metric: {metric}")

    # Deduplicate identifiers by keeping the entry with the largest absolute score
    clean[id_column] = clean[id_column].astype(str)
    clean["abs_rank"] = clean["rank_score"].abs()
    clean = (
        clean.sort_values("abs_rank", ascending=False, kind="mergesort")
        .drop_duplicates(subset=id_column, keep="first")
        .sort_values("rank_score", ascending=False, kind="mergesort")
    )
    ranking = clean.set_index(id_column)["rank_score"]
    ranking.index.name = id_column

    # Break ties deterministically so GSEA receives strictly monotonic ranks
    if ranking.duplicated().any():
        tie_break = ranking.rank(method="first", ascending=False) * 1e-12
        ranking = ranking - tie_break

    return ranking
