#!/usr/bin/env python3
"""
Output utilities for the bulk RNA-seq pipeline
Writes tab-delimited tables and figures. Every file is written to a temporary
sibling and moved into place, so a failed stage leaves no partial file and a
rerun overwrites the previous outputs.
"""

import json
import os
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib_venn import venn2


def output_paths(outdir, contrast, category):
    """Locations of all pipeline outputs below outdir"""
    outdir = Path(outdir)
    results = outdir / "results"
    figures = results / "figures"
    return {
        "norm_counts": outdir / "data" / "norm_counts.tsv",
        "de": results / f"{contrast}_DE.txt",
        "top_genes": results / f"{contrast}_top_genes.txt",
        "ora": results / f"hypergeometric_{contrast}_{category}.txt",
        "gsea": results / f"gsea_{contrast}_{category}.txt",
        "summary": results / "run_summary.json",
        "pca_plot": figures / "pca.png",
        "volcano_plot": figures / f"volcano_{contrast}.png",
        "heatmap_plot": figures / f"heatmap_{contrast}.png",
        "gsea_plot": figures / f"gsea_top_{contrast}_{category}.png",
        "venn_plot": figures / f"enrichment_overlap_{contrast}_{category}.png",
    }


def _tmp_path(path):
    return path.with_name(f".{path.name}.tmp")


def write_table(df, path, index=False):
    """Write a tab-delimited table with a header row

    Args:
        df: DataFrame to write
        path: Destination file (parent directories are created)
        index: Whether to write the index as the first column

    Returns:
        The destination path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _tmp_path(path)
    try:
        df.to_csv(tmp, sep="\t", index=index, na_rep="NA")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
    print(f"  Saved: {path}")
    return path


def save_figure(fig, path, dpi=300):
    """Save a figure atomically and close it"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _tmp_path(path)
    try:
        fig.savefig(tmp, dpi=dpi, bbox_inches="tight", format=path.suffix.lstrip(".") or "png")
        os.replace(tmp, path)
    finally:
        plt.close(fig)
        if tmp.exists():
            tmp.unlink()
    print(f"  Saved: {path}")
    return path


def remove_stale(path):
    """Delete an optional output left over from an earlier run

    Returns:
        True if a file was removed
    """
    path = Path(path)
    if not path.exists():
        return False
    path.unlink()
    print(f"  Removed stale output: {path}")
    return True


def write_summary(summary, path):
    """Write the run summary as JSON"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _tmp_path(path)
    try:
        with open(tmp, "w") as f:
            json.dump(summary, f, indent=2, default=_json_default)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
    print(f"  Saved: {path}")
    return path


def _json_default(value):
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def plot_pca(coords, percent_var, color_by=None, title="PCA of VST counts"):
    """Scatter plot of samples on PC1 / PC2

    Args:
        coords: DataFrame with PC1, PC2 and optional metadata columns
        percent_var: Percent variance explained by PC1 and PC2
        color_by: Column used for color (a second column, if given, sets the marker)
        title: Plot title

    Returns:
        matplotlib Figure
    """
    if isinstance(color_by, str):
        color_by = [color_by]
    color_by = [c for c in (color_by or []) if c in coords.columns]

    fig, ax = plt.subplots(figsize=(7, 6))
    plot_df = coords.reset_index().rename(columns={"index": "sample"})
    sns.scatterplot(
        data=plot_df,
        x="PC1",
        y="PC2",
        hue=color_by[0] if color_by else None,
        style=color_by[1] if len(color_by) > 1 else None,
        s=80,
        ax=ax,
    )
    ax.set_xlabel(f"PC1: {percent_var[0]:.1f}% variance")
    ax.set_ylabel(f"PC2: {percent_var[1]:.1f}% variance")
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.grid(alpha=0.3)
    if color_by:
        ax.legend(bbox_to_anchor=(1.02, 1), loc="upper left")
    plt.tight_layout()
    return fig


def plot_volcano(de_results, contrast, fc_threshold=1.0, pval_threshold=0.05, label_col="symbol", n_labels=10):
    """Volcano plot for DE results

    Args:
        de_results: DE results DataFrame
        contrast: Contrast name
        fc_threshold: Log2FC threshold for coloring
        pval_threshold: Adjusted p-value threshold for coloring
        label_col: Column used to label the top genes (falls back to 'gene')
        n_labels: Number of top genes to label

    Returns:
        matplotlib Figure
    """
    ct_results = de_results.dropna(subset=["logFC", "P.Value"]).copy()

    ct_results["neg_log10_pval"] = -np.log10(ct_results["P.Value"] + 1e-300)

    ct_results["category"] = "Not significant"
    ct_results.loc[
        (ct_results["adj.P.Val"] < pval_threshold) & (ct_results["logFC"] > fc_threshold),
        "category",
    ] = "Upregulated"
    ct_results.loc[
        (ct_results["adj.P.Val"] < pval_threshold) & (ct_results["logFC"] < -fc_threshold),
        "category",
    ] = "Downregulated"

    fig, ax = plt.subplots(figsize=(10, 8))

    ns_data = ct_results[ct_results["category"] == "Not significant"]
    ax.scatter(ns_data["logFC"], ns_data["neg_log10_pval"], c="gray", alpha=0.5, s=20, label="Not significant")

    up_data = ct_results[ct_results["category"] == "Upregulated"]
    if len(up_data) > 0:
        ax.scatter(up_data["logFC"], up_data["neg_log10_pval"],
                   c="red", alpha=0.7, s=30, label=f"Upregulated (n={len(up_data)})")

    down_data = ct_results[ct_results["category"] == "Downregulated"]
    if len(down_data) > 0:
        ax.scatter(down_data["logFC"], down_data["neg_log10_pval"],
                   c="blue", alpha=0.7, s=30, label=f"Downregulated (n={len(down_data)})")

    # Label the most significant genes
    top = ct_results[ct_results["category"] != "Not significant"].nsmallest(n_labels, "P.Value")
    for _, row in top.iterrows():
        name = row.get(label_col)
        if name is None or pd.isna(name):
            name = row["gene"]
        ax.annotate(str(name), (row["logFC"], row["neg_log10_pval"]), fontsize=8, alpha=0.8)

    ax.axvline(fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.axvline(-fc_threshold, color="black", linestyle="--", linewidth=1, alpha=0.5)

    ax.set_xlabel("Log2 Fold Change", fontsize=12)
    ax.set_ylabel("-Log10(P-value)", fontsize=12)
    ax.set_title(f"{contrast}\nVolcano Plot", fontsize=14, fontweight="bold")
    ax.legend(loc="best")
    ax.grid(alpha=0.3)

    plt.tight_layout()
    return fig


def plot_de_heatmap(log_cpm_df, metadata, de_results, contrast, group_col, top_n=50, label_col="symbol"):
    """Heatmap of the top significant up- and downregulated genes on log-CPM

    Only genes flagged in the 'significant' column (FDR and fold-change cutoffs)
    are drawn, ordered by p-value within each direction.

    Args:
        log_cpm_df: log2 CPM table (genes x samples)
        metadata: Sample metadata
        de_results: DE results DataFrame
        contrast: Contrast name
        group_col: Column used to order samples
        top_n: Number of genes (half up, half down)
        label_col: Column used for gene labels (falls back to 'gene')

    Returns:
        matplotlib Figure, or None when no gene is significant
    """
    ranked = de_results.dropna(subset=["logFC", "P.Value"])
    sig = ranked[ranked["significant"].astype(bool)].sort_values("P.Value", kind="mergesort")
    top_up = sig[sig["logFC"] > 0].head(top_n // 2)
    top_down = sig[sig["logFC"] < 0].head(top_n // 2)
    top = pd.concat([top_up, top_down])
    if top.empty:
        print(f"No significant genes to plot for {contrast}")
        return None

    sample_order = metadata.sort_values(group_col, kind="mergesort").index
    heatmap_data = log_cpm_df.loc[top["gene"], sample_order]

    labels = top[label_col] if label_col in top.columns else top["gene"]
    heatmap_data.index = [str(lbl) if pd.notna(lbl) else gene for lbl, gene in zip(labels, top["gene"])]

    # Row-centred so the colour shows the change between groups
    heatmap_data = heatmap_data.sub(heatmap_data.mean(axis=1), axis=0)

    fig, ax = plt.subplots(figsize=(max(6, 0.5 * len(sample_order) + 3), max(6, len(top) * 0.3)))
    cmap = sns.diverging_palette(220, 20, as_cmap=True)
    sns.heatmap(
        heatmap_data,
        cmap=cmap,
        center=0,
        xticklabels=[f"{s} ({metadata.loc[s, group_col]})" for s in sample_order],
        yticklabels=True,
        cbar_kws={"label": "Centred log2 CPM"},
        ax=ax,
    )
    ax.set_title(f"{contrast}\nTop {len(top)} DE genes", fontsize=14, fontweight="bold")
    ax.set_xlabel("Samples (grouped by condition)", fontsize=12)
    ax.set_ylabel("Genes", fontsize=12)
    plt.xticks(rotation=45, ha="right")
    plt.tight_layout()
    return fig


def plot_top_pathways(gsea_df, contrast, max_terms=12, fdr_threshold=0.1):
    """Horizontal bar plot of top enriched pathways

    Returns:
        matplotlib Figure, or None when no pathway passes the cutoff
    """
    if gsea_df.empty:
        print("No enrichment results to plot.")
        return None

    subset = gsea_df[gsea_df["fdr"] <= fdr_threshold].copy()
    if subset.empty:
        print(f"No pathways pass FDR ≤ {fdr_threshold} for {contrast}.")
        return None

    top_up = subset[subset["nes"] > 0].sort_values("nes", ascending=False).head(max_terms // 2)
    top_down = subset[subset["nes"] < 0].sort_values("nes", ascending=True).head(max_terms // 2)
    top_hits = pd.concat([top_up, top_down]).sort_values("nes")

    fig, ax = plt.subplots(figsize=(8, max(4, 0.4 * len(top_hits))))
    colors = top_hits["nes"].apply(lambda x: "#d7301f" if x > 0 else "#225ea8")
    display_names = [name[:60] + "..." if len(name) > 60 else name for name in top_hits["term"].astype(str)]
    ax.barh(display_names, top_hits["nes"], color=colors)
    ax.axvline(0, color="black", linewidth=1)
    ax.set_xlabel("Normalized Enrichment Score (NES)")
    ax.set_ylabel("Pathway")
    ax.set_title(f"Top pathways: {contrast}")
    plt.tight_layout()
    return fig


def plot_enrichment_overlap(comparison, contrast, category):
    """Venn diagram of significant terms from ORA and GSEA"""
    fig, ax = plt.subplots(figsize=(6, 6))
    venn2(
        subsets=(
            len(comparison["ora_only"]),
            len(comparison["gsea_only"]),
            len(comparison["shared"]),
        ),
        set_labels=("Hypergeometric", "GSEA"),
        ax=ax,
    )
    ax.set_title(f"Significant {category} gene sets\n{contrast}", fontsize=12, fontweight="bold")
    return fig
