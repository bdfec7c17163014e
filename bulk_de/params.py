#!/usr/bin/env python3
"""
Analysis parameters for the bulk RNA-seq DE and pathway enrichment pipeline

This file centralizes all thresholds and defaults used in the pipeline.
Modify these values (or pass overrides on the command line) to adjust the run.
"""

from copy import deepcopy

# Input / output locations
INPUT_FILES = {
    "counts": "data/counts.txt",  # genes x samples, tab-delimited
    "meta": "data/meta.txt",  # samples x labels, tab-delimited
    "outdir": ".",  # data/ and results/ are created below this
}

# Exploratory PCA
PCA_PARAMS = {
    "top_n": 500,  # Number of most variable VST genes used for PCA
    "color_by": None,  # Metadata columns used to color the PCA (None = group_col)
}

# Low-count filter and normalization
FILTER_PARAMS = {
    "min_cpm": 0.5,  # Keep genes with CPM strictly above this...
    "min_samples": 2,  # ...in at least this many samples
    "norm_method": "median_ratio",  # "median_ratio" (PyDESeq2 size factors) or "none"
    "prior_count": 2,  # Prior count for log2 CPM reporting table
}

# Differential expression
DE_PARAMS = {
    "group_col": "condition",  # Metadata column defining the groups
    "design": None,  # Optional formula (e.g. "~batch + condition"); None = group indicators
    "contrast": None,  # (test_level, reference_level)
    "fdr_threshold": 0.05,  # Significance cutoff used for summaries / selection
    "fc_threshold": 1.0,  # |log2FC| cutoff for the significance flag
    "cooks_filter": True,
    "independent_filter": False,  # Plain BH adjustment when False
    "n_cpus": 1,
}

# Gene set enrichment
ENRICHMENT_PARAMS = {
    "category": "H",  # Key into GENE_SET_LIBRARIES
    "gmt_path": None,  # Local GMT file; overrides the library download
    "id_column": "symbol",  # Identifier namespace matching the gene sets
    "direction": "up",  # ORA query genes: "up", "down" or "both"
    "rank_metric": "logFC",  # "logFC" or "signed_significance"
    "min_size": 15,
    "max_size": 500,
    "permutation_num": 1000,
    "seed": 42,
    "threads": 1,
}

# Annotation
ANNOTATION_PARAMS = {
    "species": "human",  # mygene species name
    "strip_version": True,  # Drop Ensembl version suffixes before lookup
    "skip": False,
}

# Gene set libraries keyed by category code.
# Format: category -> library name for gseapy.get_library
GENE_SET_LIBRARIES = {
    "H": "MSigDB_Hallmark_2020",
    "C2_KEGG": "KEGG_2021_Human",
    "C2_REACTOME": "Reactome_2022",
    "C5_GO_BP": "GO_Biological_Process_2023",
    "C5_GO_MF": "GO_Molecular_Function_2023",
}

# mygene species name -> Enrichr organism
SPECIES = {
    "human": "Human",
    "mouse": "Mouse",
    "rat": "Rat",
    "zebrafish": "Fish",
    "fruitfly": "Fly",
    "nematode": "Worm",
    "yeast": "Yeast",
}


def merge_params(defaults, overrides=None):
    """Return a copy of `defaults` updated with the non-None entries of `overrides`

    Args:
        defaults: Parameter dictionary
        overrides: Dictionary of overrides (None values are ignored)

    Returns:
        New parameter dictionary
    """
    merged = deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if key not in merged:
            raise ValueError(f"Unknown parameter: {key}")
        if value is not None:
            merged[key] = value
    return merged


def get_param_summary(
    filter_params=FILTER_PARAMS,
    de_params=DE_PARAMS,
    enrichment_params=ENRICHMENT_PARAMS,
    pca_params=PCA_PARAMS,
    annotation_params=ANNOTATION_PARAMS,
):
    """Return a formatted summary of the current analysis settings"""
    contrast = de_params["contrast"]
    contrast_text = f"{contrast[0]} vs {contrast[1]}" if contrast else "not set"
    summary = [
        "=== Analysis Settings ===",
        "\nExploration:",
        f"  - PCA on top {pca_params['top_n']} variable genes (VST)",
        "\nFiltering / normalization:",
        f"  - Keep genes with CPM > {filter_params['min_cpm']} in >= {filter_params['min_samples']} samples",
        f"  - Normalization factors: {filter_params['norm_method']}",
        "\nDifferential expression:",
        f"  - Group column: {de_params['group_col']}",
        f"  - Design: {de_params['design'] or 'group indicators (no intercept)'}",
        f"  - Contrast: {contrast_text}",
        f"  - FDR < {de_params['fdr_threshold']}, |log2FC| > {de_params['fc_threshold']}",
        "\nEnrichment:",
        f"  - Category: {enrichment_params['category']}"
        + (f" (GMT: {enrichment_params['gmt_path']})" if enrichment_params["gmt_path"] else ""),
        f"  - Species: {annotation_params['species']}",
        f"  - GSEA ranking: {enrichment_params['rank_metric']}, "
        f"{enrichment_params['permutation_num']} permutations (seed={enrichment_params['seed']})",
    ]
    return "\n".join(summary)


def validate_params(
    filter_params=FILTER_PARAMS,
    de_params=DE_PARAMS,
    enrichment_params=ENRICHMENT_PARAMS,
    pca_params=PCA_PARAMS,
    annotation_params=ANNOTATION_PARAMS,
):
    """Validate that parameter values make sense"""
    errors = []

    if pca_params["top_n"] < 2:
        errors.append("top_n must be at least 2")

    if filter_params["min_cpm"] < 0:
        errors.append("min_cpm must be non-negative")
    if filter_params["min_samples"] < 1:
        errors.append("min_samples must be at least 1")
    if filter_params["norm_method"] not in ("median_ratio", "none"):
        errors.append("norm_method must be 'median_ratio' or 'none'")
    if filter_params["prior_count"] <= 0:
        errors.append("prior_count must be positive")

    if not 0 < de_params["fdr_threshold"] < 1:
        errors.append("fdr_threshold must be between 0 and 1")
    if de_params["fc_threshold"] < 0:
        errors.append("fc_threshold must be non-negative")
    contrast = de_params["contrast"]
    if contrast is not None:
        if len(contrast) != 2:
            errors.append("contrast must be a (test_level, reference_level) pair")
        elif contrast[0] == contrast[1]:
            errors.append("contrast levels must differ")

    if enrichment_params["direction"] not in ("up", "down", "both"):
        errors.append("direction must be 'up', 'down' or 'both'")
    if enrichment_params["rank_metric"] not in ("logFC", "signed_significance"):
        errors.append("rank_metric must be 'logFC' or 'signed_significance'")
    if enrichment_params["min_size"] > enrichment_params["max_size"]:
        errors.append("min_size must not exceed max_size")
    if enrichment_params["permutation_num"] < 1:
        errors.append("permutation_num must be positive")
    if (
        enrichment_params["gmt_path"] is None
        and enrichment_params["category"] not in GENE_SET_LIBRARIES
    ):
        errors.append(
            f"Unknown gene set category '{enrichment_params['category']}' "
            f"(known: {', '.join(GENE_SET_LIBRARIES)})"
        )

    if annotation_params["species"] not in SPECIES:
        errors.append(f"Unknown species '{annotation_params['species']}'")

    if errors:
        raise ValueError("Parameter validation failed:\n" + "\n".join(errors))

    return True


# Run validation on import
validate_params()
