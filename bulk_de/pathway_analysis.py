#!/usr/bin/env python3
"""
Pathway analysis utilities for bulk RNA-seq
Handles gene set loading, hypergeometric over-representation and preranked GSEA
"""

from pathlib import Path

import numpy as np
import pandas as pd
import gseapy as gp
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

from bulk_de.errors import EmptyEnrichmentResult, GeneSetLoadError
from bulk_de.params import GENE_SET_LIBRARIES, SPECIES

ORA_COLUMNS = [
    "term",
    "overlap",
    "set_size",
    "query_size",
    "background_size",
    "odds_ratio",
    "pval",
    "fdr",
    "genes",
]

GSEA_COLUMNS = [
    "term",
    "es",
    "nes",
    "pval",
    "fdr",
    "fwer_p_val",
    "tag_percent",
    "gene_percent",
    "lead_genes",
]


def load_gene_sets(category="H", species="human", gmt_path=None, libraries=GENE_SET_LIBRARIES):
    """Load a gene set collection

    Args:
        category: Category code, key into `libraries`
        species: mygene-style species name (mapped to the Enrichr organism)
        gmt_path: Local GMT file; takes precedence over the library download
        libraries: Mapping category -> Enrichr library name

    Returns:
        Dict gene set name -> list of member genes
    """
    if gmt_path is not None:
        gmt_path = Path(gmt_path)
        print(f"Loading gene sets from {gmt_path}...")
        if not gmt_path.exists():
            raise GeneSetLoadError(f"GMT file not found: {gmt_path}")
        gene_sets = gp.read_gmt(str(gmt_path))
    else:
        if category not in libraries:
            raise GeneSetLoadError(
                f"Unknown category '{category}' (known: {', '.join(libraries)})"
            )
        library_name = libraries[category]
        organism = SPECIES.get(species, "Human")
        print(f"Loading {category} from {library_name} (organism={organism})...")
        try:
            gene_sets = gp.get_library(name=library_name, organism=organism)
        except Exception as exc:
            raise GeneSetLoadError(f"Could not load {library_name} for {organism}: {exc}") from exc

    if not gene_sets:
        raise GeneSetLoadError(f"Gene set collection '{category}' is empty")

    gene_sets = {name: list(dict.fromkeys(members)) for name, members in gene_sets.items()}
    print(f"  ✓ Loaded {len(gene_sets)} gene sets")
    return gene_sets


def run_overrepresentation(query_genes, background_genes, gene_sets, fdr_threshold=0.05):
    """Hypergeometric over-representation test of a gene list against each gene set

    Gene set members are restricted to the background. Sets without any overlap
    with the query are not reported.

    Args:
        query_genes: Significant genes
        background_genes: All tested genes (same identifier namespace)
        gene_sets: Dict gene set name -> members
        fdr_threshold: Cutoff used to report how many sets are significant

    Returns:
        Tuple of (DataFrame sorted by p-value, list of EmptyEnrichmentResult warnings)
    """
    print("Running over-representation analysis...")

    background = set(map(str, background_genes))
    query = set(map(str, query_genes)) & background
    n_background = len(background)
    n_query = len(query)
    print(f"  Query: {n_query} genes, background: {n_background} genes")

    rows = []
    for term, members in gene_sets.items():
        members = set(map(str, members)) & background
        overlap = query & members
        k = len(overlap)
        if k == 0:
            continue
        n_set = len(members)

        # P(X >= k) for X ~ Hypergeom(M=background, n=set size, N=query size)
        pval = float(hypergeom.sf(k - 1, n_background, n_set, n_query))

        # 2x2 table: in query / not in query vs in set / not in set
        a = k
        b = n_query - k
        c = n_set - k
        d = n_background - n_query - n_set + k
        odds_ratio = (a * d) / (b * c) if b * c > 0 else np.inf

        rows.append(
            {
                "term": term,
                "overlap": k,
                "set_size": n_set,
                "query_size": n_query,
                "background_size": n_background,
                "odds_ratio": odds_ratio,
                "pval": pval,
                "genes": ";".join(sorted(overlap)),
            }
        )

    ora_df = pd.DataFrame(rows, columns=[c for c in ORA_COLUMNS if c != "fdr"])
    if ora_df.empty:
        ora_df["fdr"] = pd.Series(dtype=float)
    else:
        ora_df["fdr"] = multipletests(ora_df["pval"], method="fdr_bh")[1]
        ora_df = ora_df.sort_values(["pval", "term"], kind="mergesort").reset_index(drop=True)
    ora_df = ora_df[ORA_COLUMNS]

    warnings_list = _check_significant(ora_df, fdr_threshold, "over-representation")
    print(f"  ✓ {len(ora_df)} gene sets overlap the query")
    return ora_df, warnings_list


def standardize_gsea_columns(df):
    """Lowercase/slugify GSEApy columns and map vendor-specific names to canonical ones"""
    normalized = df.copy()
    normalized.columns = [
        col.strip().lower().replace(" ", "_").replace("-", "_") for col in normalized.columns
    ]

    column_aliases = {
        "nom_p_val": "pval",
        "nominal_p_value": "pval",
        "nominal_p_val": "pval",
        "p_value": "pval",
        "p_val": "pval",
        "fdr_q_val": "fdr",
        "fdr_q_value": "fdr",
        "fdr_q": "fdr",
        "fdr_qval": "fdr",
        "tag_%": "tag_percent",
        "gene_%": "gene_percent",
        "leading_edge": "lead_genes",
    }
    for source, target in column_aliases.items():
        if source in normalized.columns and target not in normalized.columns:
            normalized = normalized.rename(columns={source: target})

    return normalized


def run_gsea(
    ranking,
    gene_sets,
    min_size=15,
    max_size=500,
    permutation_num=1000,
    seed=42,
    threads=1,
    fdr_threshold=0.05,
):
    """Preranked GSEA with gene-set permutations

    Args:
        ranking: Series indexed by gene, sorted descending
        gene_sets: Dict gene set name -> members
        min_size: Minimum gene set size after restricting to the ranking
        max_size: Maximum gene set size
        permutation_num: Number of permutations
        seed: Random seed
        threads: Worker threads for gseapy
        fdr_threshold: Cutoff used to report how many sets are significant

    Returns:
        Tuple of (DataFrame sorted by NES descending, list of EmptyEnrichmentResult warnings)
    """
    print(f"Running preranked GSEA ({permutation_num} permutations, seed={seed})...")

    ranked_genes = set(ranking.index.astype(str))
    n_eligible = sum(
        1
        for members in gene_sets.values()
        if min_size <= len(set(map(str, members)) & ranked_genes) <= max_size
    )
    if ranking.empty or n_eligible == 0:
        print(f"  Skipping: no gene set has {min_size}-{max_size} members in the ranking")
        gsea_df = pd.DataFrame(columns=GSEA_COLUMNS)
        return gsea_df, _check_significant(gsea_df, fdr_threshold, "GSEA")

    prerank_res = gp.prerank(
        rnk=ranking,
        gene_sets=gene_sets,
        min_size=min_size,
        max_size=max_size,
        permutation_num=permutation_num,
        outdir=None,
        seed=seed,
        threads=threads,
        no_plot=True,
        verbose=False,
    )

    res_df = prerank_res.res2d.copy()
    if "Term" not in res_df.columns:
        res_df = res_df.reset_index().rename(columns={"index": "Term"})
    res_df = standardize_gsea_columns(res_df)
    res_df = res_df.drop(columns=["name"], errors="ignore")

    for col in ["es", "nes", "pval", "fdr", "fwer_p_val"]:
        res_df[col] = pd.to_numeric(res_df[col], errors="coerce")

    for col in GSEA_COLUMNS:
        if col not in res_df.columns:
            res_df[col] = np.nan
    gsea_df = (
        res_df[GSEA_COLUMNS]
        .sort_values(["nes", "term"], ascending=[False, True], kind="mergesort")
        .reset_index(drop=True)
    )

    warnings_list = _check_significant(gsea_df, fdr_threshold, "GSEA")
    print(f"  ✓ {len(gsea_df)} gene sets tested")
    return gsea_df, warnings_list


def _check_significant(results_df, fdr_threshold, method):
    """EmptyEnrichmentResult when no gene set passes the FDR cutoff"""
    n_sig = int((results_df["fdr"] < fdr_threshold).sum()) if len(results_df) else 0
    if n_sig:
        print(f"  {n_sig} gene sets with FDR < {fdr_threshold} ({method})")
        return []
    warning = EmptyEnrichmentResult(f"No gene set passes FDR < {fdr_threshold} ({method})")
    print(f"  ⚠️  {warning}")
    return [warning]


def significant_terms(results_df, fdr_threshold=0.05):
    """Set of term names with FDR below the cutoff"""
    if results_df.empty:
        return set()
    return set(results_df.loc[results_df["fdr"] < fdr_threshold, "term"].astype(str))


def compare_enrichment(ora_df, gsea_df, fdr_threshold=0.05):
    """Compare the significant term sets of the two methods

    Args:
        ora_df: Over-representation results
        gsea_df: GSEA results
        fdr_threshold: FDR cutoff defining significant terms

    Returns:
        Dict with the 'ora', 'gsea', 'shared', 'ora_only' and 'gsea_only' term sets
    """
    ora_terms = significant_terms(ora_df, fdr_threshold)
    gsea_terms = significant_terms(gsea_df, fdr_threshold)
    comparison = {
        "ora": ora_terms,
        "gsea": gsea_terms,
        "shared": ora_terms & gsea_terms,
        "ora_only": ora_terms - gsea_terms,
        "gsea_only": gsea_terms - ora_terms,
    }
    print(
        f"Significant terms: {len(ora_terms)} ORA, {len(gsea_terms)} GSEA, "
        f"{len(comparison['shared'])} shared"
    )
    return comparison
