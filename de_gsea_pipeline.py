#!/usr/bin/env python3
"""
Bulk RNA-seq differential expression and pathway enrichment

This script performs:
1. Loading and validation of the count matrix and sample metadata
2. Exploratory PCA on variance-stabilized counts
3. Gene annotation (symbols / Entrez ids)
4. Low-count filtering and normalization
5. Negative binomial differential expression for one contrast
6. Hypergeometric over-representation and preranked GSEA
7. Tables, plots and a run summary
"""

import argparse
import sys
import warnings

import matplotlib

matplotlib.use("Agg")

import scanpy as sc

from bulk_de.annotation import annotate_genes, empty_annotation, join_annotation
from bulk_de.data_loader import load_dataset
from bulk_de.differential_expression import (
    contrast_label,
    rank_genes,
    run_differential_expression,
    select_significant_genes,
    summarize_de,
    top_genes,
)
from bulk_de.errors import FitConvergenceError, PipelineError
from bulk_de.normalization import filter_and_normalize
from bulk_de.params import (
    ANNOTATION_PARAMS,
    DE_PARAMS,
    ENRICHMENT_PARAMS,
    FILTER_PARAMS,
    INPUT_FILES,
    PCA_PARAMS,
    get_param_summary,
    merge_params,
    validate_params,
)
from bulk_de.pathway_analysis import (
    compare_enrichment,
    load_gene_sets,
    run_gsea,
    run_overrepresentation,
)
from bulk_de.processing import explore_samples
from bulk_de import reporting

# Configure
sc.settings.verbosity = 1
warnings.filterwarnings("ignore")


def resolve_contrast(metadata, group_col, contrast=None):
    """Return (test_level, reference_level)

    Without an explicit contrast the group column must have exactly two levels;
    the second level in sorted order is tested against the first.
    """
    levels = sorted(metadata[group_col].astype(str).unique())
    if contrast is not None:
        return str(contrast[0]), str(contrast[1])
    if len(levels) != 2:
        raise FitConvergenceError(
            f"Group column '{group_col}' has levels {levels}; pass --contrast TEST REF"
        )
    return levels[1], levels[0]


def main(
    counts_path=INPUT_FILES["counts"],
    meta_path=INPUT_FILES["meta"],
    outdir=INPUT_FILES["outdir"],
    pca_params=None,
    filter_params=None,
    de_params=None,
    enrichment_params=None,
    annotation_params=None,
    annotation_client=None,
):
    """Main analysis pipeline

    Args:
        counts_path: Path to the genes x samples count table
        meta_path: Path to the sample metadata table
        outdir: Directory receiving data/ and results/
        pca_params, filter_params, de_params, enrichment_params, annotation_params:
            Overrides for the defaults in bulk_de.params
        annotation_client: Optional mygene.MyGeneInfo instance

    Returns:
        Dict with the DE table, enrichment tables and the run summary
    """
    pca_params = merge_params(PCA_PARAMS, pca_params)
    filter_params = merge_params(FILTER_PARAMS, filter_params)
    de_params = merge_params(DE_PARAMS, de_params)
    enrichment_params = merge_params(ENRICHMENT_PARAMS, enrichment_params)
    annotation_params = merge_params(ANNOTATION_PARAMS, annotation_params)
    validate_params(filter_params, de_params, enrichment_params, pca_params, annotation_params)

    print("Starting differential expression and pathway enrichment analysis...")
    print(get_param_summary(filter_params, de_params, enrichment_params, pca_params, annotation_params))

    group_col = de_params["group_col"]
    fdr = de_params["fdr_threshold"]
    run_warnings = []
    summary = {}

    # Step 1: Load data
    print("\n=== Loading data ===")
    counts, metadata = load_dataset(counts_path, meta_path, group_col=group_col)
    group1, group2 = resolve_contrast(metadata, group_col, de_params["contrast"])
    label = contrast_label(group1, group2)
    category = enrichment_params["category"]
    paths = reporting.output_paths(outdir, label, category)
    summary["input"] = {
        "counts": str(counts_path),
        "meta": str(meta_path),
        "n_genes": int(counts.shape[0]),
        "n_samples": int(counts.shape[1]),
        "contrast": label,
    }

    # Step 2: Exploratory PCA
    print("\n=== Exploratory PCA ===")
    color_by = pca_params["color_by"] or group_col
    exploration = explore_samples(
        counts,
        metadata,
        color_by=color_by,
        top_n=pca_params["top_n"],
        n_cpus=de_params["n_cpus"],
    )
    summary["pca"] = {
        "top_n": int(min(pca_params["top_n"], exploration["vst"].shape[0])),
        "percent_var": exploration["percent_var"],
    }

    # Step 3: Annotation
    print("\n=== Annotation ===")
    if annotation_params["skip"]:
        print("Skipping annotation (symbol / entrez_id left empty)")
        annotation = empty_annotation(counts.index)
        summary["annotation"] = {"skipped": True}
    else:
        annotation, annotation_stats, gaps = annotate_genes(
            counts.index,
            species=annotation_params["species"],
            strip_versions=annotation_params["strip_version"],
            client=annotation_client,
        )
        run_warnings.extend(gaps)
        summary["annotation"] = annotation_stats

    id_column = enrichment_params["id_column"]
    if annotation_params["skip"] and id_column != "gene":
        print(f"  ⚠️  Annotation skipped; using 'gene' instead of '{id_column}' for enrichment")
        id_column = "gene"

    # Step 4: Filter and normalize
    print("\n=== Filtering and normalization ===")
    normalized = filter_and_normalize(
        counts,
        min_cpm=filter_params["min_cpm"],
        min_samples=filter_params["min_samples"],
        norm_method=filter_params["norm_method"],
        prior_count=filter_params["prior_count"],
        n_cpus=de_params["n_cpus"],
    )
    summary["filter"] = dict(normalized["stats"])
    summary["filter"]["norm_factors"] = {
        str(s): float(v) for s, v in normalized["norm_factors"].items()
    }

    # Step 5: Differential expression
    print("\n=== Differential expression ===")
    de_results = run_differential_expression(
        normalized["counts"],
        metadata,
        group1,
        group2,
        group_col=group_col,
        design=de_params["design"],
        fdr_threshold=fdr,
        fc_threshold=de_params["fc_threshold"],
        cooks_filter=de_params["cooks_filter"],
        independent_filter=de_params["independent_filter"],
        n_cpus=de_params["n_cpus"],
    )
    de_results = join_annotation(de_results, annotation)
    summary["differential_expression"] = summarize_de(de_results, fdr_threshold=fdr)

    # Step 6: Enrichment
    print("\n=== Enrichment ===")
    gene_sets = load_gene_sets(
        category=category,
        species=annotation_params["species"],
        gmt_path=enrichment_params["gmt_path"],
    )

    query = select_significant_genes(
        de_results,
        fdr_threshold=fdr,
        fc_threshold=de_params["fc_threshold"],
        direction=enrichment_params["direction"],
        id_column=id_column,
    )
    background = de_results.loc[de_results["P.Value"].notna(), id_column].dropna().astype(str).unique()
    ora_df, ora_warnings = run_overrepresentation(query, background, gene_sets, fdr_threshold=fdr)
    run_warnings.extend(ora_warnings)

    ranking = rank_genes(de_results, metric=enrichment_params["rank_metric"], id_column=id_column)
    gsea_df, gsea_warnings = run_gsea(
        ranking,
        gene_sets,
        min_size=enrichment_params["min_size"],
        max_size=enrichment_params["max_size"],
        permutation_num=enrichment_params["permutation_num"],
        seed=enrichment_params["seed"],
        threads=enrichment_params["threads"],
        fdr_threshold=fdr,
    )
    run_warnings.extend(gsea_warnings)

    comparison = compare_enrichment(ora_df, gsea_df, fdr_threshold=fdr)
    summary["enrichment"] = {
        "category": category,
        "id_column": id_column,
        "n_gene_sets": len(gene_sets),
        "query_size": len(query),
        "ora_tested": int(len(ora_df)),
        "ora_significant": len(comparison["ora"]),
        "gsea_tested": int(len(gsea_df)),
        "gsea_significant": len(comparison["gsea"]),
        "shared": sorted(comparison["shared"]),
    }

    # Step 7: Outputs
    print("\n=== Writing outputs ===")
    written = {
        "norm_counts": reporting.write_table(normalized["log_cpm"], paths["norm_counts"], index=True),
        "de": reporting.write_table(de_results, paths["de"]),
        "top_genes": reporting.write_table(top_genes(de_results, n=20), paths["top_genes"]),
        "ora": reporting.write_table(ora_df, paths["ora"]),
        "gsea": reporting.write_table(gsea_df, paths["gsea"]),
    }

    written["pca_plot"] = reporting.save_figure(
        reporting.plot_pca(exploration["pca"], exploration["percent_var"], color_by=color_by),
        paths["pca_plot"],
    )
    written["volcano_plot"] = reporting.save_figure(
        reporting.plot_volcano(
            de_results, label, fc_threshold=de_params["fc_threshold"], pval_threshold=fdr
        ),
        paths["volcano_plot"],
    )

    # Optional figures; a file from an earlier run must not outlive this one
    optional = {
        "heatmap_plot": reporting.plot_de_heatmap(
            normalized["log_cpm"], metadata, de_results, label, group_col
        ),
        "gsea_plot": reporting.plot_top_pathways(gsea_df, label, fdr_threshold=fdr),
    }
    for key, fig in optional.items():
        if fig is None:
            reporting.remove_stale(paths[key])
        else:
            written[key] = reporting.save_figure(fig, paths[key])

    written["venn_plot"] = reporting.save_figure(
        reporting.plot_enrichment_overlap(comparison, label, category), paths["venn_plot"]
    )

    summary["warnings"] = [w.as_record() for w in run_warnings]
    written["summary"] = paths["summary"]
    summary["outputs"] = {key: str(path) for key, path in written.items()}
    reporting.write_summary(summary, paths["summary"])

    de_summary = summary["differential_expression"]
    print("\n=== Summary ===")
    print(f"  {label}: {de_summary['n_up']} up, {de_summary['n_down']} down (FDR < {fdr})")
    print(
        f"  Enrichment: {len(comparison['ora'])} ORA, {len(comparison['gsea'])} GSEA, "
        f"{len(comparison['shared'])} shared significant sets"
    )
    for warning in run_warnings:
        print(f"  ⚠️  {warning.stage}: {warning}")
    print("Analysis complete!")

    return {
        "de_results": de_results,
        "ora": ora_df,
        "gsea": gsea_df,
        "comparison": comparison,
        "summary": summary,
    }


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Bulk RNA-seq differential expression and pathway enrichment"
    )
    parser.add_argument("--counts", default=INPUT_FILES["counts"], help="Count table (genes x samples)")
    parser.add_argument("--meta", default=INPUT_FILES["meta"], help="Sample metadata table")
    parser.add_argument(
        "--outdir",
        default=INPUT_FILES["outdir"],
        help="Directory to write data/ and results/ to (default: '.')",
    )
    parser.add_argument("--group-col", help=f"Metadata group column (default: '{DE_PARAMS['group_col']}')")
    parser.add_argument("--design", help="Design formula, e.g. '~batch + condition'")
    parser.add_argument(
        "--contrast",
        nargs=2,
        metavar=("TEST", "REF"),
        help="Levels of the group column to compare",
    )
    parser.add_argument("--top-n", type=int, help="Variable genes used for PCA")
    parser.add_argument("--min-cpm", type=float, help="CPM threshold for the expression filter")
    parser.add_argument("--min-samples", type=int, help="Samples required above --min-cpm")
    parser.add_argument("--norm-method", choices=["median_ratio", "none"], help="Normalization factors")
    parser.add_argument("--fdr", type=float, help="Adjusted p-value cutoff")
    parser.add_argument("--lfc", type=float, help="|log2FC| cutoff for significant genes")
    parser.add_argument("--direction", choices=["up", "down", "both"], help="Genes used for ORA")
    parser.add_argument("--category", help="Gene set category (H, C2_KEGG, C2_REACTOME, C5_GO_BP, C5_GO_MF)")
    parser.add_argument("--species", help="Species for annotation and gene set libraries")
    parser.add_argument("--gmt", help="Local GMT file used instead of the library download")
    parser.add_argument("--id-column", choices=["symbol", "entrez_id", "gene"], help="Identifiers matched against gene sets")
    parser.add_argument("--rank-metric", choices=["logFC", "signed_significance"], help="GSEA ranking metric")
    parser.add_argument("--permutations", type=int, help="GSEA permutations")
    parser.add_argument("--seed", type=int, help="GSEA random seed")
    parser.add_argument("--skip-annotation", action="store_true", help="Do not query mygene.info")
    return parser.parse_args(argv)


def cli(argv=None):
    args = parse_args(argv)
    try:
        main(
            counts_path=args.counts,
            meta_path=args.meta,
            outdir=args.outdir,
            pca_params={"top_n": args.top_n},
            filter_params={
                "min_cpm": args.min_cpm,
                "min_samples": args.min_samples,
                "norm_method": args.norm_method,
            },
            de_params={
                "group_col": args.group_col,
                "design": args.design,
                "contrast": tuple(args.contrast) if args.contrast else None,
                "fdr_threshold": args.fdr,
                "fc_threshold": args.lfc,
            },
            enrichment_params={
                "category": args.category,
                "gmt_path": args.gmt,
                "id_column": args.id_column,
                "direction": args.direction,
                "rank_metric": args.rank_metric,
                "permutation_num": args.permutations,
                "seed": args.seed,
            },
            annotation_params={
                "species": args.species,
                "skip": args.skip_annotation or None,
            },
        )
    except PipelineError as exc:
        print(f"Error in stage '{exc.stage}': {exc.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    cli()
