#!/usr/bin/env python3
"""
Gene annotation utilities
Maps primary gene identifiers (Ensembl gene ids by default) to gene symbols and
Entrez ids using mygene.info
"""

import numpy as np
import pandas as pd
import mygene

from bulk_de.errors import AnnotationGap

ANNOTATION_COLUMNS = ["symbol", "entrez_id"]


def strip_version(gene_id):
    """ENSG00000141510.17 -> ENSG00000141510"""
    gene_id = str(gene_id)
    if gene_id.startswith("ENS") and "." in gene_id:
        return gene_id.split(".", 1)[0]
    return gene_id


def _guess_scope(query_ids):
    """Pick the mygene query scope from the look of the identifiers"""
    if all(q.isdigit() for q in query_ids):
        return "entrezgene"
    if all(q.startswith("ENS") for q in query_ids):
        return "ensembl.gene"
    return "symbol,alias"


def query_gene_info(query_ids, species="human", scopes=None, client=None):
    """Look up symbol and Entrez id for a list of identifiers

    Args:
        query_ids: Unique identifiers to query
        species: mygene species name
        scopes: mygene scopes (guessed from the identifiers when None)
        client: Optional mygene.MyGeneInfo instance

    Returns:
        Dict query id -> {"symbol": ..., "entrez_id": ...} for the ids that were found
    """
    if not query_ids:
        return {}

    if client is None:
        client = mygene.MyGeneInfo()
    if scopes is None:
        scopes = _guess_scope(query_ids)

    hits = client.querymany(
        query_ids,
        scopes=scopes,
        fields="symbol,entrezgene",
        species=species,
        returnall=False,
        verbose=False,
    )

    found = {}
    for hit in hits:
        query = str(hit.get("query"))
        # First hit per query wins so reruns give the same mapping
        if hit.get("notfound") or query in found:
            continue
        symbol = hit.get("symbol")
        entrez = hit.get("entrezgene")
        found[query] = {
            "symbol": str(symbol) if symbol is not None else np.nan,
            "entrez_id": str(entrez) if entrez is not None else np.nan,
        }
    return found


def annotate_genes(gene_ids, species="human", strip_versions=True, client=None):
    """Build the gene annotation table

    Args:
        gene_ids: Primary gene identifiers
        species: mygene species name
        strip_versions: Drop Ensembl version suffixes before the lookup
        client: Optional mygene.MyGeneInfo instance

    Returns:
        Tuple of (DataFrame indexed by gene id with symbol/entrez_id columns,
                  coverage stats dict, list of AnnotationGap warnings)
    """
    print(f"Annotating {len(gene_ids):,} genes via mygene ({species})...")

    gene_ids = [str(g) for g in gene_ids]
    query_for = {g: strip_version(g) if strip_versions else g for g in gene_ids}
    unique_queries = list(dict.fromkeys(query_for.values()))

    found = query_gene_info(unique_queries, species=species, client=client)

    rows = []
    for gene in gene_ids:
        info = found.get(query_for[gene], {})
        rows.append(
            {
                "gene": gene,
                "symbol": info.get("symbol", np.nan),
                "entrez_id": info.get("entrez_id", np.nan),
            }
        )
    annotation = pd.DataFrame(rows, columns=["gene"] + ANNOTATION_COLUMNS).set_index("gene")

    n_total = len(annotation)
    n_symbol = int(annotation["symbol"].notna().sum())
    n_entrez = int(annotation["entrez_id"].notna().sum())
    stats = {
        "n_genes": n_total,
        "n_with_symbol": n_symbol,
        "n_with_entrez": n_entrez,
        "symbol_coverage": n_symbol / n_total if n_total else 0.0,
    }

    gaps = []
    n_missing = n_total - n_symbol
    if n_missing:
        gap = AnnotationGap(
            f"{n_missing:,} of {n_total:,} genes have no symbol "
            f"({stats['symbol_coverage'] * 100:.1f}% coverage)"
        )
        gaps.append(gap)
        print(f"  ⚠️  {gap}")
    print(f"  ✓ {n_symbol:,} symbols, {n_entrez:,} Entrez ids")

    return annotation, stats, gaps


def empty_annotation(gene_ids):
    """Annotation table with only nulls, used when annotation is skipped"""
    annotation = pd.DataFrame(
        np.nan, index=pd.Index([str(g) for g in gene_ids], name="gene"), columns=ANNOTATION_COLUMNS
    )
    return annotation.astype(object)


def join_annotation(df, annotation, gene_col="gene"):
    """Left-join annotation columns onto a per-gene table, keeping row order"""
    joined = df.copy()
    mapped = annotation.reindex(joined[gene_col].astype(str))
    for col in ANNOTATION_COLUMNS:
        joined[col] = mapped[col].values
    return joined
