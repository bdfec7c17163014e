# %% [markdown]
# # Bulk RNA-seq walkthrough: differential expression and pathway enrichment
#
# **📥 Input:** `data/counts.txt`, `data/meta.txt`
# **📤 Output:** `data/norm_counts.tsv`, `results/`
#
# ---
#
# ## Overview
#
# This notebook runs the pipeline one stage at a time so the intermediate tables can be inspected.
#
# **Key Steps:**
# 1. Load the count matrix and sample metadata
# 2. Exploratory PCA on variance-stabilized counts
# 3. Annotate Ensembl ids with symbols and Entrez ids
# 4. Filter lowly expressed genes and compute median-of-ratios factors
# 5. Differential expression with PyDESeq2 (indicator design, one contrast)
# 6. Hypergeometric over-representation and preranked GSEA
# 7. Compare the two enrichment methods and save everything
#
# `de_gsea_pipeline.py` runs the same steps non-interactively.
#
# ---

# %% [markdown]
# ## 1. Setup & Load Data

# %%
from pathlib import Path

import matplotlib.pyplot as plt
import seaborn as sns

from bulk_de.annotation import annotate_genes, join_annotation
from bulk_de.data_loader import load_dataset
from bulk_de.differential_expression import (
    contrast_label,
    rank_genes,
    run_differential_expression,
    select_significant_genes,
    summarize_de,
    top_genes,
)
from bulk_de.normalization import filter_and_normalize
from bulk_de.pathway_analysis import (
    compare_enrichment,
    load_gene_sets,
    run_gsea,
    run_overrepresentation,
)
from bulk_de.processing import explore_samples
from bulk_de import reporting

plt.style.use("seaborn-v0_8-whitegrid")
sns.set_palette("deep")

# %%
PROJECT_ROOT = Path(".").resolve()
COUNTS_PATH = PROJECT_ROOT / "data/counts.txt"
META_PATH = PROJECT_ROOT / "data/meta.txt"

GROUP_COL = "condition"
CONTRAST = ("treated", "control")  # (test level, reference level)
CATEGORY = "H"  # MSigDB Hallmark via Enrichr
SPECIES = "human"
FDR = 0.05
LFC = 1.0

LABEL = contrast_label(*CONTRAST)
PATHS = reporting.output_paths(PROJECT_ROOT, LABEL, CATEGORY)

counts, metadata = load_dataset(COUNTS_PATH, META_PATH, group_col=GROUP_COL)
metadata

# %% [markdown]
# ## 2. Exploratory PCA
#
# The VST is blind to the design. Samples should separate by condition on PC1 if the treatment effect
# dominates; separation by another column (batch, sex) is worth adding to the design formula.

# %%
exploration = explore_samples(counts, metadata, color_by=GROUP_COL, top_n=500)
fig = reporting.plot_pca(exploration["pca"], exploration["percent_var"], color_by=GROUP_COL)
plt.show()

# %% [markdown]
# ## 3. Annotation
#
# Requires network access to mygene.info. Genes without a symbol keep a null symbol and are
# dropped from the symbol-based enrichment.

# %%
annotation, annotation_stats, gaps = annotate_genes(counts.index, species=SPECIES)
print(annotation_stats)
annotation.head()

# %% [markdown]
# ## 4. Filtering & normalization
#
# Normalization factors and the log-CPM table are used for plots only. PyDESeq2 receives the raw filtered
# counts and estimates its own size factors.

# %%
normalized = filter_and_normalize(counts, min_cpm=0.5, min_samples=2, norm_method="median_ratio")
normalized["norm_factors"]

# %% [markdown]
# ## 5. Differential expression

# %%
de_results = run_differential_expression(
    normalized["counts"],
    metadata,
    CONTRAST[0],
    CONTRAST[1],
    group_col=GROUP_COL,
    fdr_threshold=FDR,
    fc_threshold=LFC,
)
de_results = join_annotation(de_results, annotation)
print(summarize_de(de_results, fdr_threshold=FDR))
top_genes(de_results, n=20)

# %%
fig = reporting.plot_volcano(de_results, LABEL, fc_threshold=LFC, pval_threshold=FDR)
plt.show()

fig = reporting.plot_de_heatmap(normalized["log_cpm"], metadata, de_results, LABEL, GROUP_COL)
if fig is not None:
    plt.show()

# %% [markdown]
# ## 6. Enrichment
#
# Over-representation uses only the upregulated genes against all tested genes.
# GSEA uses every tested gene ranked by log2 fold change.

# %%
gene_sets = load_gene_sets(category=CATEGORY, species=SPECIES)

query = select_significant_genes(de_results, FDR, LFC, direction="up", id_column="symbol")
background = de_results.loc[de_results["P.Value"].notna(), "symbol"].dropna().unique()
ora_df, ora_warnings = run_overrepresentation(query, background, gene_sets, fdr_threshold=FDR)
ora_df.head(10)

# %%
ranking = rank_genes(de_results, metric="logFC", id_column="symbol")
gsea_df, gsea_warnings = run_gsea(ranking, gene_sets, permutation_num=1000, seed=42)
gsea_df.head(10)

# %%
fig = reporting.plot_top_pathways(gsea_df, LABEL, fdr_threshold=FDR)
if fig is not None:
    plt.show()

# %% [markdown]
# ## 7. Compare methods & save

# %%
comparison = compare_enrichment(ora_df, gsea_df, fdr_threshold=FDR)
fig = reporting.plot_enrichment_overlap(comparison, LABEL, CATEGORY)
plt.show()
sorted(comparison["shared"])

# %%
reporting.write_table(normalized["log_cpm"], PATHS["norm_counts"], index=True)
reporting.write_table(de_results, PATHS["de"])
reporting.write_table(ora_df, PATHS["ora"])
reporting.write_table(gsea_df, PATHS["gsea"])

for warning in gaps + ora_warnings + gsea_warnings:
    print(f"⚠️  {warning.stage}: {warning}")
