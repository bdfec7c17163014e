"""
Tests for gene set loading, over-representation analysis and preranked GSEA.
"""
import copy

import gseapy as gp
import numpy as np
import pandas as pd
import pytest
from scipy.stats import hypergeom

from bulk_de.errors import EmptyEnrichmentResult, GeneSetLoadError
from bulk_de.pathway_analysis import (
    GSEA_COLUMNS,
    ORA_COLUMNS,
    compare_enrichment,
    load_gene_sets,
    run_gsea,
    run_overrepresentation,
    standardize_gsea_columns,
)

BACKGROUND = [f"G{i:03d}" for i in range(1, 201)]


@pytest.fixture
def gene_sets():
    rng = np.random.default_rng(7)
    sets = {"TOP": BACKGROUND[:20]}
    for i in range(8):
        sets[f"RANDOM_{i}"] = sorted(rng.choice(BACKGROUND, size=20, replace=False).tolist())
    sets["OUTSIDE"] = [f"X{i}" for i in range(20)]
    return sets


@pytest.fixture
def ranking():
    scores = np.linspace(3.0, -3.0, len(BACKGROUND))
    return pd.Series(scores, index=pd.Index(BACKGROUND, name="gene"))


class TestGeneSets:
    """Test suite for gene set loading."""

    def test_read_gmt(self, gmt_file, up_genes):
        sets = load_gene_sets(gmt_path=gmt_file)
        assert set(sets) == {"UP_SET", "MIXED_SET", "ABSENT_SET"}
        assert sets["UP_SET"] == up_genes

    def test_missing_gmt(self, tmp_path):
        with pytest.raises(GeneSetLoadError) as excinfo:
            load_gene_sets(gmt_path=tmp_path / "missing.gmt")
        assert excinfo.value.stage == "enrichment"

    def test_library_download(self, monkeypatch):
        calls = {}

        def fake_get_library(name, organism):
            calls["args"] = (name, organism)
            return {"HALLMARK_A": ["TP53", "MDM2", "TP53"]}

        monkeypatch.setattr(gp, "get_library", fake_get_library)
        sets = load_gene_sets(category="H", species="mouse")

        assert calls["args"] == ("MSigDB_Hallmark_2020", "Mouse")
        assert sets == {"HALLMARK_A": ["TP53", "MDM2"]}

    def test_library_failure(self, monkeypatch):
        def failing_get_library(name, organism):
            raise ConnectionError("offline")

        monkeypatch.setattr(gp, "get_library", failing_get_library)
        with pytest.raises(GeneSetLoadError, match="offline"):
            load_gene_sets(category="H")

    def test_unknown_category(self):
        with pytest.raises(GeneSetLoadError):
            load_gene_sets(category="C7")


class TestOverrepresentation:
    """Test suite for the hypergeometric test."""

    def test_set_equal_to_query_is_most_enriched(self, gene_sets):
        query = gene_sets["TOP"]
        ora_df, warnings_list = run_overrepresentation(query, BACKGROUND, gene_sets)

        assert ora_df.columns.tolist() == ORA_COLUMNS
        assert ora_df.iloc[0]["term"] == "TOP"
        assert ora_df.iloc[0]["overlap"] == 20
        assert ora_df["pval"].iloc[0] == ora_df["pval"].min()
        assert warnings_list == []

    def test_zero_overlap_sets_excluded(self, gene_sets):
        ora_df, _ = run_overrepresentation(gene_sets["TOP"], BACKGROUND, gene_sets)
        assert "OUTSIDE" not in set(ora_df["term"])
        assert (ora_df["overlap"] > 0).all()

    def test_hypergeometric_tail(self):
        background = [f"g{i}" for i in range(100)]
        query = background[:10]
        sets = {"S": background[5:25] + ["not_in_background"]}
        ora_df, _ = run_overrepresentation(query, background, sets)

        row = ora_df.iloc[0]
        # Members outside the background are dropped before testing
        assert row["set_size"] == 20
        assert row["overlap"] == 5
        assert row["pval"] == pytest.approx(hypergeom.sf(4, 100, 20, 10))
        assert row["fdr"] == pytest.approx(row["pval"])
        assert row["odds_ratio"] == pytest.approx((5 * 75) / (5 * 15))

    def test_fdr_not_below_pval(self, gene_sets):
        ora_df, _ = run_overrepresentation(BACKGROUND[:40], BACKGROUND, gene_sets)
        assert (ora_df["fdr"] >= ora_df["pval"] - 1e-12).all()

    def test_empty_query_warns(self, gene_sets):
        ora_df, warnings_list = run_overrepresentation([], BACKGROUND, gene_sets)
        assert ora_df.empty
        assert ora_df.columns.tolist() == ORA_COLUMNS
        assert len(warnings_list) == 1
        assert isinstance(warnings_list[0], EmptyEnrichmentResult)

    def test_gene_sets_not_mutated(self, gene_sets):
        before = copy.deepcopy(gene_sets)
        run_overrepresentation(gene_sets["TOP"], BACKGROUND, gene_sets)
        assert gene_sets == before


class TestGSEA:
    """Test suite for preranked GSEA."""

    def test_top_set_has_highest_nes(self, ranking, gene_sets):
        gsea_df, _ = run_gsea(
            ranking, gene_sets, min_size=5, max_size=100, permutation_num=100, seed=42
        )

        assert gsea_df.columns.tolist() == GSEA_COLUMNS
        assert gsea_df.iloc[0]["term"] == "TOP"
        assert gsea_df["nes"].iloc[0] == gsea_df["nes"].max()
        assert "OUTSIDE" not in set(gsea_df["term"])

    def test_reproducible_with_seed(self, ranking, gene_sets):
        first, _ = run_gsea(ranking, gene_sets, min_size=5, max_size=100, permutation_num=50, seed=1)
        second, _ = run_gsea(ranking, gene_sets, min_size=5, max_size=100, permutation_num=50, seed=1)
        pd.testing.assert_frame_equal(first, second)

    def test_no_eligible_sets(self, ranking):
        gsea_df, warnings_list = run_gsea(ranking, {"TINY": BACKGROUND[:3]}, min_size=15)
        assert gsea_df.empty
        assert gsea_df.columns.tolist() == GSEA_COLUMNS
        assert isinstance(warnings_list[0], EmptyEnrichmentResult)

    def test_standardize_columns(self):
        raw = pd.DataFrame(columns=["Name", "Term", "ES", "NES", "NOM p-val", "FDR q-val", "FWER p-val", "Tag %", "Gene %", "Lead_genes"])
        columns = standardize_gsea_columns(raw).columns.tolist()
        assert set(GSEA_COLUMNS) <= set(columns)


class TestCompare:
    """Test suite for comparing the two methods."""

    def test_compare_term_sets(self):
        ora_df = pd.DataFrame({"term": ["A", "B", "C"], "fdr": [0.01, 0.2, 0.04]})
        gsea_df = pd.DataFrame({"term": ["A", "C", "D"], "fdr": [0.3, 0.01, 0.001]})
        comparison = compare_enrichment(ora_df, gsea_df, fdr_threshold=0.05)

        assert comparison["shared"] == {"C"}
        assert comparison["ora_only"] == {"A"}
        assert comparison["gsea_only"] == {"D"}
