"""
Tests for gene annotation via mygene (network replaced by a fake client).
"""
import pandas as pd

from bulk_de.annotation import (
    annotate_genes,
    empty_annotation,
    join_annotation,
    strip_version,
)
from bulk_de.errors import AnnotationGap


class TestAnnotation:
    """Test suite for the annotator."""

    def test_strip_version(self):
        assert strip_version("ENSG00000141510.17") == "ENSG00000141510"
        assert strip_version("ENSG00000141510") == "ENSG00000141510"
        assert strip_version("TP53") == "TP53"

    def test_symbols_and_gaps(self, fake_mygene):
        genes = ["G001", "G002", "G060"]
        annotation, stats, gaps = annotate_genes(genes, client=fake_mygene)

        assert annotation.index.tolist() == genes
        assert annotation.loc["G001", "symbol"] == "SYM1"
        assert annotation.loc["G002", "entrez_id"] == "1002"
        assert pd.isna(annotation.loc["G060", "symbol"])

        assert stats["n_with_symbol"] == 2
        assert len(gaps) == 1
        assert isinstance(gaps[0], AnnotationGap)
        assert gaps[0].as_record()["stage"] == "annotation"

    def test_full_coverage_no_gap(self, fake_mygene):
        _, stats, gaps = annotate_genes(["G001", "G002"], client=fake_mygene)
        assert stats["symbol_coverage"] == 1.0
        assert gaps == []

    def test_first_hit_wins(self):
        class DuplicateHits:
            def querymany(self, qterms, **kwargs):
                return [
                    {"query": "ENSG1", "symbol": "FIRST", "entrezgene": 1},
                    {"query": "ENSG1", "symbol": "SECOND", "entrezgene": 2},
                ]

        annotation, _, _ = annotate_genes(["ENSG1.4"], client=DuplicateHits())
        assert annotation.loc["ENSG1.4", "symbol"] == "FIRST"

    def test_idempotent(self, fake_mygene):
        genes = ["G003", "G001", "G002"]
        first, _, _ = annotate_genes(genes, client=fake_mygene)
        second, _, _ = annotate_genes(genes, client=fake_mygene)
        pd.testing.assert_frame_equal(first, second)

    def test_version_stripped_before_query(self, fake_mygene):
        annotate_genes(["ENSG00000000003.15"], client=fake_mygene)
        assert fake_mygene.calls[0]["qterms"] == ["ENSG00000000003"]
        assert fake_mygene.calls[0]["scopes"] == "ensembl.gene"

    def test_join_keeps_row_order(self, fake_mygene):
        annotation, _, _ = annotate_genes(["G001", "G002"], client=fake_mygene)
        table = pd.DataFrame({"gene": ["G002", "G001", "G999"], "logFC": [1.0, -1.0, 0.0]})
        joined = join_annotation(table, annotation)

        assert joined["gene"].tolist() == ["G002", "G001", "G999"]
        assert joined["symbol"].tolist()[:2] == ["SYM2", "SYM1"]
        assert pd.isna(joined.loc[2, "symbol"])

    def test_empty_annotation(self):
        annotation = empty_annotation(["G1", "G2"])
        assert annotation["symbol"].isna().all()
        assert annotation.index.name == "gene"
