"""
End-to-end tests for de_gsea_pipeline.py.
"""
import json
from pathlib import Path

import pandas as pd
import pytest

import de_gsea_pipeline
from bulk_de.errors import FitConvergenceError

FAST_ENRICHMENT = {"min_size": 5, "max_size": 100, "permutation_num": 100}


class TestPipeline:
    """Test suite for the full run."""

    def test_full_run_with_raw_ids(self, tmp_path, sample_counts, sample_metadata, write_inputs, gmt_file):
        counts_path, meta_path = write_inputs(sample_counts, sample_metadata)
        outdir = tmp_path / "run"

        result = de_gsea_pipeline.main(
            counts_path=counts_path,
            meta_path=meta_path,
            outdir=outdir,
            de_params={"contrast": ("treated", "control")},
            enrichment_params=dict(FAST_ENRICHMENT, gmt_path=str(gmt_file), id_column="gene"),
            annotation_params={"skip": True},
        )

        results_dir = outdir / "results"
        for name in [
            "treated_vs_control_DE.txt",
            "treated_vs_control_top_genes.txt",
            "hypergeometric_treated_vs_control_H.txt",
            "gsea_treated_vs_control_H.txt",
            "run_summary.json",
        ]:
            assert (results_dir / name).exists(), name
        assert (outdir / "data" / "norm_counts.tsv").exists()
        assert (results_dir / "figures" / "pca.png").exists()
        assert (results_dir / "figures" / "volcano_treated_vs_control.png").exists()
        assert (results_dir / "figures" / "enrichment_overlap_treated_vs_control_H.png").exists()

        de_table = pd.read_csv(results_dir / "treated_vs_control_DE.txt", sep="\t")
        assert de_table["gene"].tolist() == sample_counts.index.tolist()
        assert de_table["symbol"].isna().all()

        ora = pd.read_csv(results_dir / "hypergeometric_treated_vs_control_H.txt", sep="\t")
        assert ora["term"].iloc[0] == "UP_SET"
        assert "ABSENT_SET" not in set(ora["term"])

        assert result["gsea"]["term"].iloc[0] == "UP_SET"
        assert "UP_SET" in result["comparison"]["shared"]

        summary = json.loads((results_dir / "run_summary.json").read_text())
        assert summary["input"]["contrast"] == "treated_vs_control"
        assert summary["differential_expression"]["n_up"] >= 8
        assert summary["annotation"] == {"skipped": True}
        assert isinstance(summary["warnings"], list)

    def test_annotation_gap_recorded(
        self, tmp_path, sample_counts, sample_metadata, write_inputs, fake_mygene
    ):
        counts_path, meta_path = write_inputs(sample_counts, sample_metadata)
        symbol_gmt = tmp_path / "symbols.gmt"
        symbol_gmt.write_text("\t".join(["UP_SYMBOLS", "na"] + [f"SYM{i}" for i in range(1, 11)]) + "\n")

        result = de_gsea_pipeline.main(
            counts_path=counts_path,
            meta_path=meta_path,
            outdir=tmp_path / "run",
            enrichment_params=dict(FAST_ENRICHMENT, gmt_path=str(symbol_gmt)),
            annotation_client=fake_mygene,
        )

        kinds = [w["kind"] for w in result["summary"]["warnings"]]
        assert "AnnotationGap" in kinds
        assert result["de_results"].set_index("gene").loc["G001", "symbol"] == "SYM1"
        assert result["ora"]["term"].tolist() == ["UP_SYMBOLS"]

    def test_rerun_drops_outdated_optional_figure(
        self, tmp_path, sample_counts, sample_metadata, write_inputs, gmt_file
    ):
        counts_path, meta_path = write_inputs(sample_counts, sample_metadata)
        outdir = tmp_path / "run"
        old_plot = outdir / "results" / "figures" / "gsea_top_treated_vs_control_H.png"
        old_plot.parent.mkdir(parents=True)
        old_plot.write_bytes(b"from an earlier run")

        # No gene set fits the size window, so GSEA has nothing to plot
        result = de_gsea_pipeline.main(
            counts_path=counts_path,
            meta_path=meta_path,
            outdir=outdir,
            de_params={"contrast": ("treated", "control")},
            enrichment_params=dict(
                gmt_path=str(gmt_file), id_column="gene", min_size=400, max_size=500, permutation_num=100
            ),
            annotation_params={"skip": True},
        )

        outputs = result["summary"]["outputs"]
        assert not old_plot.exists()
        assert "gsea_plot" not in outputs
        assert all(Path(p).exists() for p in outputs.values())
        assert outputs["summary"].endswith("run_summary.json")

    def test_default_contrast_from_two_levels(self, sample_metadata):
        assert de_gsea_pipeline.resolve_contrast(sample_metadata, "condition") == ("treated", "control")

        three = sample_metadata.copy()
        three.loc["S6", "condition"] = "other"
        with pytest.raises(FitConvergenceError):
            de_gsea_pipeline.resolve_contrast(three, "condition")


class TestCLI:
    """Test suite for the command line entry point."""

    def test_fatal_error_exits_with_status_1(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as excinfo:
            de_gsea_pipeline.cli(
                ["--counts", str(tmp_path / "missing.txt"), "--meta", str(tmp_path / "meta.txt")]
            )
        assert excinfo.value.code == 1
        assert "load" in capsys.readouterr().err

    def test_parse_args(self):
        args = de_gsea_pipeline.parse_args(
            ["--contrast", "KO", "WT", "--fdr", "0.1", "--skip-annotation", "--norm-method", "median_ratio"]
        )
        assert args.contrast == ["KO", "WT"]
        assert args.fdr == 0.1
        assert args.skip_annotation is True
        assert args.norm_method == "median_ratio"
        assert args.lfc is None
