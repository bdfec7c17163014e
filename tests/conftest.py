"""
Pytest configuration and fixtures for the bulk RNA-seq pipeline tests.
"""
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

N_UP = 10


def _nb_counts(rng, means, dispersion=0.05):
    """Negative binomial draws with mean `means` and the given dispersion"""
    size = 1.0 / dispersion
    return rng.negative_binomial(size, size / (size + means))


@pytest.fixture
def sample_metadata():
    """Three control and three treated samples."""
    return pd.DataFrame(
        {
            "condition": ["control"] * 3 + ["treated"] * 3,
            "batch": ["b1", "b2", "b3", "b1", "b2", "b3"],
        },
        index=pd.Index([f"S{i}" for i in range(1, 7)], name="sample"),
    )


@pytest.fixture
def sample_counts(sample_metadata):
    """60 genes x 6 samples; the first 10 genes are 4x higher in treated samples."""
    rng = np.random.default_rng(0)
    n_genes = 60
    base = rng.uniform(100, 1000, n_genes)
    treated = (sample_metadata["condition"] == "treated").to_numpy()

    means = np.tile(base[:, None], (1, len(sample_metadata)))
    means[:N_UP, treated] *= 4
    counts = _nb_counts(rng, means)

    return pd.DataFrame(
        counts.astype(np.int64),
        index=pd.Index([f"G{i:03d}" for i in range(1, n_genes + 1)], name="gene"),
        columns=sample_metadata.index.tolist(),
    )


@pytest.fixture
def up_genes(sample_counts):
    return sample_counts.index[:N_UP].tolist()


@pytest.fixture
def doubling_counts():
    """5 genes x 4 samples; G1 doubles between the groups, everything else is flat."""
    counts = pd.DataFrame(
        {
            "A1": [100, 500, 300, 800, 150],
            "A2": [102, 510, 295, 790, 155],
            "B1": [200, 505, 305, 805, 148],
            "B2": [204, 495, 298, 795, 152],
        },
        index=pd.Index(["G1", "G2", "G3", "G4", "G5"], name="gene"),
    )
    metadata = pd.DataFrame(
        {"condition": ["A", "A", "B", "B"]},
        index=pd.Index(["A1", "A2", "B1", "B2"], name="sample"),
    )
    return counts, metadata


@pytest.fixture
def write_inputs(tmp_path):
    """Write counts / metadata tables as tab-delimited files and return their paths."""

    def _write(counts, metadata):
        counts_path = tmp_path / "counts.txt"
        meta_path = tmp_path / "meta.txt"
        counts.rename_axis("gene").to_csv(counts_path, sep="\t")
        metadata.rename_axis("sample").to_csv(meta_path, sep="\t")
        return counts_path, meta_path

    return _write


@pytest.fixture
def gmt_file(tmp_path, up_genes):
    """GMT file with the upregulated genes, a background set and a set outside the data."""
    path = tmp_path / "test_sets.gmt"
    lines = [
        "\t".join(["UP_SET", "na"] + up_genes),
        "\t".join(["MIXED_SET", "na"] + [f"G{i:03d}" for i in range(25, 45)]),
        "\t".join(["ABSENT_SET", "na"] + [f"NOPE{i}" for i in range(10)]),
    ]
    path.write_text("\n".join(lines) + "\n")
    return path


class FakeMyGeneInfo:
    """Stands in for mygene.MyGeneInfo; maps G001 -> SYM1 and leaves G060 unmapped."""

    def __init__(self, unmapped=("G060",)):
        self.unmapped = set(unmapped)
        self.calls = []

    def querymany(self, qterms, scopes=None, fields=None, species=None, returnall=False, verbose=True):
        self.calls.append({"qterms": list(qterms), "scopes": scopes, "species": species})
        hits = []
        for q in qterms:
            if q in self.unmapped:
                hits.append({"query": q, "notfound": True})
                continue
            number = int("".join(ch for ch in q.split(".")[0] if ch.isdigit()))
            hits.append({"query": q, "_id": str(1000 + number), "symbol": f"SYM{number}", "entrezgene": 1000 + number})
        return hits


@pytest.fixture
def fake_mygene():
    return FakeMyGeneInfo()
