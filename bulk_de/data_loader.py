#!/usr/bin/env python3
"""
Data loading utilities for bulk RNA-seq analysis
Reads the tab-delimited count matrix and sample metadata and checks that they line up
"""

import numpy as np
import pandas as pd
from pathlib import Path

from bulk_de.errors import ParseError, SchemaError


def _check_field_counts(file_path, kind):
    """Rows must have as many fields as the header, or one more when the header
    omits the row-name field (R style); the two layouts cannot be mixed"""
    with open(file_path) as handle:
        lines = [line.rstrip("\r\n") for line in handle if line.strip()]
    if len(lines) < 2:
        return

    n_header = len(lines[0].split("\t"))
    widths = [len(line.split("\t")) for line in lines[1:]]

    too_long = [i + 2 for i, w in enumerate(widths) if w > n_header + 1]
    if too_long:
        raise ParseError(
            f"Malformed {kind} file {file_path}: line(s) {too_long[:5]} have more "
            f"fields than the header ({n_header})"
        )

    r_style = [w == n_header + 1 for w in widths]
    if any(r_style) and not all(r_style):
        bad = [i + 2 for i, flag in enumerate(r_style) if not flag]
        raise ParseError(
            f"Malformed {kind} file {file_path}: line(s) {bad[:5]} have a different "
            "number of fields than the other rows"
        )


def _read_table(file_path, kind):
    """Read a tab-delimited table with identifiers in the first column"""
    file_path = Path(file_path)
    if not file_path.exists():
        raise ParseError(f"{kind} file not found: {file_path}")

    _check_field_counts(file_path, kind)

    try:
        df = pd.read_csv(file_path, sep="\t", dtype=str)
    except pd.errors.EmptyDataError:
        raise ParseError(f"{kind} file is empty: {file_path}")
    except pd.errors.ParserError as exc:
        # Ragged rows (too many fields) end up here
        raise ParseError(f"Malformed {kind} file {file_path}: {exc}") from exc

    # Tables written by R omit the row-name header field, in which case pandas
    # already used the first column as the index
    if isinstance(df.index, pd.MultiIndex):
        raise ParseError(f"Malformed {kind} file {file_path}: rows have extra fields")
    if isinstance(df.index, pd.RangeIndex):
        df = df.set_index(df.columns[0])

    if df.shape[1] == 0:
        raise ParseError(f"{kind} file {file_path} has no data columns")

    if df.index.isna().any():
        raise ParseError(f"{kind} file {file_path} has rows without an identifier")

    df.index = df.index.astype(str)
    df.index.name = None
    df.columns = [str(c) for c in df.columns]

    dup_rows = df.index[df.index.duplicated()].unique().tolist()
    if dup_rows:
        raise ParseError(f"Duplicate identifiers in {kind} file {file_path}: {dup_rows[:5]}")

    # pandas renames repeated headers (S1, S1.1), so check the raw header line
    with open(file_path) as handle:
        header = pd.Index(handle.readline().rstrip("\r\n").split("\t"))
    dup_cols = header[header.duplicated()].unique().tolist()
    if dup_cols:
        raise ParseError(f"Duplicate column headers in {kind} file {file_path}: {dup_cols[:5]}")

    return df


def load_counts(file_path):
    """Load a gene x sample count matrix

    Args:
        file_path: Path to counts.txt (first column = gene id, header = sample ids)

    Returns:
        DataFrame of non-negative int64 counts (genes x samples)
    """
    print(f"Loading counts from {file_path}")
    raw = _read_table(file_path, "counts")

    # Short rows are padded with NaN by pandas
    missing = raw.isna()
    if missing.any().any():
        bad_genes = raw.index[missing.any(axis=1)].tolist()
        raise ParseError(f"Missing count values for genes: {bad_genes[:5]}")

    numeric = raw.apply(pd.to_numeric, errors="coerce")
    if numeric.isna().any().any():
        bad_genes = raw.index[numeric.isna().any(axis=1)].tolist()
        raise ParseError(f"Non-numeric counts for genes: {bad_genes[:5]}")

    values = numeric.to_numpy(dtype=float)
    if not np.all(np.isfinite(values)):
        raise ParseError("Counts contain infinite values")
    if (values < 0).any():
        bad_genes = numeric.index[(numeric < 0).any(axis=1)].tolist()
        raise ParseError(f"Negative counts for genes: {bad_genes[:5]}")
    if not np.all(values == np.round(values)):
        bad_genes = numeric.index[(numeric != numeric.round()).any(axis=1)].tolist()
        raise ParseError(f"Non-integer counts for genes: {bad_genes[:5]}")

    counts = numeric.astype(np.int64)
    counts.index.name = "gene"
    print(f"  {counts.shape[0]:,} genes x {counts.shape[1]} samples")
    return counts


def load_metadata(file_path, group_col=None):
    """Load sample metadata

    Args:
        file_path: Path to meta.txt (first column = sample id, other columns = labels)
        group_col: Optional column that must be present

    Returns:
        DataFrame indexed by sample id with string-valued label columns
    """
    print(f"Loading metadata from {file_path}")
    meta = _read_table(file_path, "metadata")

    if meta.isna().any().any():
        bad = meta.index[meta.isna().any(axis=1)].tolist()
        raise ParseError(f"Missing metadata values for samples: {bad[:5]}")

    if group_col is not None and group_col not in meta.columns:
        raise SchemaError(
            f"Group column '{group_col}' not in metadata columns {list(meta.columns)}"
        )

    meta.index.name = "sample"
    print(f"  {meta.shape[0]} samples, columns: {list(meta.columns)}")
    return meta


def align_samples(counts, metadata):
    """Check the sample sets match and put count columns in metadata row order

    Args:
        counts: Count matrix (genes x samples)
        metadata: Sample metadata indexed by sample id

    Returns:
        Count matrix with columns ordered like metadata rows
    """
    count_samples = set(counts.columns)
    meta_samples = set(metadata.index)

    if count_samples != meta_samples:
        missing_meta = sorted(count_samples - meta_samples)
        missing_counts = sorted(meta_samples - count_samples)
        problems = []
        if missing_meta:
            problems.append(f"samples missing from metadata: {missing_meta}")
        if missing_counts:
            problems.append(f"samples missing from counts: {missing_counts}")
        raise SchemaError("Sample identifiers do not match; " + "; ".join(problems))

    if list(counts.columns) != list(metadata.index):
        print("  Reordering count columns to match metadata")

    return counts.loc[:, list(metadata.index)]


def load_dataset(counts_path, meta_path, group_col=None):
    """Load and validate the count matrix and sample metadata

    Args:
        counts_path: Path to counts.txt
        meta_path: Path to meta.txt
        group_col: Optional metadata column that must be present

    Returns:
        Tuple of (counts_df, metadata_df) with aligned samples
    """
    counts = load_counts(counts_path)
    metadata = load_metadata(meta_path, group_col=group_col)
    counts = align_samples(counts, metadata)

    if group_col is not None:
        print(f"  Groups ({group_col}): {metadata[group_col].value_counts().to_dict()}")

    return counts, metadata
