"""
Data Validation Module for FAMe Transcriptomics Toolkit

Exceptions used across the toolkit and checks that count matrices and
sample metadata describe the same samples in the same order.
"""

import pandas as pd
from typing import Dict, List, Optional


class SchemaMismatchError(Exception):
    """Sample identifiers in counts and metadata do not line up."""
    def __init__(self, message):
        super().__init__(message)


class InsufficientDataError(Exception):
    """A gene or group has too few observations to be modelled."""
    def __init__(self, message):
        super().__init__(message)


class AnnotationLookupError(Exception):
    """Gene identifiers could not be resolved against the annotation source."""
    def __init__(self, message):
        super().__init__(message)


class EnrichmentUniverseEmptyError(Exception):
    """The background universe of an enrichment test contains no genes."""
    def __init__(self, message):
        super().__init__(message)


def check_sample_alignment(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
) -> Dict:
    """
    Compare count matrix columns with metadata rows without raising.

    Parameters:
    -----------
    counts : pd.DataFrame
        Count matrix (genes x samples)
    metadata : pd.DataFrame
        Sample metadata indexed by sample identifier

    Returns:
    --------
    Dict with 'is_aligned', 'same_set', 'same_order', 'missing_from_metadata',
    'missing_from_counts' and 'duplicates'
    """
    count_samples = [str(s) for s in counts.columns]
    metadata_samples = [str(s) for s in metadata.index]

    duplicates = sorted(
        set(s for s in count_samples if count_samples.count(s) > 1)
        | set(s for s in metadata_samples if metadata_samples.count(s) > 1)
    )
    missing_from_metadata = [s for s in count_samples if s not in set(metadata_samples)]
    missing_from_counts = [s for s in metadata_samples if s not in set(count_samples)]

    same_set = not missing_from_metadata and not missing_from_counts
    same_order = same_set and count_samples == metadata_samples

    return {
        'is_aligned': same_order and not duplicates,
        'same_set': same_set,
        'same_order': same_order,
        'missing_from_metadata': missing_from_metadata,
        'missing_from_counts': missing_from_counts,
        'duplicates': duplicates,
    }


def validate_sample_alignment(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    verbose: bool = True
) -> bool:
    """
    Enforce that metadata rows equal count columns, same identifiers and order.

    Raises:
    -------
    SchemaMismatchError
        If the sample sets differ, identifiers repeat, or the order differs.
    """
    report = check_sample_alignment(counts, metadata)

    if report['is_aligned']:
        if verbose:
            print(f"✓ Sample alignment verified: {counts.shape[1]} samples")
        return True

    problems = []
    if report['duplicates']:
        problems.append(f"duplicated sample ids: {report['duplicates'][:5]}")
    if report['missing_from_metadata']:
        missing = report['missing_from_metadata']
        problems.append(
            f"{len(missing)} count columns without metadata: "
            f"{missing[:5]}{'...' if len(missing) > 5 else ''}"
        )
    if report['missing_from_counts']:
        missing = report['missing_from_counts']
        problems.append(
            f"{len(missing)} metadata rows without counts: "
            f"{missing[:5]}{'...' if len(missing) > 5 else ''}"
        )
    if report['same_set'] and not report['same_order']:
        problems.append("metadata rows are not in count column order")

    raise SchemaMismatchError("Sample mismatch between counts and metadata: " + "; ".join(problems))


def align_metadata_to_counts(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    drop_unmatched: bool = False,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Reorder metadata rows to follow the count matrix columns.

    Parameters:
    -----------
    counts : pd.DataFrame
        Count matrix (genes x samples)
    metadata : pd.DataFrame
        Sample metadata indexed by sample identifier
    drop_unmatched : bool
        Drop metadata rows that have no count column instead of failing

    Returns:
    --------
    pd.DataFrame
        Metadata reindexed to ``counts.columns``

    Raises:
    -------
    SchemaMismatchError
        If a count column has no metadata row, or metadata has extra rows and
        ``drop_unmatched`` is False.
    """
    report = check_sample_alignment(counts, metadata)

    if report['duplicates']:
        raise SchemaMismatchError(f"Duplicated sample ids: {report['duplicates'][:5]}")
    if report['missing_from_metadata']:
        raise SchemaMismatchError(
            f"No metadata for {len(report['missing_from_metadata'])} samples: "
            f"{report['missing_from_metadata'][:5]}"
        )
    if report['missing_from_counts']:
        if not drop_unmatched:
            raise SchemaMismatchError(
                f"Metadata has {len(report['missing_from_counts'])} samples without counts: "
                f"{report['missing_from_counts'][:5]}"
            )
        if verbose:
            print(f"  Dropping {len(report['missing_from_counts'])} metadata rows without counts")

    aligned = metadata.copy()
    aligned.index = aligned.index.astype(str)
    aligned = aligned.loc[[str(s) for s in counts.columns]]
    aligned.index = counts.columns

    validate_sample_alignment(counts, aligned, verbose=verbose)
    return aligned


def validate_count_matrix(counts: pd.DataFrame) -> bool:
    """
    Check the count matrix invariants: unique labels, no missing values,
    non-negative integer cells.

    Raises:
    -------
    ValueError
        On the first violated invariant.
    """
    if counts.index.duplicated().any():
        dups = counts.index[counts.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated gene ids in count matrix: {dups[:5]}")
    if counts.columns.duplicated().any():
        dups = counts.columns[counts.columns.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated sample ids in count matrix: {dups[:5]}")
    if counts.isna().any().any():
        raise ValueError("Count matrix contains missing values")

    values = counts.to_numpy(dtype=float)
    if (values < 0).any():
        raise ValueError("Count matrix contains negative values")
    if not ((values % 1) == 0).all():
        raise ValueError("Count matrix contains non-integer values")
    return True


def generate_sample_matching_diagnostic_report(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    covariates: Optional[List[str]] = None
) -> str:
    """
    Build a human-readable report on counts/metadata agreement and covariate
    completeness.
    """
    report = check_sample_alignment(counts, metadata)

    lines = [
        "SAMPLE MATCHING DIAGNOSTIC REPORT",
        "=" * 50,
        f"Count matrix: {counts.shape[0]} genes x {counts.shape[1]} samples",
        f"Metadata: {metadata.shape[0]} samples x {metadata.shape[1]} columns",
        f"Same sample set: {report['same_set']}",
        f"Same order: {report['same_order']}",
    ]

    if report['missing_from_metadata']:
        lines.append(f"Missing from metadata: {report['missing_from_metadata']}")
    if report['missing_from_counts']:
        lines.append(f"Missing from counts: {report['missing_from_counts']}")
    if report['duplicates']:
        lines.append(f"Duplicated ids: {report['duplicates']}")

    if covariates:
        lines.append("")
        lines.append("Covariate completeness:")
        for col in covariates:
            if col not in metadata.columns:
                lines.append(f"  {col}: MISSING COLUMN")
                continue
            n_missing = metadata[col].isna().sum()
            lines.append(f"  {col}: {len(metadata) - n_missing}/{len(metadata)} present")

    lines.append("")
    lines.append("✓ ALIGNED" if report['is_aligned'] else "ALIGNMENT FAILED")
    return "\n".join(lines)
