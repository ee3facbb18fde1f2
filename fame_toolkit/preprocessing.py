"""
Data Preprocessing Module for FAMe Transcriptomics Toolkit

Functions for count filtering, library size estimation and preparation of
the phenotype table (missingness, imputation, derived covariates).
"""

import pandas as pd
from typing import Dict, List, Optional, Any, Union
import numpy as np
from pydeseq2.preprocessing import deseq2_norm
from sklearn.impute import KNNImputer


def _normalize_group_value(value: Any) -> Union[int, float, str]:
    """
    Normalize group values to consistent types for sorting and comparison.

    Keeps numeric values as numbers when possible, only converts to string
    when necessary for non-numeric values.

    Parameters:
    -----------
    value : any
        The group value to normalize

    Returns:
    --------
    int, float, or str
        Normalized value
    """

    # Handle None, empty string, or NaN
    if value is None or value == "" or (isinstance(value, float) and np.isnan(value)):
        return "Unknown"

    if isinstance(value, (int, float, np.integer, np.floating)):
        # Convert float integers to int (80.0 -> 80)
        if float(value).is_integer():
            return int(value)
        return float(value)

    if isinstance(value, str):
        try:
            if "." not in value:
                return int(value)
            float_val = float(value)
            return int(float_val) if float_val.is_integer() else float_val
        except ValueError:
            return value.strip()

    return str(value)


def _sanitize_formula_term(term):
    """
    Sanitize a column name for use in model formulas.
    Wraps terms containing spaces or special characters in Q().

    Parameters:
    -----------
    term : str
        Column name to sanitize

    Returns:
    --------
    str
        Sanitized term safe for use in formulas
    """
    if ' ' in term or any(char in term for char in [':', '-', '+', '*', '/', '(', ')', '[', ']', '.']):
        return f'Q("{term}")'
    return term


# =============================================================================
# COUNT FILTERING AND LIBRARY SIZE
# =============================================================================

def filter_low_count_genes(
    counts: pd.DataFrame,
    min_mean_count: float = 10,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Drop genes whose mean count across samples is below a threshold.

    Filtering an already filtered matrix with the same threshold returns it
    unchanged.

    Parameters:
    -----------
    counts : pd.DataFrame
        Count matrix (genes x samples)
    min_mean_count : float
        Minimum across-sample mean count (default: 10)

    Returns:
    --------
    pd.DataFrame : Filtered count matrix
    """
    keep = counts.mean(axis=1) >= min_mean_count
    filtered = counts.loc[keep].copy()

    if verbose:
        print("=== FILTERING LOW-COUNT GENES ===\n")
        print(f"Before filtering: {counts.shape[0]} genes x {counts.shape[1]} samples")
        print(f"Genes with mean count ≥ {min_mean_count}: {filtered.shape[0]}")
        print(f"Removed: {counts.shape[0] - filtered.shape[0]} genes")

    return filtered


def estimate_size_factors(
    counts: pd.DataFrame,
    method: str = "ratio"
) -> pd.Series:
    """
    Estimate per-sample size factors that correct for sequencing depth.

    Parameters:
    -----------
    counts : pd.DataFrame
        Count matrix (genes x samples)
    method : str
        "ratio" for DESeq2 median-of-ratios (pydeseq2 ``deseq2_norm``), or
        "total" for total-count scaling

    Returns:
    --------
    pd.Series
        Size factor per sample, scaled to geometric mean 1
    """
    if counts.shape[0] == 0:
        raise ValueError("Cannot estimate size factors from an empty count matrix")

    values = counts.astype(float)

    if method == "total":
        library_sizes = values.sum(axis=0)
        if (library_sizes <= 0).any():
            empty = library_sizes[library_sizes <= 0].index.tolist()
            raise ValueError(f"Samples with zero total counts: {empty}")
        factors = library_sizes

    elif method == "ratio":
        # Median-of-ratios needs at least one gene counted in every sample
        if not (values > 0).all(axis=1).any():
            raise ValueError(
                "No gene has positive counts in every sample; use method='total', "
                "or size_factor_method='poscounts' for model fitting"
            )
        _, ratio_factors = deseq2_norm(values.T.to_numpy())
        factors = pd.Series(np.asarray(ratio_factors, dtype=float), index=counts.columns)

    else:
        raise ValueError(f"Unknown size factor method: {method}. Use 'ratio' or 'total'")

    factors = factors / np.exp(np.mean(np.log(factors)))
    factors.name = "size_factor"
    return factors


def normalize_counts(
    counts: pd.DataFrame,
    size_factors: Optional[pd.Series] = None
) -> pd.DataFrame:
    """Divide each sample's counts by its size factor."""
    if size_factors is None:
        size_factors = estimate_size_factors(counts)
    size_factors = size_factors.reindex(counts.columns)
    if size_factors.isna().any():
        raise ValueError("Size factors missing for some samples")
    return counts.astype(float).div(size_factors, axis=1)


# =============================================================================
# PHENOTYPE PREPARATION
# =============================================================================

def summarize_missingness(
    phenotypes: pd.DataFrame,
    verbose: bool = True
) -> Dict[str, pd.Series]:
    """
    Percentage of missing values per column (feature) and per row (sample).

    Returns:
    --------
    dict with 'by_column' and 'by_row' Series, sorted descending
    """
    by_column = phenotypes.isna().mean(axis=0).mul(100).sort_values(ascending=False)
    by_row = phenotypes.isna().mean(axis=1).mul(100).sort_values(ascending=False)

    if verbose:
        print("=== MISSING DATA OVERVIEW ===\n")
        print(f"Samples: {phenotypes.shape[0]}, variables: {phenotypes.shape[1]}")
        incomplete = by_column[by_column > 0]
        if len(incomplete) == 0:
            print("No missing values")
        else:
            print("Missing % by variable:")
            for col, pct in incomplete.items():
                print(f"  {col}: {pct:.1f}%")
            print(f"Samples with any missing value: {(by_row > 0).sum()}")

    return {"by_column": by_column, "by_row": by_row}


def impute_knn(
    phenotypes: pd.DataFrame,
    columns: List[str],
    n_neighbors: int = 10,
    feature_columns: Optional[List[str]] = None,
    add_indicator: bool = False
) -> pd.DataFrame:
    """
    K-nearest-neighbour imputation of selected phenotype columns.

    Only ``columns`` are filled in; every other column is returned untouched.
    Neighbours are found using ``feature_columns`` (default: ``columns``).

    Parameters:
    -----------
    phenotypes : pd.DataFrame
        Sample x variable table
    columns : list
        Columns to impute
    n_neighbors : int
        Number of neighbours (default 10, roughly the square root of the
        cohort size)
    feature_columns : list, optional
        Numeric columns used for the distance computation in addition to
        ``columns``
    add_indicator : bool
        Add ``<column>_imp`` boolean columns marking imputed cells

    Returns:
    --------
    pd.DataFrame : Copy of ``phenotypes`` with the selected columns imputed
    """
    missing_cols = [c for c in columns if c not in phenotypes.columns]
    if missing_cols:
        raise ValueError(f"Columns not found for imputation: {missing_cols}")

    features = list(dict.fromkeys(list(columns) + list(feature_columns or [])))
    block = phenotypes[features].apply(pd.to_numeric, errors="coerce")

    empty = [c for c in features if block[c].isna().all()]
    if empty:
        raise ValueError(f"Cannot impute columns with no observed values: {empty}")

    n_neighbors = min(n_neighbors, max(1, len(block) - 1))
    imputer = KNNImputer(n_neighbors=n_neighbors)
    filled = pd.DataFrame(
        imputer.fit_transform(block), index=block.index, columns=features
    )

    result = phenotypes.copy()
    for col in columns:
        was_missing = phenotypes[col].isna()
        result[col] = filled[col]
        if add_indicator:
            result[f"{col}_imp"] = was_missing
        print(f"  Imputed {int(was_missing.sum())} values in '{col}' (k={n_neighbors})")

    return result


def add_age_category(
    metadata: pd.DataFrame,
    bins: List[float],
    labels: List[str],
    age_column: str = "age",
    category_column: str = "age_category",
    right: bool = False
) -> pd.DataFrame:
    """
    Bin a continuous age column into ordered categories.

    Parameters:
    -----------
    bins : list
        Bin edges, e.g. ``[18, 30, 40, 50, 60, 70]``
    labels : list
        One label per bin, in increasing age order
    right : bool
        Whether bins include their right edge

    Returns:
    --------
    pd.DataFrame : Copy of metadata with an ordered categorical column
    """
    if age_column not in metadata.columns:
        raise ValueError(f"Age column '{age_column}' not found in metadata")
    if len(labels) != len(bins) - 1:
        raise ValueError("labels must have exactly one entry per bin")

    result = metadata.copy()
    result[category_column] = pd.cut(
        result[age_column], bins=bins, labels=labels, right=right, ordered=True
    )
    n_out = result[category_column].isna().sum() - result[age_column].isna().sum()
    if n_out > 0:
        print(f"Warning: {n_out} samples fall outside the age bins")
    return result


def standardize_columns(
    metadata: pd.DataFrame,
    columns: List[str],
    log_transform: bool = False,
    suffix: str = ""
) -> pd.DataFrame:
    """
    Z-score continuous covariates (sample standard deviation), optionally
    after a log2 transform, as used for hormone concentrations.

    Parameters:
    -----------
    columns : list
        Columns to standardize
    log_transform : bool
        Apply log2 before scaling (values must be positive)
    suffix : str
        Write results to ``<column><suffix>``; empty overwrites in place
    """
    result = metadata.copy()
    for col in columns:
        if col not in result.columns:
            raise ValueError(f"Column '{col}' not found in metadata")
        values = pd.to_numeric(result[col], errors="coerce")
        if log_transform:
            if (values <= 0).any():
                raise ValueError(f"Column '{col}' has non-positive values; cannot log-transform")
            values = np.log2(values)
        sd = values.std()
        if not sd or np.isnan(sd):
            raise ValueError(f"Column '{col}' has zero variance; cannot standardize")
        result[f"{col}{suffix}"] = (values - values.mean()) / sd
    return result


def drop_samples_missing_covariates(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    columns: List[str],
    verbose: bool = True
):
    """
    Remove samples lacking any of the given covariates from both the count
    matrix and the metadata, keeping them aligned.
    """
    missing_cols = [c for c in columns if c not in metadata.columns]
    if missing_cols:
        raise ValueError(f"Missing required metadata columns: {missing_cols}")

    complete = metadata[columns].notna().all(axis=1)
    kept = metadata.index[complete]
    if verbose and (~complete).any():
        print(f"  Removed {int((~complete).sum())} samples missing {columns}")
    return counts.loc[:, kept], metadata.loc[kept]
