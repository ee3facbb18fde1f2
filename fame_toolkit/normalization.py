"""
Normalization Module for FAMe Transcriptomics Toolkit

Transforms of count data used for visualization and clustering: the
variance-stabilizing transform, plain log transform and removal of a known
batch factor. Hypothesis tests run on raw counts, not on these values.
"""

import pandas as pd
import numpy as np
from patsy import dmatrix
from pydeseq2.dds import DeseqDataSet
from typing import Dict, List, Optional

from .preprocessing import _sanitize_formula_term


def get_transform_characteristics() -> Dict[str, Dict[str, object]]:
    """Describe the available expression transforms."""
    return {
        "vst": {
            "log_scale": True,
            "description": "pydeseq2 variance-stabilizing transform from the mean-dispersion trend",
        },
        "log2": {
            "log_scale": True,
            "description": "log2 of size-factor normalized counts plus pseudocount",
        },
        "normalized": {
            "log_scale": False,
            "description": "Size-factor normalized counts",
        },
    }


def is_transform_log_scale(transform: str) -> bool:
    """True if the named transform returns log-scale values."""
    characteristics = get_transform_characteristics()
    if transform not in characteristics:
        raise ValueError(f"Unknown transform: {transform}")
    return bool(characteristics[transform]["log_scale"])


# =============================================================================
# TRANSFORMS
# =============================================================================

def variance_stabilizing_transform(
    counts: pd.DataFrame,
    metadata: Optional[pd.DataFrame] = None,
    design_formula: Optional[str] = None,
    fit_type: str = "parametric",
    verbose: bool = True
) -> pd.DataFrame:
    """
    Variance-stabilizing transform of a count matrix (pydeseq2 ``vst``).

    Size factors and the mean-dispersion trend are fitted blind to the
    design unless ``design_formula`` is given, in which case dispersions are
    estimated under that design (e.g. ``"~ batch + age"``) before the
    trend is inverted.

    Parameters:
    -----------
    counts : pd.DataFrame
        Raw counts (genes x samples)
    metadata : pd.DataFrame, optional
        Sample metadata aligned with counts.columns; required with a formula
    design_formula : str, optional
        Right-hand side of the design used for dispersion estimation
    fit_type : str
        "parametric" or "mean" dispersion trend

    Returns:
    --------
    pd.DataFrame : Log2-scale transformed values, same shape as counts
    """
    samples = counts.columns
    if design_formula is None:
        design = pd.DataFrame({"intercept": 1.0}, index=samples)
    else:
        if metadata is None:
            raise ValueError("metadata is required when a design formula is given")
        design = dmatrix(design_formula, metadata.loc[samples], return_type="dataframe")
        if design.shape[0] != len(samples):
            raise ValueError("Design columns contain missing values")
        design = design.set_axis(samples)

    dds = DeseqDataSet(
        counts=counts.T.astype(np.int64),
        metadata=pd.DataFrame(index=samples),
        design=design,
        fit_type=fit_type,
        quiet=not verbose,
    )
    dds.vst(use_design=design_formula is not None)
    transformed = np.asarray(dds.layers["vst_counts"], dtype=float).T

    if verbose:
        print("Applied variance-stabilizing transform")
        print(f"  Dispersions fitted {'blind' if design_formula is None else 'with ' + design_formula}")
        print(f"  Value range: {transformed.min():.2f} to {transformed.max():.2f}")

    return pd.DataFrame(transformed, index=counts.index, columns=counts.columns)


def log_transform(
    data: pd.DataFrame,
    base: str = "log2",
    pseudocount: Optional[float] = 1.0,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Apply log transformation to (normalized) count data.

    Parameters:
    -----------
    data : pd.DataFrame
        Data to transform
    base : str
        Log base ('log2', 'log10', or 'ln')
    pseudocount : float, optional
        Value added before the transform (auto-calculated if None)

    Returns:
    --------
    pd.DataFrame : Log-transformed data
    """
    if pseudocount is None:
        min_positive = data[data > 0].min().min()
        pseudocount = min_positive / 10 if min_positive > 0 else 1e-6

    data_with_pseudo = data + pseudocount

    if base == "log2":
        transformed_data = np.log2(data_with_pseudo)
    elif base == "log10":
        transformed_data = np.log10(data_with_pseudo)
    elif base == "ln":
        transformed_data = np.log(data_with_pseudo)
    else:
        raise ValueError("base must be 'log2', 'log10', or 'ln'")

    if verbose:
        print(f"Applied {base} transformation with pseudocount {pseudocount}")

    return pd.DataFrame(transformed_data, index=data.index, columns=data.columns)


def remove_batch_effect(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    batch_column: str,
    design_columns: Optional[List[str]] = None
) -> pd.DataFrame:
    """
    Regress a discrete batch factor out of a transformed expression matrix.

    A linear model ``expression ~ design + batch`` is fitted per gene with
    sum-to-zero batch coding, and only the batch component is subtracted, so
    effects of the design columns are preserved. For plotting and clustering
    only; models should include the batch as a covariate instead.

    Parameters:
    -----------
    expression : pd.DataFrame
        Log-scale values (genes x samples)
    metadata : pd.DataFrame
        Sample metadata aligned with ``expression.columns``
    batch_column : str
        Discrete batch factor to remove
    design_columns : list, optional
        Covariates whose effects must be kept

    Returns:
    --------
    pd.DataFrame : Batch-corrected values
    """
    if batch_column not in metadata.columns:
        raise ValueError(f"Batch column '{batch_column}' not found in metadata")

    meta = metadata.loc[expression.columns]
    batch = meta[batch_column].astype(str)
    levels = sorted(batch.unique())

    if len(levels) < 2:
        print(f"Only one level in '{batch_column}'; nothing to remove")
        return expression.copy()

    # Sum-to-zero coding: last level is -1 on every column
    X_batch = np.zeros((len(batch), len(levels) - 1))
    for j, level in enumerate(levels[:-1]):
        X_batch[:, j] = np.where(batch == level, 1.0, np.where(batch == levels[-1], -1.0, 0.0))

    if design_columns:
        terms = " + ".join(_sanitize_formula_term(c) for c in design_columns)
        X_design = np.asarray(dmatrix(f"~ {terms}", meta, return_type="matrix"))
        if X_design.shape[0] != len(meta):
            raise ValueError("Design columns contain missing values")
    else:
        X_design = np.ones((len(meta), 1))

    X = np.hstack([X_design, X_batch])
    Y = expression.to_numpy(dtype=float).T
    beta, _, _, _ = np.linalg.lstsq(X, Y, rcond=None)
    batch_beta = beta[X_design.shape[1]:, :]

    corrected = Y - X_batch @ batch_beta
    print(f"Removed batch effect '{batch_column}' ({len(levels)} levels)")
    return pd.DataFrame(corrected.T, index=expression.index, columns=expression.columns)
