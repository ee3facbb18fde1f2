"""
Statistical Analysis Module for FAMe Transcriptomics Toolkit

Configuration-driven differential expression on read counts with a
negative binomial generalized linear model per gene, plus regression of
phenotype outcomes (muscle mass/strength, histology, cell-type fractions)
on age and hormone predictors.

Count model
-----------
For every gene: counts ~ offset(log size factor) + covariates + predictor,
negative binomial with a per-gene dispersion. Size factors and dispersions
come from pydeseq2 (median-of-ratios size factors, gene-wise Cox-Reid
estimates shrunk toward a parametric mean-dispersion trend). Predictors are
tested with the DESeq2 Wald test (continuous or two-level predictors) or
with a likelihood-ratio test of the full model against the model without
the predictor (ordered categories with more than two levels), fitted with
statsmodels at the shrunken dispersions.
"""

import pandas as pd
import numpy as np
import statsmodels.api as sm
import statsmodels.formula.api as smf
from patsy import dmatrix
from pydeseq2.dds import DeseqDataSet
from pydeseq2.ds import DeseqStats
from pydeseq2.default_inference import DefaultInference
from scipy.stats import chi2, pearsonr, spearmanr
from statsmodels.stats.multitest import multipletests
from statsmodels.tools.sm_exceptions import PerfectSeparationError
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union
import warnings

from .preprocessing import (
    filter_low_count_genes,
    drop_samples_missing_covariates,
    _sanitize_formula_term,
)
from .validation import validate_sample_alignment, InsufficientDataError

_FIT_ERRORS = (ValueError, RuntimeError, ZeroDivisionError, np.linalg.LinAlgError, PerfectSeparationError)


class StatisticalConfig:
    """Configuration class for statistical analysis parameters

    The significance threshold is adjusted p < 0.05 with Benjamini-Hochberg
    false discovery rate control unless changed here.
    """

    def __init__(self):
        # Significance
        self.p_value_threshold = 0.05
        self.correction_method = "fdr_bh"  # any statsmodels multipletests method, or "none"

        # Count filtering and normalization
        self.min_mean_count = 10
        self.size_factor_method = "ratio"  # pydeseq2 size factor fit: "ratio", "poscounts" or "iterative"
        self.min_nonzero_samples = 2

        # Dispersion estimation (pydeseq2)
        self.fit_type = "parametric"  # mean-dispersion trend: "parametric" or "mean"
        self.min_dispersion = 1e-8
        self.max_dispersion = 10.0
        self.n_cpus = 1

        # Likelihood-ratio GLM fitting
        self.max_iter = 100

        # Progress output
        self.progress_every = 1000

    def validate(self):
        """Validate parameter ranges"""
        if not 0 < self.p_value_threshold < 1:
            raise ValueError("p_value_threshold must be between 0 and 1")
        if self.size_factor_method not in ("ratio", "poscounts", "iterative"):
            raise ValueError("size_factor_method must be 'ratio', 'poscounts' or 'iterative'")
        if self.fit_type not in ("parametric", "mean"):
            raise ValueError("fit_type must be 'parametric' or 'mean'")
        if self.min_mean_count < 0:
            raise ValueError("min_mean_count must be non-negative")
        if not 0 < self.min_dispersion < self.max_dispersion:
            raise ValueError("dispersion bounds must satisfy 0 < min_dispersion < max_dispersion")
        return True


@dataclass
class ModelDesign:
    """Model specification for one predictor.

    Attributes
    ----------
    predictor : str
        Metadata column tested (age, hormone level, age category, ...)
    covariates : List[str]
        Adjustment covariates, in formula order
    test : str
        'wald', 'lrt' or 'auto' (LRT for categorical predictors with more
        than two levels, Wald otherwise)
    categorical : bool, optional
        Force categorical/continuous treatment; inferred from dtype if None
    reference_level : optional
        Reference level for a categorical predictor
    contrast_level : optional
        Level whose contrast against the reference is reported as logFC;
        defaults to the last level

    Examples
    --------
    >>> design = ModelDesign(predictor='age', covariates=['batch'])
    >>> design.formula()
    '~ batch + age'
    """

    predictor: str
    covariates: List[str] = field(default_factory=list)
    test: str = "auto"
    categorical: Optional[bool] = None
    reference_level: Optional[object] = None
    contrast_level: Optional[object] = None

    def validate(self, metadata: Optional[pd.DataFrame] = None):
        if self.test not in ("wald", "lrt", "auto"):
            raise ValueError(f"Unknown test: {self.test}. Choose 'wald', 'lrt' or 'auto'")
        if self.predictor in self.covariates:
            raise ValueError(f"Predictor '{self.predictor}' is also listed as a covariate")
        if metadata is not None:
            missing = [c for c in [self.predictor] + list(self.covariates) if c not in metadata.columns]
            if missing:
                raise ValueError(f"Missing required metadata columns: {missing}")
            if self.is_categorical(metadata) and self.reference_level is not None:
                levels = self.levels(metadata)
                if self.reference_level not in levels:
                    raise ValueError(
                        f"Reference level {self.reference_level!r} not among {levels}"
                    )
        return True

    def is_categorical(self, metadata: pd.DataFrame) -> bool:
        if self.categorical is not None:
            return self.categorical
        values = metadata[self.predictor]
        return not pd.api.types.is_numeric_dtype(values) or pd.api.types.is_bool_dtype(values)

    def levels(self, metadata: pd.DataFrame) -> List:
        values = metadata[self.predictor].dropna()
        if isinstance(values.dtype, pd.CategoricalDtype):
            present = set(values.unique())
            return [c for c in values.cat.categories if c in present]
        return sorted(values.unique().tolist())

    def resolve_test(self, metadata: pd.DataFrame) -> str:
        if self.test != "auto":
            return self.test
        if self.is_categorical(metadata) and len(self.levels(metadata)) > 2:
            return "lrt"
        return "wald"

    def predictor_term(self, metadata: Optional[pd.DataFrame] = None) -> str:
        term = _sanitize_formula_term(self.predictor)
        categorical = self.categorical
        if categorical is None and metadata is not None:
            categorical = self.is_categorical(metadata)
        if categorical:
            if self.reference_level is not None:
                return f"C({term}, Treatment(reference={self.reference_level!r}))"
            return f"C({term})"
        return term

    def covariate_terms(self) -> List[str]:
        return [_sanitize_formula_term(c) for c in self.covariates]

    def formula(self, metadata: Optional[pd.DataFrame] = None) -> str:
        """Right-hand side of the full model, predictor last."""
        return "~ " + " + ".join(self.covariate_terms() + [self.predictor_term(metadata)])

    def reduced_formula(self) -> str:
        """Right-hand side of the model without the predictor."""
        terms = self.covariate_terms()
        return "~ " + (" + ".join(terms) if terms else "1")


# =============================================================================
# NEGATIVE BINOMIAL HELPERS
# =============================================================================

def _fit_gene_glm(
    y: np.ndarray,
    X: np.ndarray,
    offset: np.ndarray,
    alpha: float,
    max_iter: int = 100
):
    """Fit one NB GLM with fixed dispersion and log-link offset."""
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model = sm.GLM(
            y, X, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset
        )
        fit = model.fit(maxiter=max_iter)
    if not np.all(np.isfinite(fit.params)):
        raise RuntimeError("GLM coefficients are not finite")
    return fit


def _design_frame(design_matrix: Union[pd.DataFrame, np.ndarray], samples: pd.Index) -> pd.DataFrame:
    """Design matrix as a float DataFrame indexed by sample."""
    if isinstance(design_matrix, pd.DataFrame):
        return pd.DataFrame(
            design_matrix.to_numpy(dtype=float),
            index=samples,
            columns=[str(c) for c in design_matrix.columns],
        )
    values = np.asarray(design_matrix, dtype=float)
    return pd.DataFrame(values, index=samples, columns=[f"x{i}" for i in range(values.shape[1])])


def fit_deseq_dataset(
    counts: pd.DataFrame,
    design_matrix: Union[pd.DataFrame, np.ndarray],
    config: Optional[StatisticalConfig] = None,
    verbose: bool = True
) -> DeseqDataSet:
    """
    Build a pydeseq2 dataset and run size factor and dispersion estimation.

    Steps: size factors, gene-wise dispersions, mean-dispersion trend,
    prior variance, MAP dispersions. Coefficients are not fitted here.

    Parameters:
    -----------
    counts : pd.DataFrame
        Raw integer counts (genes x samples)
    design_matrix : pd.DataFrame or np.ndarray
        Full-model design (samples x parameters), intercept included
    """
    if config is None:
        config = StatisticalConfig()

    design = _design_frame(design_matrix, counts.columns)
    dds = DeseqDataSet(
        counts=counts.T.astype(np.int64),
        metadata=pd.DataFrame(index=counts.columns),
        design=design,
        fit_type=config.fit_type,
        min_disp=config.min_dispersion,
        max_disp=config.max_dispersion,
        refit_cooks=False,
        inference=DefaultInference(n_cpus=config.n_cpus),
        quiet=not verbose,
    )
    dds.fit_size_factors(fit_type=config.size_factor_method)
    dds.fit_genewise_dispersions()
    dds.fit_dispersion_trend()
    dds.fit_dispersion_prior()
    dds.fit_MAP_dispersions()
    return dds


def _dispersion_table(dds: DeseqDataSet, genes: pd.Index) -> pd.DataFrame:
    """Per-gene dispersion estimates from a fitted pydeseq2 dataset."""
    normed = np.asarray(dds.layers["normed_counts"], dtype=float)
    return pd.DataFrame({
        "baseMean": normed.mean(axis=0),
        "dispGeneEst": np.asarray(dds.varm["genewise_dispersions"], dtype=float),
        "dispFit": np.asarray(dds.varm["fitted_dispersions"], dtype=float),
        "dispMAP": np.asarray(dds.varm["MAP_dispersions"], dtype=float),
        "dispOutlier": np.asarray(dds.varm["_outlier_genes"], dtype=bool),
        "dispersion": np.asarray(dds.varm["dispersions"], dtype=float),
    }, index=genes)


def estimate_dispersions(
    counts: pd.DataFrame,
    design_matrix: Union[pd.DataFrame, np.ndarray],
    config: Optional[StatisticalConfig] = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Estimate negative binomial dispersions for every gene with pydeseq2.

    Gene-wise Cox-Reid estimates are shrunk toward the fitted
    mean-dispersion trend; genes far above the trend keep their gene-wise
    value (``dispOutlier``).

    Parameters:
    -----------
    counts : pd.DataFrame
        Raw counts (genes x samples) of genes to be tested
    design_matrix : pd.DataFrame or np.ndarray
        Full-model design (samples x parameters)

    Returns:
    --------
    pd.DataFrame indexed by gene with columns baseMean, dispGeneEst, dispFit,
    dispMAP, dispOutlier, dispersion. Genes whose estimate is undefined have
    NaN dispersion.
    """
    if verbose:
        print(f"Estimating dispersions for {len(counts)} genes...")

    dds = fit_deseq_dataset(counts, design_matrix, config, verbose=verbose)
    table = _dispersion_table(dds, counts.index)
    if table["dispersion"].notna().sum() == 0:
        raise InsufficientDataError("No gene has a defined dispersion estimate")

    if verbose:
        trend = dds.uns.get("trend_coeffs")
        if trend is not None:
            a0, a1 = np.asarray(trend, dtype=float)[:2]
            print(f"  Dispersion trend: {a0:.4f} + {a1:.4f}/mean")
        else:
            print("  Dispersion trend: mean of gene-wise estimates")
        print(f"  Prior variance of log dispersion: {float(dds.uns['prior_disp_var']):.3f}")
        print(f"  Dispersion outliers kept at gene-wise value: {int(table['dispOutlier'].sum())}")
        print(f"  Genes with undefined dispersion: {int(table['dispersion'].isna().sum())}")

    return table


# =============================================================================
# MODEL FITTING
# =============================================================================

def _create_empty_result(gene_id, reason, base_mean=np.nan):
    """Create empty result for a gene that could not be tested"""
    return {
        "gene_id": gene_id,
        "baseMean": base_mean,
        "logFC": np.nan,
        "lfcSE": np.nan,
        "stat": np.nan,
        "P.Value": np.nan,
        "dispersion": np.nan,
        "test_method": f"Failed: {reason}",
    }


def prepare_model_data(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design: ModelDesign,
    verbose: bool = True
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Check alignment and drop samples with missing design variables.

    Raises:
    -------
    SchemaMismatchError
        If metadata rows do not equal count columns in order.
    """
    validate_sample_alignment(counts, metadata, verbose=False)
    design.validate(metadata)
    columns = [design.predictor] + list(design.covariates)
    counts_used, metadata_used = drop_samples_missing_covariates(
        counts, metadata, columns, verbose=verbose
    )
    if metadata_used.shape[0] == 0:
        raise InsufficientDataError("No samples remain after filtering for required metadata")

    # Empty categories would add all-zero design columns
    metadata_used = metadata_used.copy()
    for col in columns:
        if isinstance(metadata_used[col].dtype, pd.CategoricalDtype):
            metadata_used[col] = metadata_used[col].cat.remove_unused_categories()
    return counts_used, metadata_used


def _predictor_columns(design_df: pd.DataFrame) -> List[str]:
    """Design matrix columns that belong to the predictor (last) term."""
    info = design_df.design_info
    return list(design_df.columns[info.slice(info.terms[-1])])


def _column_level(column_name: str) -> str:
    """Level label from a patsy treatment column like 'C(x)[T.old]'."""
    if "[T." in column_name:
        return column_name[column_name.rfind("[T.") + 3:-1]
    return column_name


def fit_negative_binomial_glm(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    design: ModelDesign,
    config: Optional[StatisticalConfig] = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Fit a negative binomial GLM per gene and test the design's predictor.

    Parameters:
    -----------
    counts : pd.DataFrame
        Raw (filtered) counts, genes x samples
    metadata : pd.DataFrame
        Sample metadata aligned with counts.columns
    design : ModelDesign
        Predictor, covariates and test mode
    config : StatisticalConfig, optional
        Thresholds and fitting settings

    Returns:
    --------
    pd.DataFrame
        One row per gene: gene_id, baseMean, logFC (log2 scale), lfcSE, stat,
        P.Value, adj.P.Val, Significant, Significance, dispersion,
        test_method, predictor, contrast. Genes that could not be tested are
        kept with NaN statistics and the reason in ``test_method``.
    """
    if config is None:
        config = StatisticalConfig()
    config.validate()

    counts, metadata = prepare_model_data(counts, metadata, design, verbose=verbose)
    if design.is_categorical(metadata) and len(design.levels(metadata)) < 2:
        raise InsufficientDataError(
            f"Predictor '{design.predictor}' has fewer than two levels after removing missing values"
        )
    test = design.resolve_test(metadata)

    full_df = dmatrix(design.formula(metadata), metadata, return_type="dataframe")
    X_full = full_df.to_numpy(dtype=float)
    n_samples, n_params = X_full.shape

    if np.linalg.matrix_rank(X_full) < n_params:
        raise ValueError(f"Design matrix for {design.formula(metadata)} is not full rank")
    if n_samples <= n_params:
        raise InsufficientDataError(
            f"{n_samples} samples cannot support {n_params} model parameters"
        )

    predictor_cols = _predictor_columns(full_df)
    if design.is_categorical(metadata):
        levels = [_column_level(c) for c in predictor_cols]
        wanted = design.contrast_level
        target = str(wanted) if wanted is not None else levels[-1]
        if target not in levels:
            raise ValueError(f"Contrast level {wanted!r} not among non-reference levels {levels}")
        effect_col = predictor_cols[levels.index(target)]
        reference = design.reference_level if design.reference_level is not None else design.levels(metadata)[0]
        contrast = f"{target} vs {reference}"
    else:
        effect_col = predictor_cols[0]
        contrast = f"per unit {design.predictor}"
    effect_idx = list(full_df.columns).index(effect_col)

    X_reduced = None
    if test == "lrt":
        X_reduced = np.asarray(
            dmatrix(design.reduced_formula(), metadata, return_type="matrix"), dtype=float
        )
        lrt_df = n_params - X_reduced.shape[1]

    if verbose:
        print(f"Running negative binomial GLM ({test.upper()})...")
        print(f"  Model: counts {design.formula(metadata)}")
        if test == "lrt":
            print(f"  Reduced model: counts {design.reduced_formula()}")
        print(f"  Genes: {counts.shape[0]}, samples: {n_samples}")
        print(f"  Reported effect: {contrast}")

    # Genes that cannot be modelled at all
    nonzero = (counts > 0).sum(axis=1)
    results = []
    testable = []
    for gene in counts.index:
        if nonzero.loc[gene] == 0:
            results.append(_create_empty_result(gene, "All-zero counts", 0.0))
        elif nonzero.loc[gene] < config.min_nonzero_samples:
            results.append(_create_empty_result(gene, "Insufficient non-zero observations"))
        else:
            testable.append(gene)

    if not testable:
        raise InsufficientDataError("No gene has enough non-zero observations to be modelled")

    test_counts = counts.loc[testable]
    if verbose:
        print(f"Estimating dispersions for {len(testable)} genes...")
    dds = fit_deseq_dataset(test_counts, full_df, config, verbose=verbose)
    dispersions = _dispersion_table(dds, test_counts.index)
    if dispersions["dispersion"].notna().sum() == 0:
        raise InsufficientDataError("No gene has a defined dispersion estimate")
    offset = np.log(np.asarray(dds.obsm["size_factors"], dtype=float))

    wald = None
    if test == "wald":
        dds.fit_LFC()
        contrast_vector = np.zeros(n_params)
        contrast_vector[effect_idx] = 1.0
        stats = DeseqStats(
            dds,
            contrast=contrast_vector,
            alpha=config.p_value_threshold,
            cooks_filter=False,
            independent_filter=False,
            inference=DefaultInference(n_cpus=config.n_cpus),
            quiet=not verbose,
        )
        stats.summary()
        wald = stats.results_df.set_axis(test_counts.index)

    values = test_counts.to_numpy(dtype=float)

    for i, gene in enumerate(testable):
        if (i + 1) % config.progress_every == 0 and verbose:
            print(f"  Processed {i + 1}/{len(testable)} genes...")

        base_mean = float(dispersions.loc[gene, "baseMean"])
        alpha = dispersions.loc[gene, "dispersion"]
        if pd.isna(alpha):
            results.append(_create_empty_result(gene, "Dispersion undefined", base_mean))
            continue

        if wald is not None:
            row = wald.loc[gene]
            if pd.isna(row["pvalue"]):
                results.append(_create_empty_result(gene, "Wald test undefined", base_mean))
                continue
            results.append({
                "gene_id": gene,
                "baseMean": base_mean,
                "logFC": float(row["log2FoldChange"]),
                "lfcSE": float(row["lfcSE"]),
                "stat": float(row["stat"]),
                "P.Value": float(row["pvalue"]),
                "dispersion": float(alpha),
                "test_method": "NB GLM Wald",
            })
            continue

        y = values[i]
        try:
            full_fit = _fit_gene_glm(y, X_full, offset, alpha, config.max_iter)
            reduced_fit = _fit_gene_glm(y, X_reduced, offset, alpha, config.max_iter)
            coef = float(full_fit.params[effect_idx])
            se = float(full_fit.bse[effect_idx])
            stat = max(float(reduced_fit.deviance - full_fit.deviance), 0.0)
            results.append({
                "gene_id": gene,
                "baseMean": base_mean,
                "logFC": coef / np.log(2),
                "lfcSE": se / np.log(2),
                "stat": stat,
                "P.Value": float(chi2.sf(stat, lrt_df)),
                "dispersion": float(alpha),
                "test_method": f"NB GLM LRT (df={lrt_df})",
            })
        except _FIT_ERRORS as e:
            results.append(_create_empty_result(gene, f"Analysis failed: {e}", base_mean))

    results_df = pd.DataFrame(results)
    results_df["predictor"] = design.predictor
    results_df["contrast"] = contrast

    results_df = apply_multiple_testing_correction(results_df, config, verbose=verbose)
    results_df = results_df.sort_values("P.Value", na_position="last").reset_index(drop=True)

    if verbose:
        print(f"✓ NB GLM completed for {len(results_df)} genes")
        print(f"  Genes with valid results: {results_df['P.Value'].notna().sum()}")
    return results_df


def apply_multiple_testing_correction(results_df, config=None, verbose=True):
    """Apply multiple testing correction

    Only genes with a p-value count as tests; untested genes keep a missing
    adjusted p-value and are never significant.
    """
    if config is None:
        config = StatisticalConfig()

    results_df = results_df.copy()

    if "P.Value" not in results_df.columns:
        print("Warning: No P.Value column found for correction")
        return results_df

    valid = results_df["P.Value"].notna()
    results_df["adj.P.Val"] = np.nan

    if valid.sum() == 0:
        print("Warning: No valid p-values found")
        results_df["Significant"] = False
        results_df["Significance"] = "Not tested"
        return results_df

    if config.correction_method == "none":
        results_df.loc[valid, "adj.P.Val"] = results_df.loc[valid, "P.Value"]
    else:
        _, adj_pvalues, _, _ = multipletests(
            results_df.loc[valid, "P.Value"].to_numpy(), method=config.correction_method
        )
        results_df.loc[valid, "adj.P.Val"] = adj_pvalues

    results_df["Significant"] = (results_df["adj.P.Val"] < config.p_value_threshold).fillna(False).astype(bool)

    if verbose:
        print("Multiple testing correction applied:")
        print(f"  Method: {config.correction_method}")
        print(f"  Tests: {int(valid.sum())}")
        print(
            f"  Significant genes (adjusted p < {config.p_value_threshold}): {int(results_df['Significant'].sum())}"
        )

    # Add significance categories
    results_df["Significance"] = "Not significant"
    results_df.loc[~valid, "Significance"] = "Not tested"
    threshold = config.p_value_threshold
    strict = threshold / 5
    results_df.loc[results_df["adj.P.Val"] < threshold, "Significance"] = f"Significant (FDR < {threshold:g})"
    results_df.loc[results_df["adj.P.Val"] < strict, "Significance"] = f"Highly significant (FDR < {strict:g})"

    return results_df


def run_predictor_scan(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    predictors: List[str],
    covariates: Optional[List[str]] = None,
    config: Optional[StatisticalConfig] = None,
    test: str = "auto",
    reference_levels: Optional[Dict[str, object]] = None,
    categorical_predictors: Optional[List[str]] = None,
    verbose: bool = True
) -> Tuple[Dict[str, pd.DataFrame], Dict[str, str]]:
    """
    Fit the count model once per predictor with a shared covariate set.

    Each predictor gets its own ``ModelDesign``; a predictor that cannot be
    modelled is recorded in ``failures`` and the scan continues. Sample
    misalignment aborts the whole scan.

    Parameters:
    -----------
    counts : pd.DataFrame
        Raw counts (genes x samples); low-count genes are filtered with
        ``config.min_mean_count``
    metadata : pd.DataFrame
        Sample metadata aligned with counts.columns
    predictors : list
        Predictor columns (e.g. ['age', 'E2_z', 'FEI_z', 'age_category'])
    covariates : list, optional
        Adjustment covariates; a predictor is never used as its own covariate
    test : str
        'wald', 'lrt' or 'auto'
    reference_levels : dict, optional
        Reference level per categorical predictor
    categorical_predictors : list, optional
        Predictors modelled as categories even when stored as numbers
        (integer-coded age bins)

    Returns:
    --------
    results : dict
        predictor -> ModelResult DataFrame
    failures : dict
        predictor -> reason
    """
    if config is None:
        config = StatisticalConfig()
    covariates = list(covariates or [])
    reference_levels = reference_levels or {}
    categorical_predictors = set(categorical_predictors or [])

    validate_sample_alignment(counts, metadata, verbose=verbose)
    filtered = filter_low_count_genes(counts, config.min_mean_count, verbose=verbose)

    results = {}
    failures = {}

    for predictor in predictors:
        if verbose:
            print("\n" + "=" * 60)
            print(f"PREDICTOR: {predictor}")
            print("=" * 60)

        design = ModelDesign(
            predictor=predictor,
            covariates=[c for c in covariates if c != predictor],
            test=test,
            categorical=True if predictor in categorical_predictors else None,
            reference_level=reference_levels.get(predictor),
        )
        try:
            results[predictor] = fit_negative_binomial_glm(
                filtered, metadata, design, config, verbose=verbose
            )
        except (InsufficientDataError, ValueError, np.linalg.LinAlgError) as e:
            failures[predictor] = str(e)
            print(f"  Skipping {predictor}: {e}")

    if verbose:
        print(f"\n✓ Predictor scan complete: {len(results)} fitted, {len(failures)} skipped")
    return results, failures


def display_analysis_summary(differential_results, config=None, label_top_n=10):
    """
    Display summary of one differential expression result table

    Parameters:
    -----------
    differential_results : pd.DataFrame
        Results from fit_negative_binomial_glm
    config : StatisticalConfig
        Configuration object with analysis parameters
    label_top_n : int
        Number of top significant genes to display

    Returns:
    --------
    dict
        Summary statistics for downstream use
    """
    if config is None:
        config = StatisticalConfig()

    if differential_results is None or len(differential_results) == 0:
        print("⚠️ No differential analysis results available")
        return {}

    print("=" * 60)
    print("STATISTICAL ANALYSIS SUMMARY")
    print("=" * 60)

    total_genes = len(differential_results)
    valid_results = int(differential_results["P.Value"].notna().sum())
    significant = int((differential_results["adj.P.Val"] < config.p_value_threshold).sum())
    up = int(((differential_results["adj.P.Val"] < config.p_value_threshold)
              & (differential_results["logFC"] > 0)).sum())
    down = significant - up

    if "predictor" in differential_results.columns:
        print(f"  Predictor: {differential_results['predictor'].iloc[0]}")
    print(f"  Total genes: {total_genes:,}")
    print(f"  Genes with valid results: {valid_results:,}")
    print(f"  Significant (adjusted p < {config.p_value_threshold}): {significant:,} ({up} up, {down} down)")

    if valid_results == 0:
        print("\n❌ No valid statistical results found")
        failed = differential_results["test_method"].value_counts()
        for reason, count in failed.items():
            print(f"  {reason}: {count}")
        return {}

    top_results = differential_results[differential_results["P.Value"].notna()].nsmallest(
        label_top_n, "P.Value"
    )
    display_cols = [c for c in ["gene_id", "Symbol", "logFC", "P.Value", "adj.P.Val"]
                    if c in top_results.columns]
    display_df = top_results[display_cols].copy()
    for col in ["P.Value", "adj.P.Val"]:
        display_df[col] = display_df[col].apply(
            lambda x: f"{x:.2e}" if pd.notna(x) and x < 0.01 else f"{x:.4f}" if pd.notna(x) else "N/A"
        )
    display_df["logFC"] = display_df["logFC"].apply(lambda x: f"{x:.3f}" if pd.notna(x) else "N/A")

    print(f"\n=== TOP {label_top_n} GENES ===")
    print(display_df.to_string(index=False))

    return {
        "total_genes": total_genes,
        "valid_results": valid_results,
        "significant": significant,
        "up": up,
        "down": down,
        "success_rate": valid_results / total_genes if total_genes > 0 else 0,
    }


# =============================================================================
# PHENOTYPE REGRESSION
# =============================================================================

def run_phenotype_regression(
    phenotypes: pd.DataFrame,
    outcomes: List[str],
    predictor: str,
    covariates: Optional[List[str]] = None,
    robust: bool = False,
    config: Optional[StatisticalConfig] = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Regress each outcome (muscle mass, strength, fibre-type area, cell-type
    fraction, ...) on a predictor with optional covariates.

    Ordinary least squares by default; ``robust=True`` uses Huber M-estimation
    so single extreme participants do not drive the slope. Samples with a
    missing outcome or covariate are dropped per outcome. P-values are
    adjusted across outcomes.

    Returns:
    --------
    pd.DataFrame
        outcome, predictor, coef, se, stat, P.Value, adj.P.Val, Significant,
        n_obs, r_squared (OLS only), test_method
    """
    if config is None:
        config = StatisticalConfig()
    covariates = [c for c in (covariates or []) if c != predictor]

    missing = [c for c in [predictor] + covariates + list(outcomes) if c not in phenotypes.columns]
    if missing:
        raise ValueError(f"Missing phenotype columns: {missing}")

    rhs = " + ".join([_sanitize_formula_term(predictor)] + [_sanitize_formula_term(c) for c in covariates])
    method = "Huber robust regression" if robust else "OLS"

    if verbose:
        print(f"Running {method} for {len(outcomes)} outcomes (predictor: {predictor})")

    rows = []
    for outcome in outcomes:
        data = phenotypes[[outcome, predictor] + covariates].dropna()
        formula = f"{_sanitize_formula_term(outcome)} ~ {rhs}"
        n_params = 2 + len(covariates)

        if len(data) <= n_params:
            rows.append({
                "outcome": outcome, "predictor": predictor, "coef": np.nan, "se": np.nan,
                "stat": np.nan, "P.Value": np.nan, "n_obs": len(data), "r_squared": np.nan,
                "test_method": "Failed: Insufficient data",
            })
            continue

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                if robust:
                    fit = smf.rlm(formula, data=data, M=sm.robust.norms.HuberT()).fit()
                    r_squared = np.nan
                else:
                    fit = smf.ols(formula, data=data).fit()
                    r_squared = float(fit.rsquared)

            term = _sanitize_formula_term(predictor)
            rows.append({
                "outcome": outcome,
                "predictor": predictor,
                "coef": float(fit.params[term]),
                "se": float(fit.bse[term]),
                "stat": float(fit.tvalues[term]),
                "P.Value": float(fit.pvalues[term]),
                "n_obs": int(fit.nobs),
                "r_squared": r_squared,
                "test_method": method,
            })
        except (ValueError, np.linalg.LinAlgError, KeyError) as e:
            rows.append({
                "outcome": outcome, "predictor": predictor, "coef": np.nan, "se": np.nan,
                "stat": np.nan, "P.Value": np.nan, "n_obs": len(data), "r_squared": np.nan,
                "test_method": f"Failed: {e}",
            })

    results_df = apply_multiple_testing_correction(pd.DataFrame(rows), config, verbose=verbose)
    return results_df


def correlation_matrix(
    phenotypes: pd.DataFrame,
    columns: List[str],
    method: str = "spearman",
    min_obs: int = 3
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Pairwise correlations using pairwise-complete observations.

    Returns:
    --------
    (correlations, p_values) as square DataFrames over ``columns``
    """
    if method not in ("spearman", "pearson"):
        raise ValueError("method must be 'spearman' or 'pearson'")
    missing = [c for c in columns if c not in phenotypes.columns]
    if missing:
        raise ValueError(f"Missing phenotype columns: {missing}")

    corr = pd.DataFrame(np.nan, index=columns, columns=columns)
    pvals = pd.DataFrame(np.nan, index=columns, columns=columns)
    test = spearmanr if method == "spearman" else pearsonr

    for i, a in enumerate(columns):
        corr.loc[a, a] = 1.0
        pvals.loc[a, a] = 0.0
        for b in columns[i + 1:]:
            pair = phenotypes[[a, b]].apply(pd.to_numeric, errors="coerce").dropna()
            if len(pair) < min_obs or pair[a].nunique() < 2 or pair[b].nunique() < 2:
                continue
            r, p = test(pair[a], pair[b])
            corr.loc[a, b] = corr.loc[b, a] = float(r)
            pvals.loc[a, b] = pvals.loc[b, a] = float(p)

    return corr, pvals
