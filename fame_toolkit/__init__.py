"""
FAMe Transcriptomics Toolkit
============================

Analysis library for the FAMe physiology study, relating age, menopausal
status and sex hormones to skeletal muscle transcriptomic, histological and
functional outcomes. Linear single-pass workflow: load -> filter -> fit ->
annotate -> enrich/cluster -> save/plot.

QUICK START EXAMPLE:
-------------------
    import fame_toolkit as ftk

    # 1. Load and merge the two collection batches
    counts, metadata = ftk.merge_cohorts(counts_a, pheno_a, counts_b, pheno_b)

    # 2. Filter and fit one model per predictor
    config = ftk.StatisticalConfig()
    results, failures = ftk.run_predictor_scan(
        counts, metadata, predictors=['age', 'E2_z'], covariates=['batch'], config=config
    )

    # 3. Annotate, enrich, cluster
    annotated = ftk.annotate_results(results['age'], symbol_map)
    ora = ftk.run_over_representation(significant_ids, annotated['gene_id'], gene_sets)

    # 4. Plots and export
    ftk.plot_volcano(annotated, save_path='age_volcano.png')
    ftk.export_predictor_results(results, 'results/', failures=failures)

MODULE OVERVIEW:
===============

data_import
    Purpose: Load count matrices, phenotype spreadsheets and external tables;
             merge collection batches
    Key functions: load_count_matrix(), load_phenotype_table(), merge_cohorts()

preprocessing
    Purpose: Count filtering, size factors, phenotype preparation
    Key functions: filter_low_count_genes(), estimate_size_factors(), impute_knn()

normalization
    Purpose: Transforms for visualization and clustering
    Key functions: variance_stabilizing_transform(), remove_batch_effect()

statistical_analysis
    Purpose: Negative binomial GLMs per gene (pydeseq2 dispersions, Wald/LRT),
             multiple testing, phenotype regression
    Key functions: fit_negative_binomial_glm(), run_predictor_scan(), ModelDesign

annotation
    Purpose: Ensembl id -> gene symbol
    Key functions: annotate_results(), build_symbol_map(), query_ensembl_symbols()

enrichment
    Purpose: Over-representation and ranked gene set enrichment
    Key functions: run_over_representation(), run_ranked_enrichment()

pattern_clustering
    Purpose: Cluster genes by expression trajectory along an ordered factor
    Key functions: run_pattern_analysis(), PatternClusteringConfig

visualization
    Purpose: Volcano, PCA, trajectory, violin and correlation plots; panels
    Key functions: plot_volcano(), plot_pca(), compose_figure()

validation
    Purpose: Error taxonomy and sample alignment checks
    Key functions: validate_sample_alignment(), align_metadata_to_counts()

export
    Purpose: Result files, intermediates and timestamped config records
    Key functions: export_predictor_results(), export_timestamped_config()

ERROR HANDLING:
==============
- SchemaMismatchError: count columns and metadata rows disagree (fatal)
- InsufficientDataError: a gene, group or predictor lacks data (recorded)
- AnnotationLookupError: symbol lookup failed (warning, empty symbols)
- EnrichmentUniverseEmptyError: enrichment background is empty
"""

# =============================================================================
# MODULE IMPORTS - Core functionality organized by analysis stage
# =============================================================================

from . import validation           # Error taxonomy and alignment checks
from . import data_import          # Loading and merging
from . import preprocessing        # Filtering and phenotype preparation
from . import normalization        # Transforms
from . import statistical_analysis # Count models and regression
from . import annotation           # Gene symbols
from . import enrichment           # Gene set enrichment
from . import pattern_clustering   # Trajectory clustering
from . import visualization        # Plotting
from . import export               # Results export and configuration records

__version__ = "1.0.0"

# =============================================================================
# CONVENIENCE IMPORTS - Most commonly used functions available at top level
# =============================================================================

from .validation import (
    SchemaMismatchError,
    InsufficientDataError,
    AnnotationLookupError,
    EnrichmentUniverseEmptyError,
    validate_sample_alignment,
    align_metadata_to_counts,
    generate_sample_matching_diagnostic_report,
)

from .data_import import (
    load_count_matrix,
    load_phenotype_table,
    merge_count_matrices,
    merge_phenotype_tables,
    merge_cohorts,
    load_deconvolution_fractions,
    load_motif_enrichment_table,
)

from .preprocessing import (
    filter_low_count_genes,
    estimate_size_factors,
    normalize_counts,
    summarize_missingness,
    impute_knn,
    add_age_category,
    standardize_columns,
)

from .normalization import (
    variance_stabilizing_transform,
    log_transform,
    remove_batch_effect,
)

from .statistical_analysis import (
    StatisticalConfig,
    ModelDesign,
    estimate_dispersions,
    fit_deseq_dataset,
    fit_negative_binomial_glm,
    apply_multiple_testing_correction,
    run_predictor_scan,
    display_analysis_summary,
    run_phenotype_regression,
    correlation_matrix,
)

from .annotation import (
    AnnotationConfig,
    annotate_results,
    build_symbol_map,
    query_ensembl_symbols,
    strip_version,
)

from .enrichment import (
    EnrichmentConfig,
    load_gene_sets,
    gene_sets_from_table,
    rank_genes,
    run_over_representation,
    run_ranked_enrichment,
    run_enrichment_analysis,
    run_enrichment_by_group,
)

from .pattern_clustering import (
    PatternClusteringConfig,
    calculate_group_trajectories,
    determine_optimal_clusters,
    cluster_gene_patterns,
    run_pattern_analysis,
    select_clusters,
)

from .visualization import (
    plot_volcano,
    plot_pca,
    plot_count_distribution,
    plot_cluster_trajectories,
    plot_cluster_violins,
    plot_correlation_matrix,
    plot_missingness,
    plot_imputation_check,
    compose_figure,
)

from .export import (
    export_results,
    export_predictor_results,
    save_intermediate,
    load_intermediate,
    export_timestamped_config,
)

# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # MODULES
    "validation",
    "data_import",
    "preprocessing",
    "normalization",
    "statistical_analysis",
    "annotation",
    "enrichment",
    "pattern_clustering",
    "visualization",
    "export",

    # ERRORS AND VALIDATION
    "SchemaMismatchError",
    "InsufficientDataError",
    "AnnotationLookupError",
    "EnrichmentUniverseEmptyError",
    "validate_sample_alignment",
    "align_metadata_to_counts",
    "generate_sample_matching_diagnostic_report",

    # DATA LOADING
    "load_count_matrix",
    "load_phenotype_table",
    "merge_count_matrices",
    "merge_phenotype_tables",
    "merge_cohorts",
    "load_deconvolution_fractions",
    "load_motif_enrichment_table",

    # PREPROCESSING
    "filter_low_count_genes",
    "estimate_size_factors",
    "normalize_counts",
    "summarize_missingness",
    "impute_knn",
    "add_age_category",
    "standardize_columns",

    # TRANSFORMS
    "variance_stabilizing_transform",
    "log_transform",
    "remove_batch_effect",

    # STATISTICAL ANALYSIS
    "StatisticalConfig",
    "ModelDesign",
    "estimate_dispersions",
    "fit_deseq_dataset",
    "fit_negative_binomial_glm",
    "apply_multiple_testing_correction",
    "run_predictor_scan",
    "display_analysis_summary",
    "run_phenotype_regression",
    "correlation_matrix",

    # ANNOTATION
    "AnnotationConfig",
    "annotate_results",
    "build_symbol_map",
    "query_ensembl_symbols",
    "strip_version",

    # ENRICHMENT
    "EnrichmentConfig",
    "load_gene_sets",
    "gene_sets_from_table",
    "rank_genes",
    "run_over_representation",
    "run_ranked_enrichment",
    "run_enrichment_analysis",
    "run_enrichment_by_group",

    # PATTERN CLUSTERING
    "PatternClusteringConfig",
    "calculate_group_trajectories",
    "determine_optimal_clusters",
    "cluster_gene_patterns",
    "run_pattern_analysis",
    "select_clusters",

    # VISUALIZATION
    "plot_volcano",
    "plot_pca",
    "plot_count_distribution",
    "plot_cluster_trajectories",
    "plot_cluster_violins",
    "plot_correlation_matrix",
    "plot_missingness",
    "plot_imputation_check",
    "compose_figure",

    # EXPORT
    "export_results",
    "export_predictor_results",
    "save_intermediate",
    "load_intermediate",
    "export_timestamped_config",
]
