"""
Export Module for FAMe Transcriptomics Toolkit

Writes model results, per-predictor result sets, intermediate tables
(filtered counts, cluster assignments) and timestamped configuration records
so that an analysis can be reproduced.
"""

import os
import pandas as pd
from datetime import datetime
from typing import Any, Dict, List, Optional

from .preprocessing import _normalize_group_value


def _separator_for(path: str) -> str:
    return "\t" if path.lower().endswith((".tsv", ".txt", ".tsv.gz", ".txt.gz")) else ","


def export_results(
    results: pd.DataFrame,
    output_file: str,
    include_all: bool = True,
    p_threshold: float = 0.05
) -> str:
    """
    Export a result table (ModelResult, enrichment, regression) to CSV/TSV.

    Parameters:
    -----------
    results : pd.DataFrame
        Result table
    output_file : str
        Output filename; ``.tsv``/``.txt`` are tab-separated
    include_all : bool
        Whether to include all genes or only significant ones
    p_threshold : float
        Adjusted p-value threshold used when ``Significant`` is absent

    Returns:
    --------
    str
        Path written
    """
    if not include_all:
        if "Significant" in results.columns:
            export_df = results[results["Significant"].astype(bool)].copy()
        elif "adj.P.Val" in results.columns:
            export_df = results[results["adj.P.Val"] < p_threshold].copy()
        else:
            export_df = results.copy()
        print(f"Exporting {len(export_df)} significant rows to {output_file}")
    else:
        export_df = results.copy()
        print(f"Exporting all {len(export_df)} rows to {output_file}")

    directory = os.path.dirname(output_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    export_df.to_csv(output_file, sep=_separator_for(output_file), index=False)
    return output_file


def export_predictor_results(
    results_by_predictor: Dict[str, pd.DataFrame],
    output_dir: str,
    prefix: str = "fame",
    include_all: bool = True,
    failures: Optional[Dict[str, str]] = None
) -> Dict[str, str]:
    """
    Write one result file per predictor plus a summary table.

    Returns:
    --------
    dict
        predictor -> file path, plus 'summary' for the summary table
    """
    os.makedirs(output_dir, exist_ok=True)
    exported = {}
    summary_rows = []

    for predictor, results in results_by_predictor.items():
        safe_name = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in str(predictor))
        path = os.path.join(output_dir, f"{prefix}_{safe_name}_results.csv")
        exported[predictor] = export_results(results, path, include_all=include_all)

        significant = results["Significant"].astype(bool) if "Significant" in results.columns \
            else pd.Series(False, index=results.index)
        summary_rows.append({
            "predictor": predictor,
            "genes_tested": int(results["P.Value"].notna().sum()),
            "significant": int(significant.sum()),
            "up": int((significant & (results["logFC"] > 0)).sum()),
            "down": int((significant & (results["logFC"] < 0)).sum()),
            "status": "fitted",
        })

    for predictor, reason in (failures or {}).items():
        summary_rows.append({
            "predictor": predictor, "genes_tested": 0, "significant": 0,
            "up": 0, "down": 0, "status": f"failed: {reason}",
        })

    summary_path = os.path.join(output_dir, f"{prefix}_predictor_summary.csv")
    pd.DataFrame(summary_rows).to_csv(summary_path, index=False)
    exported["summary"] = summary_path
    print(f"✓ Exported {len(results_by_predictor)} predictor result sets to {output_dir}")
    return exported


def save_intermediate(data: pd.DataFrame, path: str) -> str:
    """
    Save an intermediate table (filtered counts, normalized matrix, cluster
    assignments) with its index, so ``load_intermediate`` restores it.
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    data.to_csv(path, sep=_separator_for(path), index=True)
    print(f"✓ Saved {data.shape[0]} x {data.shape[1]} table to {path}")
    return path


def load_intermediate(path: str) -> pd.DataFrame:
    """Load a table written by ``save_intermediate``."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Intermediate file not found: {path}")
    return pd.read_csv(path, sep=_separator_for(path), index_col=0)


def export_significant_genes_summary(
    results: pd.DataFrame,
    output_prefix: str = "fame_analysis",
    p_threshold: float = 0.05
) -> str:
    """
    Export significant genes with key statistics and a Regulation column.

    Returns:
    --------
    str
        Path to the summary file, or an empty string if nothing is significant
    """
    significant = results[results["adj.P.Val"] < p_threshold]
    if len(significant) == 0:
        print("No significant genes found - skipping summary export")
        return ""

    summary_file = f"{output_prefix}_significant_genes_summary.csv"
    cols = [c for c in ["gene_id", "Symbol", "predictor", "baseMean", "logFC", "P.Value", "adj.P.Val"]
            if c in significant.columns]
    summary = significant[cols].copy()
    summary["Regulation"] = summary["logFC"].apply(lambda x: "Up" if x > 0 else "Down")
    summary = summary.sort_values("adj.P.Val")
    summary.to_csv(summary_file, index=False)

    print(f"Significant genes summary exported to: {summary_file}")
    print(f"  • Total significant: {len(summary)}")
    print(f"  • Up: {(summary['Regulation'] == 'Up').sum()}")
    print(f"  • Down: {(summary['Regulation'] == 'Down').sum()}")
    return summary_file


CONFIG_SECTIONS = [
    (1, "INPUT FILES AND PATHS", ["count_file_batch1", "count_file_batch2", "phenotype_file_batch1",
                                  "phenotype_file_batch2", "sample_column", "gene_set_file",
                                  "annotation_file"]),
    (2, "COUNT FILTERING AND NORMALIZATION", ["min_mean_count", "size_factor_method", "fit_type", "transform"]),
    (3, "MODEL DESIGN", ["predictors", "covariates", "test", "reference_levels",
                         "categorical_predictors", "batch_column"]),
    (4, "PHENOTYPE PREPARATION", ["age_bins", "age_labels", "imputed_columns", "knn_neighbors",
                                  "standardized_columns"]),
    (5, "SIGNIFICANCE THRESHOLDS", ["p_value_threshold", "correction_method"]),
    (6, "ENRICHMENT", ["pvalue_cutoff", "qvalue_cutoff", "min_size", "max_size_ora",
                       "max_size_gsea", "permutations"]),
    (7, "PATTERN CLUSTERING", ["group_column", "group_order", "clustering_method",
                               "min_clusters", "max_clusters"]),
    (8, "OUTPUT AND EXPORT SETTINGS", ["output_prefix", "output_dir", "random_seed"]),
]


def _write_config_section(
    file_handle,
    section_name: str,
    config_dict: Dict[str, Any],
    param_names: List[str],
    section_number: int = 1,
) -> None:
    """Write a configuration section to file."""
    file_handle.write("# =============================================================================\n")
    file_handle.write(f"# {section_number}. {section_name}\n")
    file_handle.write("# =============================================================================\n")

    for param in param_names:
        if param in config_dict:
            file_handle.write(f"{param} = {repr(config_dict[param])}\n")

    file_handle.write("\n")


def export_timestamped_config(
    config_dict: Dict[str, Any],
    output_prefix: str = "fame_analysis",
    analysis_description: str = "FAMe transcriptomics analysis",
    computed_values: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Export analysis configuration as a timestamped Python file.

    Parameters not belonging to a known section are written under
    'ADDITIONAL PARAMETERS', so nothing passed in is lost.

    Parameters:
    -----------
    config_dict : dict
        Configuration parameters
    output_prefix : str
        Prefix for the configuration filename (may include a directory)
    analysis_description : str
        Description of the analysis
    computed_values : dict, optional
        Values computed during the run (e.g. sample counts, selected cluster
        number), written as comments

    Returns:
    --------
    str
        Path to the exported configuration file
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    config_file = f"{output_prefix}_config_{timestamp}.py"

    print(f"Exporting analysis configuration to: {config_file}")

    with open(config_file, "w", encoding="utf-8") as f:
        f.write("# =============================================================================\n")
        f.write("# FAMe TRANSCRIPTOMICS ANALYSIS CONFIGURATION\n")
        f.write(f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"# Analysis: {analysis_description}\n")
        f.write("# =============================================================================\n\n")

        known = set()
        for section_num, section_name, param_names in CONFIG_SECTIONS:
            known.update(param_names)
            _write_config_section(f, section_name, config_dict, param_names, section_num)

        extra = [k for k in config_dict if k not in known]
        if extra:
            _write_config_section(f, "ADDITIONAL PARAMETERS", config_dict, extra, len(CONFIG_SECTIONS) + 1)

        if computed_values:
            f.write("# =============================================================================\n")
            f.write("# COMPUTED VALUES (for reference)\n")
            f.write("# =============================================================================\n")
            for key, value in computed_values.items():
                if isinstance(value, dict):
                    f.write(f"# {key}:\n")
                    for sub_key, sub_value in value.items():
                        f.write(f"#   {_normalize_group_value(sub_key)}: {sub_value}\n")
                else:
                    f.write(f"# {key}: {value}\n")

    return config_file
