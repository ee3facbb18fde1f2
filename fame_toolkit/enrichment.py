"""
Gene Set Enrichment Analysis Module

Functional interpretation of gene lists produced by the count models and the
pattern clustering:

- Over-representation analysis (hypergeometric test against an explicit
  background universe) with Benjamini-Hochberg and Storey q-values
- Ranked (preranked GSEA) enrichment over all tested genes via gseapy
- The Enrichr web service as an alternative over-representation backend

Gene sets are plain ``{term: [gene ids]}`` dictionaries loaded from GMT files
or long two-column tables, so the same collection (GO, KEGG, Reactome,
MSigDB hallmarks, ...) serves every mode.
"""

import os
import json
import time
import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import gseapy as gp
import requests
from matplotlib.figure import Figure
from matplotlib.patches import Rectangle
from dataclasses import dataclass, field
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests
from typing import Dict, Iterable, List, Optional, Tuple

from .validation import EnrichmentUniverseEmptyError


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class EnrichmentConfig:
    """Configuration for gene set enrichment analysis.

    Attributes
    ----------
    pvalue_cutoff : float
        P-value threshold for reported terms
    qvalue_cutoff : float
        Storey q-value threshold for reported terms
    min_size : int
        Smallest gene set (within the universe) that is tested
    max_size_ora : int
        Largest gene set tested by over-representation analysis
    max_size_gsea : int
        Largest gene set tested by ranked enrichment
    permutations : int
        Permutations for ranked enrichment
    seed : int
        Random seed for ranked enrichment
    enrichr_libraries : List[str]
        Gene set libraries to query from Enrichr
    min_genes : int
        Minimum query size to run any enrichment
    rate_limit_delay : float
        Delay between Enrichr requests (seconds)
    timeout : int
        Request timeout in seconds

    Examples
    --------
    >>> config = EnrichmentConfig()
    >>> config.qvalue_cutoff = 0.1
    """

    # Significance thresholds
    pvalue_cutoff: float = 0.05
    qvalue_cutoff: float = 0.2
    top_n: int = 20

    # Gene set size bounds
    min_size: int = 5
    max_size_ora: int = 800
    max_size_gsea: int = 2000

    # Ranked enrichment
    permutations: int = 1000
    seed: int = 42

    # Gene list requirements
    min_genes: int = 5

    # Enrichr settings
    enrichr_libraries: List[str] = field(default_factory=lambda: [
        'GO_Biological_Process_2023',
        'KEGG_2021_Human',
        'Reactome_2022',
        'MSigDB_Hallmark_2020',
    ])
    rate_limit_delay: float = 0.5
    timeout: int = 30

    # Visualization settings
    bar_figsize: Tuple[int, int] = (12, 8)
    dot_figsize: Tuple[int, int] = (14, 10)


# Default library colors for consistent visualization
LIBRARY_COLORS = {
    'GO_Biological_Process_2023': '#1f77b4',
    'GO_Molecular_Function_2023': '#2ca02c',
    'GO_Cellular_Component_2023': '#17becf',
    'KEGG_2021_Human': '#d62728',
    'Reactome_2022': '#9467bd',
    'WikiPathway_2023_Human': '#ff7f0e',
    'MSigDB_Hallmark_2020': '#8c564b',
    'local': '#7f7f7f',
}


# =============================================================================
# GENE SET COLLECTIONS
# =============================================================================

def load_gene_sets(path: str) -> Dict[str, List[str]]:
    """
    Read a GMT file: one gene set per line, ``term<TAB>description<TAB>gene...``.

    Duplicate genes inside a set are collapsed; a term that appears twice
    keeps its first definition.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Gene set file not found: {path}")

    gene_sets = {}
    with open(path) as handle:
        for line in handle:
            parts = line.rstrip("\n").split("\t")
            if len(parts) < 3 or not parts[0]:
                continue
            term = parts[0].strip()
            genes = list(dict.fromkeys(g.strip() for g in parts[2:] if g.strip()))
            if term not in gene_sets and genes:
                gene_sets[term] = genes

    print(f"✓ Loaded {len(gene_sets)} gene sets from {os.path.basename(path)}")
    return gene_sets


def gene_sets_from_table(
    table: pd.DataFrame,
    term_column: str = "term",
    gene_column: str = "gene"
) -> Dict[str, List[str]]:
    """Build a gene set collection from a long (term, gene) table."""
    for col in (term_column, gene_column):
        if col not in table.columns:
            raise ValueError(f"Column '{col}' not found in gene set table")

    pairs = table[[term_column, gene_column]].dropna().astype(str)
    gene_sets = {}
    for term, genes in pairs.groupby(term_column, sort=False)[gene_column]:
        gene_sets[term] = list(dict.fromkeys(genes))
    return gene_sets


def rank_genes(
    results: pd.DataFrame,
    metric: str = "logFC",
    gene_column: str = "gene_id"
) -> pd.Series:
    """
    Ranking of all tested genes for ranked enrichment, highest first.

    Parameters
    ----------
    results : pd.DataFrame
        A ModelResult table
    metric : str
        'logFC' ranks by effect size; 'signed_p' ranks by
        ``-log10(P.Value) * sign(logFC)``
    gene_column : str
        Identifier column used as the ranking index
    """
    tested = results.dropna(subset=["P.Value", "logFC"])
    if metric == "logFC":
        scores = tested["logFC"]
    elif metric == "signed_p":
        pvals = tested["P.Value"].clip(lower=1e-300)
        scores = -np.log10(pvals) * np.sign(tested["logFC"])
    else:
        raise ValueError("metric must be 'logFC' or 'signed_p'")

    ranking = pd.Series(scores.to_numpy(dtype=float), index=tested[gene_column].astype(str))
    ranking = ranking[~ranking.index.duplicated(keep="first")]
    return ranking.sort_values(ascending=False)


# =============================================================================
# OVER-REPRESENTATION ANALYSIS
# =============================================================================

def storey_qvalues(pvalues: np.ndarray, lambda_: float = 0.5) -> np.ndarray:
    """
    Storey q-values: BH-adjusted p-values scaled by the estimated fraction of
    true nulls ``pi0 = #{p > lambda} / ((1 - lambda) m)``, capped at 1.
    """
    pvalues = np.asarray(pvalues, dtype=float)
    if len(pvalues) == 0:
        return pvalues
    pi0 = min(1.0, float(np.mean(pvalues > lambda_)) / (1 - lambda_))
    _, bh, _, _ = multipletests(pvalues, method="fdr_bh")
    return np.minimum(pi0 * bh, 1.0)


def run_over_representation(
    query_genes: Iterable[str],
    universe: Iterable[str],
    gene_sets: Dict[str, List[str]],
    config: Optional[EnrichmentConfig] = None,
    filter_results: bool = True,
    library: str = "local"
) -> pd.DataFrame:
    """
    Hypergeometric over-representation test of a gene list.

    Everything is restricted to the universe: query genes outside it are
    ignored and gene set sizes are counted within it. Terms whose size in the
    universe falls outside ``[min_size, max_size_ora]`` are not tested. The
    p-value is the upper tail ``P(X >= overlap)``.

    Parameters
    ----------
    query_genes : iterable of str
        Genes of interest (e.g. significant genes or one cluster)
    universe : iterable of str
        Background, normally all genes that were tested
    gene_sets : Dict[str, List[str]]
        Term -> member genes
    config : EnrichmentConfig, optional
        Size bounds and reporting thresholds
    filter_results : bool
        Keep only terms with P_Value <= pvalue_cutoff and
        Q_Value <= qvalue_cutoff

    Returns
    -------
    pd.DataFrame
        Library, Term, Overlap, Set_Size, Query_Size, Universe_Size,
        GeneRatio, BgRatio, Fold_Enrichment, P_Value, Adj_P_Value, Q_Value,
        Genes, N_Genes; sorted by P_Value

    Raises
    ------
    EnrichmentUniverseEmptyError
        If the universe is empty.
    """
    if config is None:
        config = EnrichmentConfig()

    universe_set = set(str(g) for g in universe if pd.notna(g) and str(g).strip())
    if not universe_set:
        raise EnrichmentUniverseEmptyError("Background universe contains no genes")

    query = set(str(g) for g in query_genes if pd.notna(g)) & universe_set
    N = len(universe_set)
    n = len(query)

    rows = []
    for term, members in gene_sets.items():
        in_universe = set(members) & universe_set
        K = len(in_universe)
        if K < config.min_size or K > config.max_size_ora:
            continue
        hits = sorted(query & in_universe)
        k = len(hits)
        p_value = float(hypergeom.sf(k - 1, N, K, n)) if n > 0 else 1.0
        expected = n * K / N
        rows.append({
            'Library': library,
            'Term': term,
            'Overlap': k,
            'Set_Size': K,
            'Query_Size': n,
            'Universe_Size': N,
            'GeneRatio': f"{k}/{n}",
            'BgRatio': f"{K}/{N}",
            'Fold_Enrichment': k / expected if expected > 0 else np.nan,
            'P_Value': min(p_value, 1.0),
            'Genes': ';'.join(hits),
            'N_Genes': k,
        })

    columns = ['Library', 'Term', 'Overlap', 'Set_Size', 'Query_Size', 'Universe_Size',
               'GeneRatio', 'BgRatio', 'Fold_Enrichment', 'P_Value', 'Adj_P_Value',
               'Q_Value', 'Genes', 'N_Genes']
    if not rows:
        return pd.DataFrame(columns=columns)

    result = pd.DataFrame(rows)
    _, adj, _, _ = multipletests(result['P_Value'].to_numpy(), method="fdr_bh")
    result['Adj_P_Value'] = adj
    result['Q_Value'] = storey_qvalues(result['P_Value'].to_numpy())
    result = result[columns].sort_values('P_Value').reset_index(drop=True)

    if filter_results:
        keep = (result['P_Value'] <= config.pvalue_cutoff) & (result['Q_Value'] <= config.qvalue_cutoff)
        result = result[keep].reset_index(drop=True)
    return result


# =============================================================================
# RANKED ENRICHMENT
# =============================================================================

def run_ranked_enrichment(
    ranking: pd.Series,
    gene_sets: Dict[str, List[str]],
    config: Optional[EnrichmentConfig] = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Preranked gene set enrichment analysis (gseapy) over a full gene ranking.

    Parameters
    ----------
    ranking : pd.Series
        Score per gene (index = gene id), e.g. from ``rank_genes``
    gene_sets : Dict[str, List[str]]
        Term -> member genes
    config : EnrichmentConfig, optional
        Size bounds ``[min_size, max_size_gsea]``, permutations and seed

    Returns
    -------
    pd.DataFrame
        Term, ES, NES, P_Value, Q_Value, Lead_Genes sorted by NES descending
    """
    if config is None:
        config = EnrichmentConfig()

    ranking = ranking.dropna()
    ranking = ranking[~ranking.index.duplicated(keep="first")].sort_values(ascending=False)
    if len(ranking) == 0:
        raise EnrichmentUniverseEmptyError("Ranking contains no genes")

    if verbose:
        print(f"Running ranked enrichment on {len(ranking):,} genes "
              f"({config.permutations} permutations)...", flush=True)

    pre_res = gp.prerank(
        rnk=ranking,
        gene_sets=gene_sets,
        min_size=config.min_size,
        max_size=config.max_size_gsea,
        permutation_num=config.permutations,
        seed=config.seed,
        outdir=None,
        no_plot=True,
        verbose=False,
    )

    results = pre_res.res2d.copy()
    results = results.rename(columns={
        'NOM p-val': 'P_Value',
        'FDR q-val': 'Q_Value',
        'Lead_genes': 'Lead_Genes',
    })
    for col in ['ES', 'NES', 'P_Value', 'Q_Value']:
        if col in results.columns:
            results[col] = pd.to_numeric(results[col], errors='coerce')

    keep = [c for c in ['Term', 'ES', 'NES', 'P_Value', 'Q_Value', 'Lead_Genes'] if c in results.columns]
    results = results[keep].sort_values('NES', ascending=False).reset_index(drop=True)

    if verbose:
        n_sig = int((results['Q_Value'] <= config.qvalue_cutoff).sum())
        print(f"  Gene sets tested: {len(results)}, FDR <= {config.qvalue_cutoff}: {n_sig}", flush=True)
    return results


# =============================================================================
# ENRICHR API FUNCTIONS
# =============================================================================

def query_enrichr(
    gene_list: List[str],
    config: Optional[EnrichmentConfig] = None,
    description: str = 'Gene Set Enrichment Analysis'
) -> Dict[str, List]:
    """
    Query the Enrichr API for gene set enrichment of a symbol list.

    Parameters
    ----------
    gene_list : List[str]
        Gene symbols (e.g., ['ESR1', 'PGR', 'MYH7'])
    config : EnrichmentConfig, optional
        Configuration object. Uses defaults if not provided.
    description : str
        Description for the gene list submission

    Returns
    -------
    Dict[str, List]
        Library name -> list of enrichment results. Each result is a list:
        [rank, term, pval, zscore, combined_score, genes, adj_pval].
        Empty if submission fails or too few genes.
    """
    if config is None:
        config = EnrichmentConfig()

    # Clean gene list - remove NaN, empty strings, whitespace
    clean_genes = []
    for g in gene_list:
        if pd.notna(g):
            gene_str = str(g).strip()
            if gene_str and gene_str.lower() not in ['nan', 'none', '']:
                clean_genes.append(gene_str)

    if len(clean_genes) < config.min_genes:
        print(f"  Warning: Only {len(clean_genes)} genes provided, need at least {config.min_genes}")
        return {}

    ENRICHR_URL = 'https://maayanlab.cloud/Enrichr'

    payload = {
        'list': (None, '\n'.join(clean_genes)),
        'description': (None, description)
    }

    # Submit gene list
    try:
        response = requests.post(
            f'{ENRICHR_URL}/addList',
            files=payload,
            timeout=config.timeout
        )
        if not response.ok:
            print(f"  Error submitting gene list: {response.status_code}")
            return {}

        user_list_id = json.loads(response.text)['userListId']

    except requests.exceptions.Timeout:
        print("  Error: Enrichr request timed out")
        return {}
    except requests.exceptions.ConnectionError:
        print("  Error: Could not connect to Enrichr (check internet connection)")
        return {}
    except (requests.exceptions.RequestException, ValueError, KeyError) as e:
        print(f"  Error connecting to Enrichr: {e}")
        return {}

    # Query each library
    results = {}
    for library in config.enrichr_libraries:
        try:
            time.sleep(config.rate_limit_delay)  # Rate limiting
            response = requests.get(
                f'{ENRICHR_URL}/enrich',
                params={'userListId': user_list_id, 'backgroundType': library},
                timeout=config.timeout
            )

            if response.ok:
                enrichment_results = json.loads(response.text)
                if library in enrichment_results:
                    results[library] = enrichment_results[library]

        except (requests.exceptions.RequestException, ValueError) as e:
            print(f"  Error querying {library}: {e}")
            continue

    return results


def parse_enrichr_results(
    results: Dict[str, List],
    config: Optional[EnrichmentConfig] = None
) -> pd.DataFrame:
    """
    Parse Enrichr API results into the same tidy layout as local enrichment.

    Notes
    -----
    Enrichr result format per term:
    [0] Rank, [1] Term name, [2] P-value, [3] Z-score,
    [4] Combined score, [5] Overlapping genes, [6] Adjusted p-value
    """
    if config is None:
        config = EnrichmentConfig()

    parsed_results = []

    for library, terms in results.items():
        for term_data in terms[:config.top_n]:
            if len(term_data) >= 7:
                pval = term_data[2]
                if pval <= config.pvalue_cutoff:
                    genes = term_data[5] if isinstance(term_data[5], list) else [term_data[5]]
                    parsed_results.append({
                        'Library': library,
                        'Term': term_data[1],
                        'P_Value': pval,
                        'Adj_P_Value': term_data[6],
                        'Z_Score': term_data[3],
                        'Combined_Score': term_data[4],
                        'Genes': ';'.join(genes),
                        'N_Genes': len(genes)
                    })

    if parsed_results:
        return pd.DataFrame(parsed_results).sort_values('Combined_Score', ascending=False)
    return pd.DataFrame()


def run_enrichment_analysis(
    gene_list: List[str],
    config: Optional[EnrichmentConfig] = None,
    description: str = 'Gene Set Enrichment Analysis',
    verbose: bool = True
) -> pd.DataFrame:
    """
    Enrichr enrichment of a symbol list (query + parse in one call).
    """
    if config is None:
        config = EnrichmentConfig()

    clean_genes = [g for g in gene_list if pd.notna(g) and str(g).strip() != '']

    if verbose:
        print(f"Running enrichment on {len(clean_genes)} genes...", flush=True)

    raw_results = query_enrichr(gene_list, config, description)

    if not raw_results:
        if verbose:
            print("  No results returned from Enrichr", flush=True)
        return pd.DataFrame()

    enrichment_df = parse_enrichr_results(raw_results, config)

    if verbose:
        if not enrichment_df.empty:
            print(f"  Found {len(enrichment_df)} significant terms", flush=True)
        else:
            print("  No significant enrichment found", flush=True)

    return enrichment_df


# =============================================================================
# GROUPED ENRICHMENT
# =============================================================================

def run_enrichment_by_group(
    data_df: pd.DataFrame,
    group_column: str,
    universe: Iterable[str],
    gene_sets: Dict[str, List[str]],
    gene_column: str = 'gene_id',
    config: Optional[EnrichmentConfig] = None,
    verbose: bool = True
) -> Tuple[Dict[str, pd.DataFrame], Dict[str, str]]:
    """
    Over-representation analysis for each group in a DataFrame.

    Useful for clusters from pattern clustering or for up/down regulated
    genes. A group that cannot be analysed is recorded in ``failures`` and
    the remaining groups still run.

    Parameters
    ----------
    data_df : pd.DataFrame
        Gene identifiers and group assignments
    group_column : str
        Column with group identifiers (e.g. 'Cluster_Name', 'Direction')
    universe : iterable of str
        Background universe shared by all groups
    gene_sets : Dict[str, List[str]]
        Term -> member genes
    gene_column : str
        Column with gene identifiers

    Returns
    -------
    results : Dict[str, pd.DataFrame]
        Group name -> enrichment table
    failures : Dict[str, str]
        Group name -> reason
    """
    if config is None:
        config = EnrichmentConfig()

    universe = list(universe)
    enrichment_results = {}
    failures = {}

    for group_name in data_df[group_column].dropna().unique():
        gene_list = data_df.loc[data_df[group_column] == group_name, gene_column].dropna().tolist()

        if verbose:
            print(f"\n{group_name}: {len(gene_list)} genes", flush=True)

        if len(gene_list) < config.min_genes:
            enrichment_results[group_name] = pd.DataFrame()
            if verbose:
                print(f"  Skipping - need at least {config.min_genes} genes", flush=True)
            continue

        try:
            enrichment_df = run_over_representation(gene_list, universe, gene_sets, config)
        except EnrichmentUniverseEmptyError as e:
            failures[group_name] = str(e)
            print(f"  Enrichment failed for {group_name}: {e}", flush=True)
            continue

        enrichment_results[group_name] = enrichment_df
        if verbose:
            print(f"  Found {len(enrichment_df)} enriched terms", flush=True)

    return enrichment_results, failures


def split_by_direction(
    results_df: pd.DataFrame,
    pvalue_column: str = 'adj.P.Val',
    logfc_column: str = 'logFC',
    pvalue_threshold: float = 0.05
) -> pd.DataFrame:
    """
    Significant genes of a ModelResult with a 'Direction' column
    ('Up'/'Down'), ready for ``run_enrichment_by_group``.
    """
    sig = results_df[results_df[pvalue_column] < pvalue_threshold].copy()
    sig['Direction'] = np.where(sig[logfc_column] > 0, 'Up', 'Down')
    return sig


def merge_enrichment_results(
    enrichment_dict: Dict[str, pd.DataFrame],
    add_group_column: bool = True
) -> pd.DataFrame:
    """Concatenate per-group enrichment tables, tagging each with its group."""
    all_dfs = []
    for group_name, df in enrichment_dict.items():
        if not df.empty:
            df_copy = df.copy()
            if add_group_column:
                df_copy['Group'] = group_name
            all_dfs.append(df_copy)

    if all_dfs:
        return pd.concat(all_dfs, ignore_index=True)
    return pd.DataFrame()


# =============================================================================
# VISUALIZATION FUNCTIONS
# =============================================================================

def _score_column(enrichment_df: pd.DataFrame) -> pd.Series:
    """Plot score: Enrichr combined score if present, else -log10(p)."""
    if 'Combined_Score' in enrichment_df.columns:
        return enrichment_df['Combined_Score']
    return -np.log10(enrichment_df['P_Value'].clip(lower=1e-300))


def plot_enrichment_barplot(
    enrichment_df: pd.DataFrame,
    title: str = 'Gene Set Enrichment',
    top_n: int = 15,
    figsize: Optional[Tuple[int, int]] = None,
    library_colors: Optional[Dict[str, str]] = None
) -> Optional[Figure]:
    """
    Horizontal bar plot of the top enriched terms.

    Returns
    -------
    Figure or None
        Matplotlib figure, or None if there is nothing to plot
    """
    if enrichment_df.empty:
        print(f"  No significant enrichment results for: {title}")
        return None

    if figsize is None:
        figsize = (12, 8)
    if library_colors is None:
        library_colors = LIBRARY_COLORS

    plot_df = enrichment_df.copy()
    plot_df['Score'] = _score_column(plot_df)
    plot_df = plot_df.sort_values('Score', ascending=False).head(top_n)
    plot_df = plot_df.sort_values('Score', ascending=True)

    libraries = plot_df['Library'] if 'Library' in plot_df.columns else pd.Series('local', index=plot_df.index)
    colors = [library_colors.get(lib, 'gray') for lib in libraries]

    fig, ax = plt.subplots(figsize=figsize)

    term_labels = [t[:55] + '...' if len(t) > 55 else t for t in plot_df['Term']]

    ax.barh(range(len(plot_df)), plot_df['Score'], color=colors, alpha=0.8)
    ax.set_yticks(range(len(plot_df)))
    ax.set_yticklabels(term_labels, fontsize=9)
    ax.set_xlabel('Combined Score' if 'Combined_Score' in plot_df.columns else '-log10(P-value)', fontsize=12)
    ax.set_title(title, fontsize=14, fontweight='bold')

    # Gene count annotations
    for i, (score, n_genes) in enumerate(zip(plot_df['Score'], plot_df['N_Genes'])):
        ax.text(score, i, f' ({n_genes})', va='center', fontsize=8, color='gray')

    legend_elements = [
        Rectangle((0, 0), 1, 1, facecolor=c, alpha=0.8, label=lib.replace('_', ' '))
        for lib, c in library_colors.items() if lib in set(libraries)
    ]
    if legend_elements:
        ax.legend(handles=legend_elements, loc='lower right', fontsize=8)

    fig.tight_layout()
    return fig


def plot_enrichment_dotplot(
    enrichment_dict: Dict[str, pd.DataFrame],
    title: str = 'Enrichment Comparison',
    top_n_per_group: int = 5,
    figsize: Optional[Tuple[int, int]] = None
) -> Optional[Figure]:
    """
    Dot plot comparing enriched terms across groups (clusters, directions).
    Dot size follows overlap size and colour follows -log10(p).

    Returns
    -------
    Figure or None
    """
    if figsize is None:
        figsize = (14, 10)

    all_terms = []
    for group_name, enrichment_df in enrichment_dict.items():
        if not enrichment_df.empty:
            top_terms = enrichment_df.nsmallest(top_n_per_group, 'P_Value').copy()
            top_terms['Group'] = group_name
            all_terms.append(top_terms)

    if not all_terms:
        print(f"  No terms to plot for: {title}")
        return None

    combined_df = pd.concat(all_terms, ignore_index=True)
    combined_df['Score'] = -np.log10(combined_df['P_Value'].clip(lower=1e-10))

    unique_terms = (combined_df.groupby('Term')['Score'].max()
                    .sort_values(ascending=False).head(20).index.tolist())
    active_groups = [g for g in enrichment_dict if not enrichment_dict[g].empty]

    fig, ax = plt.subplots(figsize=figsize)

    for i, term in enumerate(unique_terms):
        for j, group in enumerate(active_groups):
            df = enrichment_dict[group]
            term_row = df[df['Term'] == term]
            if not term_row.empty:
                pval = term_row['P_Value'].values[0]
                n_genes = term_row['N_Genes'].values[0]
                size = min(n_genes * 30, 400)
                color_val = min(-np.log10(pval + 1e-10), 10)
                ax.scatter(j, i, s=size, c=[color_val], cmap='Reds',
                           vmin=0, vmax=10, alpha=0.8, edgecolors='black', linewidths=0.5)

    ax.set_xticks(range(len(active_groups)))
    ax.set_xticklabels(active_groups, rotation=45, ha='right', fontsize=10)
    ax.set_yticks(range(len(unique_terms)))
    ax.set_yticklabels([t[:50] + '...' if len(t) > 50 else t for t in unique_terms], fontsize=9)
    ax.set_xlabel('Group', fontsize=12)
    ax.set_ylabel('Enriched Term', fontsize=12)
    ax.set_title(title, fontsize=14, fontweight='bold')

    mappable = plt.cm.ScalarMappable(cmap='Reds', norm=plt.Normalize(vmin=0, vmax=10))
    mappable.set_array([])
    cbar = fig.colorbar(mappable, ax=ax, shrink=0.5, pad=0.02)
    cbar.set_label('-log10(P-value)', fontsize=10)

    ax.set_xlim(-0.5, len(active_groups) - 0.5)
    ax.set_ylim(-0.5, len(unique_terms) - 0.5)
    ax.grid(True, alpha=0.3, linestyle='--')

    fig.tight_layout()
    return fig
