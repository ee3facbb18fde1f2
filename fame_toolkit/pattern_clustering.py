"""
Expression Pattern Clustering Module

Groups genes by the shape of their expression profile across an ordered
factor (age category, menopausal stage), in the way longitudinal profiles
are clustered:

1. Each gene is z-scored across all samples, so clustering sees shape and
   not magnitude
2. Z-scores are averaged within each group level, in the given order
3. Trajectories are clustered with Ward hierarchical clustering (default) or
   K-means, with the number of clusters chosen by silhouette score

Input is a transformed expression matrix (e.g. variance-stabilized counts)
and the genes to cluster, normally those significant for the ordered factor.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from sklearn.cluster import KMeans
from sklearn.metrics import silhouette_score
from scipy.cluster.hierarchy import linkage, fcluster
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
import warnings

from .validation import InsufficientDataError


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class PatternClusteringConfig:
    """Configuration for expression pattern clustering."""

    # Clustering settings
    method: str = 'hierarchical'  # 'hierarchical' (Ward) or 'kmeans'
    n_clusters: int = 4
    auto_detect_clusters: bool = True
    min_clusters: int = 2
    max_clusters: int = 8
    min_cluster_size: int = 1
    prefer_higher_k: bool = False
    silhouette_tolerance: float = 0.05
    random_seed: int = 42

    # Diagnostic plot of the cluster number selection
    plot_selection: bool = False

    def validate(self):
        if self.method not in ('hierarchical', 'kmeans'):
            raise ValueError("method must be 'hierarchical' or 'kmeans'")
        if not 2 <= self.min_clusters <= self.max_clusters:
            raise ValueError("cluster range must satisfy 2 <= min_clusters <= max_clusters")
        return True


# =============================================================================
# TRAJECTORIES
# =============================================================================

def calculate_group_trajectories(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    group_column: str,
    group_order: Optional[List] = None,
    genes: Optional[Iterable[str]] = None
) -> pd.DataFrame:
    """
    Mean z-scored expression per ordered group for each gene.

    Parameters
    ----------
    expression : pd.DataFrame
        Transformed expression (genes x samples)
    metadata : pd.DataFrame
        Sample metadata indexed by sample id
    group_column : str
        Ordered factor defining the trajectory axis
    group_order : list, optional
        Level order; defaults to the categorical order or sorted levels.
        Samples outside these levels are ignored.
    genes : iterable, optional
        Genes to keep; defaults to all rows of ``expression``

    Returns
    -------
    pd.DataFrame
        Genes x ``Group_<level>`` columns, in group order
    """
    if group_column not in metadata.columns:
        raise ValueError(f"Group column '{group_column}' not found in metadata")

    samples = [s for s in expression.columns if s in metadata.index]
    groups = metadata.loc[samples, group_column]

    if group_order is None:
        if isinstance(groups.dtype, pd.CategoricalDtype):
            group_order = [c for c in groups.cat.categories if c in set(groups.dropna())]
        else:
            group_order = sorted(groups.dropna().unique().tolist())

    data = expression[samples]
    if genes is not None:
        wanted = [g for g in genes if g in data.index]
        data = data.loc[wanted]
    if data.shape[0] == 0:
        raise InsufficientDataError("No genes available for trajectory calculation")

    # Z-score each gene across samples (shape, not magnitude)
    values = data.to_numpy(dtype=float)
    means = np.nanmean(values, axis=1, keepdims=True)
    stds = np.nanstd(values, axis=1, keepdims=True)
    stds[stds == 0] = 1  # Constant genes become flat zero trajectories
    zscored = (values - means) / stds

    trajectories = pd.DataFrame(index=data.index)
    for level in group_order:
        mask = (groups == level).to_numpy()
        if not mask.any():
            raise InsufficientDataError(f"No samples in group '{level}'")
        trajectories[f'Group_{level}'] = np.nanmean(zscored[:, mask], axis=1)

    trajectories.index.name = 'gene_id'
    return trajectories


def get_group_columns(trajectories: pd.DataFrame) -> List[str]:
    """Extract group column names from a trajectory DataFrame."""
    return [c for c in trajectories.columns if str(c).startswith('Group_')]


# =============================================================================
# CLUSTER NUMBER SELECTION
# =============================================================================

def _cluster_labels(
    X: np.ndarray,
    k: int,
    method: str,
    random_seed: int,
    Z: Optional[np.ndarray] = None
) -> np.ndarray:
    """Zero-based labels for k clusters."""
    if method == 'kmeans':
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            model = KMeans(n_clusters=k, random_state=random_seed, n_init=10)
            return model.fit_predict(X)
    if Z is None:
        Z = linkage(X, method='ward')
    return fcluster(Z, k, criterion='maxclust') - 1


def _within_cluster_ss(X: np.ndarray, labels: np.ndarray) -> float:
    total = 0.0
    for label in np.unique(labels):
        members = X[labels == label]
        total += float(((members - members.mean(axis=0)) ** 2).sum())
    return total


def determine_optimal_clusters(
    X: np.ndarray,
    k_range: Tuple[int, int] = (2, 8),
    method: str = 'hierarchical',
    random_seed: int = 42,
    plot: bool = False,
    prefer_higher_k: bool = False,
    silhouette_tolerance: float = 0.05,
    min_cluster_size: int = 1
) -> Tuple[int, Optional[Figure], Dict]:
    """
    Determine the number of clusters from silhouette scores.

    The selection logic:
    1. Find k with the best silhouette score among k values whose smallest
       cluster has at least ``min_cluster_size`` genes
    2. If prefer_higher_k=True, pick the highest k whose silhouette is within
       tolerance of the best
    3. The elbow of the within-cluster sum of squares is reported alongside

    Parameters
    ----------
    X : np.ndarray
        Trajectory matrix (genes x groups)
    k_range : tuple
        Range of k values to test (min, max); capped at n_genes - 1
    method : str
        'hierarchical' or 'kmeans'
    plot : bool
        Whether to create the diagnostic plot

    Returns
    -------
    optimal_k : int
    fig : Figure or None
    scores : dict
        k values, within-cluster sums of squares, silhouette scores, elbow k
        and the selected k
    """
    n = X.shape[0]
    k_max = min(k_range[1], n - 1)
    if k_max < k_range[0]:
        raise InsufficientDataError(
            f"{n} genes are too few to test {k_range[0]} clusters (need at least {k_range[0] + 1})"
        )

    k_values = list(range(k_range[0], k_max + 1))
    Z = linkage(X, method='ward') if method == 'hierarchical' else None

    inertias = []
    silhouette_scores = []
    min_sizes = []
    for k in k_values:
        labels = _cluster_labels(X, k, method, random_seed, Z)
        inertias.append(_within_cluster_ss(X, labels))
        min_sizes.append(int(np.bincount(labels).min()))
        if len(np.unique(labels)) > 1:
            silhouette_scores.append(float(silhouette_score(X, labels)))
        else:
            silhouette_scores.append(-1.0)

    # Elbow from the second derivative
    diffs2 = np.diff(np.diff(np.array(inertias)))
    elbow_idx = int(np.argmax(diffs2)) + 1 if len(diffs2) > 0 else 0
    elbow_k = k_values[min(elbow_idx, len(k_values) - 1)]

    sil_arr = np.array(silhouette_scores)
    eligible = np.array(min_sizes) >= min_cluster_size
    if not eligible.any():
        eligible[:] = True
    masked = np.where(eligible, sil_arr, -np.inf)
    best_sil_idx = int(np.argmax(masked))
    best_sil = float(sil_arr[best_sil_idx])
    best_sil_k = k_values[best_sil_idx]

    if prefer_higher_k:
        acceptable = np.where(eligible & (sil_arr >= best_sil - silhouette_tolerance))[0]
        optimal_k = k_values[acceptable[-1]]
    else:
        optimal_k = best_sil_k

    scores = {
        'k_values': k_values,
        'inertias': inertias,
        'silhouette_scores': silhouette_scores,
        'min_cluster_sizes': min_sizes,
        'elbow_k': elbow_k,
        'best_silhouette_k': best_sil_k,
        'selected_k': optimal_k,
    }

    fig = None
    if plot:
        fig, axes = plt.subplots(1, 2, figsize=(14, 5))

        axes[0].plot(k_values, inertias, 'b-o', linewidth=2, markersize=8)
        axes[0].axvline(x=elbow_k, color='orange', linestyle='--', linewidth=2, label=f'Elbow: k={elbow_k}')
        axes[0].axvline(x=optimal_k, color='red', linestyle='-', linewidth=2, label=f'Selected: k={optimal_k}')
        axes[0].set_xlabel('Number of Clusters (k)', fontsize=12)
        axes[0].set_ylabel('Within-cluster SS', fontsize=12)
        axes[0].set_title('Elbow Method', fontsize=14, fontweight='bold')
        axes[0].legend(fontsize=10)
        axes[0].grid(True, alpha=0.3)
        axes[0].set_xticks(k_values)

        axes[1].plot(k_values, silhouette_scores, 'g-o', linewidth=2, markersize=8)
        axes[1].axvline(x=best_sil_k, color='green', linestyle='--', linewidth=2,
                        label=f'Best silhouette: k={best_sil_k} ({best_sil:.3f})')
        axes[1].axvline(x=optimal_k, color='red', linestyle='-', linewidth=2,
                        label=f'Selected: k={optimal_k}')
        axes[1].set_xlabel('Number of Clusters (k)', fontsize=12)
        axes[1].set_ylabel('Silhouette Score', fontsize=12)
        axes[1].set_title('Silhouette Analysis', fontsize=14, fontweight='bold')
        axes[1].legend(fontsize=9, loc='upper right')
        axes[1].grid(True, alpha=0.3)
        axes[1].set_xticks(k_values)

        fig.suptitle(f'Cluster Selection ({method})', fontsize=14, fontweight='bold')
        fig.tight_layout()

    return optimal_k, fig, scores


# =============================================================================
# CLUSTERING
# =============================================================================

def cluster_gene_patterns(
    trajectories: pd.DataFrame,
    config: Optional[PatternClusteringConfig] = None
) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Cluster gene trajectories.

    Clusters are relabelled by size so that cluster 1 is the largest, which
    keeps labels stable across runs with the same data.

    Returns
    -------
    labels : np.ndarray
        Cluster label per gene, starting at 1 (row order of ``trajectories``)
    info : dict
        'n_clusters', 'scores' (selection scores or None) and
        'fig_cluster_selection'
    """
    if config is None:
        config = PatternClusteringConfig()
    config.validate()

    X = trajectories[get_group_columns(trajectories)].to_numpy(dtype=float)
    X = np.nan_to_num(X, nan=0.0)

    # Silhouette scores need more genes than clusters
    min_genes = config.min_clusters + 1 if config.auto_detect_clusters else 2
    if X.shape[0] < min_genes:
        raise InsufficientDataError(
            f"{X.shape[0]} genes are too few to cluster (need at least {min_genes})"
        )

    scores = None
    fig = None
    n_clusters = min(config.n_clusters, X.shape[0])
    if config.auto_detect_clusters:
        n_clusters, fig, scores = determine_optimal_clusters(
            X,
            k_range=(config.min_clusters, config.max_clusters),
            method=config.method,
            random_seed=config.random_seed,
            plot=config.plot_selection,
            prefer_higher_k=config.prefer_higher_k,
            silhouette_tolerance=config.silhouette_tolerance,
            min_cluster_size=config.min_cluster_size,
        )

    labels = _cluster_labels(X, n_clusters, config.method, config.random_seed)

    # Largest cluster first
    sizes = pd.Series(labels).value_counts()
    order = sorted(sizes.index, key=lambda c: (-sizes[c], c))
    remap = {old: new + 1 for new, old in enumerate(order)}
    labels = np.array([remap[c] for c in labels])

    return labels, {
        'n_clusters': int(len(order)),
        'scores': scores,
        'fig_cluster_selection': fig,
    }


def name_clusters(labels: np.ndarray) -> Dict[int, str]:
    """Cluster names carrying the label number, 'Cluster 1' for label 1."""
    return {int(c): f"Cluster {int(c)}" for c in np.unique(labels)}


def trajectories_to_long(assignments: pd.DataFrame) -> pd.DataFrame:
    """Long form (gene_id, Cluster, Cluster_Name, group, value) for faceted plots."""
    group_cols = get_group_columns(assignments)
    long_df = assignments.melt(
        id_vars=['gene_id', 'Cluster', 'Cluster_Name'],
        value_vars=group_cols,
        var_name='group',
        value_name='value'
    )
    long_df['group'] = long_df['group'].str.replace('Group_', '', n=1)
    # Keep the trajectory order for plotting
    levels = [c.replace('Group_', '', 1) for c in group_cols]
    long_df['group'] = pd.Categorical(long_df['group'], categories=levels, ordered=True)
    return long_df


def run_pattern_analysis(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    significant_genes: Iterable[str],
    group_column: str,
    group_order: Optional[List] = None,
    config: Optional[PatternClusteringConfig] = None,
    verbose: bool = True
) -> Dict[str, Any]:
    """
    Complete pattern clustering of significant genes along an ordered factor.

    Parameters
    ----------
    expression : pd.DataFrame
        Transformed expression (genes x samples)
    metadata : pd.DataFrame
        Sample metadata
    significant_genes : iterable
        Genes to cluster
    group_column : str
        Ordered factor (e.g. 'age_category')
    group_order : list, optional
        Level order along the trajectory

    Returns
    -------
    dict
        'assignments' (gene_id, Cluster, Cluster_Name, Group_<level>...),
        'long_df', 'n_clusters', 'scores', 'fig_cluster_selection'
    """
    if config is None:
        config = PatternClusteringConfig()

    if verbose:
        print("=" * 80)
        print(f"PATTERN CLUSTERING ALONG '{group_column}'", flush=True)
        print("=" * 80, flush=True)

    genes = list(dict.fromkeys(significant_genes))
    if verbose:
        print(f"\n1. Calculating group trajectories for {len(genes)} genes...", flush=True)
    trajectories = calculate_group_trajectories(
        expression, metadata, group_column, group_order, genes
    )
    if verbose:
        print(f"   Groups: {[c.replace('Group_', '', 1) for c in get_group_columns(trajectories)]}", flush=True)

    if verbose:
        if config.auto_detect_clusters:
            print(f"\n2. Selecting cluster count ({config.min_clusters}-{config.max_clusters}, "
                  f"{config.method})...", flush=True)
        else:
            print(f"\n2. Clustering genes into {config.n_clusters} clusters...", flush=True)
    labels, info = cluster_gene_patterns(trajectories, config)
    cluster_names = name_clusters(labels)

    assignments = trajectories.reset_index()
    assignments.insert(1, 'Cluster', labels)
    assignments.insert(2, 'Cluster_Name', [cluster_names[c] for c in labels])

    if verbose:
        print(f"   Final cluster count: {info['n_clusters']}", flush=True)
        for cid, name in cluster_names.items():
            print(f"     {name}: {int((labels == cid).sum())} genes", flush=True)
        print("\n✓ Pattern clustering complete", flush=True)

    return {
        'assignments': assignments,
        'long_df': trajectories_to_long(assignments),
        'n_clusters': info['n_clusters'],
        'scores': info['scores'],
        'fig_cluster_selection': info['fig_cluster_selection'],
    }


def select_clusters(
    assignments: pd.DataFrame,
    clusters: Iterable
) -> pd.DataFrame:
    """
    Subset cluster assignments to chosen clusters, given as integer labels
    or cluster names, for curated reporting.
    """
    clusters = list(clusters)
    mask = assignments['Cluster'].isin(clusters) | assignments['Cluster_Name'].isin(clusters)
    return assignments[mask].reset_index(drop=True)
