"""
Visualization Module for FAMe Transcriptomics Toolkit

Plots for count-model results, sample structure, gene pattern clusters and
phenotype correlations. Every function returns a matplotlib Figure (drawing
onto ``ax`` when one is given, so panels can be combined with
``compose_figure``) and optionally saves it. Input tables are never modified.
"""

import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from matplotlib.figure import Figure
from sklearn.decomposition import PCA
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import warnings


def _get_axes(ax, figsize):
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
        return fig, ax
    return ax.figure, ax


def _style_axes(ax):
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.spines["left"].set_linewidth(1.5)
    ax.spines["bottom"].set_linewidth(1.5)


def save_figure(fig: Figure, path: str, dpi: int = 300) -> str:
    """Save a figure, inferring the format from the file extension."""
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    print(f"✓ Saved figure: {path}")
    return path


def plot_volcano(
    results: pd.DataFrame,
    p_threshold: float = 0.05,
    fc_threshold: float = 0.0,
    label_column: str = "Symbol",
    label_top_n: int = 10,
    use_adjusted_pvalue: bool = True,
    title: Optional[str] = None,
    figsize: Tuple[int, int] = (10, 8),
    ax=None,
    save_path: Optional[str] = None,
) -> Figure:
    """
    Volcano plot of a ModelResult table.

    Parameters:
    -----------
    results : pd.DataFrame
        Table with logFC, P.Value and adj.P.Val columns
    p_threshold : float
        Significance threshold on the chosen p-value column
    fc_threshold : float
        Absolute log2 effect threshold for colouring increased/decreased genes
    label_column : str
        Column used to label the top genes (falls back to gene_id)
    label_top_n : int
        Number of most significant genes to label
    use_adjusted_pvalue : bool
        Use adj.P.Val for significance (P.Value otherwise); the y axis is
        always -log10(P.Value)
    """
    df = results.dropna(subset=["P.Value", "logFC"]).copy()
    fig, ax = _get_axes(ax, figsize)

    if len(df) == 0:
        print("No data to plot")
        ax.set_title(title or "Volcano Plot (no tested genes)")
        return fig

    p_col = "adj.P.Val" if use_adjusted_pvalue and "adj.P.Val" in df.columns else "P.Value"
    p_type_label = "FDR" if p_col == "adj.P.Val" else "P-value"

    df["neg_log10_p"] = -np.log10(df["P.Value"].clip(lower=1e-300))
    significant = df[p_col] < p_threshold
    df["category"] = "Not significant"
    df.loc[significant & (df["logFC"].abs() <= fc_threshold), "category"] = "Significant"
    df.loc[significant & (df["logFC"] > fc_threshold), "category"] = "Increased"
    df.loc[significant & (df["logFC"] < -fc_threshold), "category"] = "Decreased"

    colors = {"Not significant": "gray", "Significant": "orange", "Decreased": "blue", "Increased": "red"}
    for category, color in colors.items():
        subset = df[df["category"] == category]
        if len(subset) > 0:
            ax.scatter(subset["logFC"], subset["neg_log10_p"], c=color, alpha=0.6, s=20, label=category)

    # Horizontal line at the largest raw p-value still called significant
    if significant.any():
        ax.axhline(y=df.loc[significant, "neg_log10_p"].min(), color="black", linestyle="--", alpha=0.5)
    if fc_threshold > 0:
        ax.axvline(x=fc_threshold, color="black", linestyle="--", alpha=0.5)
        ax.axvline(x=-fc_threshold, color="black", linestyle="--", alpha=0.5)

    if label_top_n > 0:
        label_col = label_column if label_column in df.columns else "gene_id"
        top = df[significant].sort_values("P.Value").head(label_top_n)
        for _, row in top.iterrows():
            label = row[label_col] if isinstance(row[label_col], str) and row[label_col] else row.get("gene_id", "")
            ax.annotate(label, (row["logFC"], row["neg_log10_p"]), xytext=(5, 5),
                        textcoords="offset points", fontsize=8, alpha=0.8)

    if title is None:
        predictor = df["predictor"].iloc[0] if "predictor" in df.columns else ""
        title = f"Volcano Plot {predictor} ({p_type_label} < {p_threshold})".replace("  ", " ")

    ax.set_xlabel("Log2 Fold Change", fontsize=14, fontweight="bold")
    ax.set_ylabel("-Log10 P-value", fontsize=14, fontweight="bold")
    ax.set_title(title, fontsize=14)
    _style_axes(ax)
    ax.grid(True, alpha=0.3)
    ax.legend(loc="upper right", frameon=True, fontsize=10)

    n_up = int((df["category"] == "Increased").sum())
    n_down = int((df["category"] == "Decreased").sum())
    print(f"Volcano plot: {len(df)} genes, {int(significant.sum())} significant ({n_up} up, {n_down} down)")

    if save_path:
        save_figure(fig, save_path)
    return fig


def plot_pca(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    color_column: str,
    n_top_genes: int = 500,
    group_colors: Optional[Dict[str, str]] = None,
    figsize: Tuple[int, int] = (10, 8),
    ax=None,
    save_path: Optional[str] = None,
) -> Figure:
    """
    PCA of samples on the most variable genes of a transformed matrix.

    Parameters:
    -----------
    expression : pd.DataFrame
        Log-scale expression (genes x samples), e.g. variance-stabilized
    metadata : pd.DataFrame
        Sample metadata indexed by sample id
    color_column : str
        Metadata column used to colour samples (batch, age category, ...)
    n_top_genes : int
        Number of highest-variance genes used
    """
    if color_column not in metadata.columns:
        raise ValueError(f"Column '{color_column}' not found in metadata")

    data = expression.dropna()
    variances = data.var(axis=1).sort_values(ascending=False)
    data = data.loc[variances.index[:n_top_genes]]

    pca = PCA(n_components=2)
    coords = pca.fit_transform(data.T.to_numpy(dtype=float))

    groups = metadata.loc[data.columns, color_column].astype(object).where(
        metadata.loc[data.columns, color_column].notna(), "Unknown"
    ).astype(str)
    unique_groups = list(dict.fromkeys(groups))
    if group_colors is None:
        palette = plt.cm.tab10(np.linspace(0, 1, max(len(unique_groups), 1)))
        group_colors = {g: palette[i] for i, g in enumerate(unique_groups)}

    fig, ax = _get_axes(ax, figsize)
    for group in unique_groups:
        mask = (groups == group).to_numpy()
        ax.scatter(coords[mask, 0], coords[mask, 1], c=[group_colors.get(group, "gray")],
                   label=group, alpha=0.7, s=80, edgecolors="black", linewidth=0.5)

    ax.set_xlabel(f"PC1 ({pca.explained_variance_ratio_[0]:.1%} variance)")
    ax.set_ylabel(f"PC2 ({pca.explained_variance_ratio_[1]:.1%} variance)")
    ax.set_title(f"Principal Component Analysis ({color_column})")
    ax.legend(title=color_column, fontsize=9)
    ax.grid(True, alpha=0.3)

    print(f"PCA: PC1 {pca.explained_variance_ratio_[0]:.1%}, PC2 {pca.explained_variance_ratio_[1]:.1%} "
          f"of variance ({data.shape[0]} genes)")

    if save_path:
        save_figure(fig, save_path)
    return fig


def plot_count_distribution(
    counts: pd.DataFrame,
    metadata: Optional[pd.DataFrame] = None,
    color_column: Optional[str] = None,
    figsize: Tuple[int, int] = (14, 6),
    ax=None,
    save_path: Optional[str] = None,
) -> Figure:
    """Per-sample box plots of log10(count + 1)."""
    log_counts = np.log10(counts.astype(float) + 1)
    long_df = log_counts.melt(var_name="sample", value_name="log10_count")

    hue = None
    if metadata is not None and color_column is not None:
        long_df[color_column] = long_df["sample"].map(metadata[color_column]).astype(str)
        hue = color_column

    fig, ax = _get_axes(ax, figsize)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        sns.boxplot(data=long_df, x="sample", y="log10_count", hue=hue, ax=ax,
                    showfliers=False, dodge=False)
    ax.set_xlabel("Sample")
    ax.set_ylabel("log10(count + 1)")
    ax.set_title("Count Distribution per Sample")
    ax.tick_params(axis="x", rotation=90, labelsize=7)
    _style_axes(ax)

    if save_path:
        save_figure(fig, save_path)
    return fig


def plot_cluster_trajectories(
    long_df: pd.DataFrame,
    ncols: int = 3,
    show_genes: bool = True,
    cluster_colors: Optional[Dict[int, str]] = None,
    figsize: Optional[Tuple[int, int]] = None,
    title: str = "Expression Patterns by Cluster",
    save_path: Optional[str] = None,
) -> Figure:
    """
    Faceted trajectory plot: one panel per cluster with individual gene
    profiles in grey and the cluster mean +/- SD in colour.

    Parameters:
    -----------
    long_df : pd.DataFrame
        Long-form assignments (gene_id, Cluster, Cluster_Name, group, value)
        as returned by ``run_pattern_analysis``
    """
    clusters = sorted(long_df["Cluster"].unique())
    n = len(clusters)
    ncols = max(1, min(ncols, n))
    nrows = int(np.ceil(n / ncols))
    if figsize is None:
        figsize = (5 * ncols, 4 * nrows)
    if cluster_colors is None:
        palette = sns.color_palette("tab10", max(n, 1))
        cluster_colors = {c: palette[i % len(palette)] for i, c in enumerate(clusters)}

    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, sharey=True, squeeze=False)
    levels = list(long_df["group"].cat.categories) if hasattr(long_df["group"], "cat") else \
        list(dict.fromkeys(long_df["group"]))
    positions = {level: i for i, level in enumerate(levels)}

    for i, cluster in enumerate(clusters):
        ax = axes[i // ncols][i % ncols]
        subset = long_df[long_df["Cluster"] == cluster].copy()
        subset["x"] = subset["group"].map(positions).astype(float)

        if show_genes:
            for _, gene_df in subset.groupby("gene_id"):
                gene_df = gene_df.sort_values("x")
                ax.plot(gene_df["x"], gene_df["value"], color="gray", alpha=0.2, linewidth=0.7)

        summary = subset.groupby("x")["value"].agg(["mean", "std"]).reset_index()
        color = cluster_colors.get(cluster, "black")
        ax.plot(summary["x"], summary["mean"], color=color, linewidth=2.5, marker="o")
        ax.fill_between(summary["x"], summary["mean"] - summary["std"].fillna(0),
                        summary["mean"] + summary["std"].fillna(0), color=color, alpha=0.2)

        name = subset["Cluster_Name"].iloc[0] if "Cluster_Name" in subset.columns else f"Cluster {cluster}"
        ax.set_title(f"{name} (n={subset['gene_id'].nunique()})", fontsize=12, fontweight="bold")
        ax.set_xticks(range(len(levels)))
        ax.set_xticklabels(levels, rotation=45, ha="right")
        ax.axhline(0, color="black", linewidth=0.5, linestyle=":")
        ax.grid(True, alpha=0.3)
        if i % ncols == 0:
            ax.set_ylabel("Mean z-score")

    for j in range(n, nrows * ncols):
        axes[j // ncols][j % ncols].set_visible(False)

    fig.suptitle(title, fontsize=14, fontweight="bold")
    fig.tight_layout()

    if save_path:
        save_figure(fig, save_path)
    return fig


def plot_cluster_violins(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    assignments: pd.DataFrame,
    group_column: str,
    group_order: Optional[List] = None,
    clusters: Optional[Sequence] = None,
    ncols: int = 3,
    figsize: Optional[Tuple[int, int]] = None,
    save_path: Optional[str] = None,
) -> Figure:
    """
    Violin plots of a per-sample cluster score (mean z-score of the cluster's
    genes) across the ordered groups, one panel per cluster.
    """
    if clusters is None:
        clusters = sorted(assignments["Cluster"].unique())
    if group_order is None:
        values = metadata[group_column].dropna()
        group_order = list(values.cat.categories) if isinstance(values.dtype, pd.CategoricalDtype) \
            else sorted(values.unique().tolist())

    samples = [s for s in expression.columns if s in metadata.index]
    data = expression[samples].astype(float)
    zscored = data.sub(data.mean(axis=1), axis=0).div(data.std(axis=1, ddof=0).replace(0, 1), axis=0)

    n = len(clusters)
    ncols = max(1, min(ncols, n))
    nrows = int(np.ceil(n / ncols))
    if figsize is None:
        figsize = (5 * ncols, 4 * nrows)
    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)

    for i, cluster in enumerate(clusters):
        ax = axes[i // ncols][i % ncols]
        member_rows = assignments[assignments["Cluster"] == cluster]
        genes = [g for g in member_rows["gene_id"] if g in zscored.index]
        score = pd.DataFrame({
            "score": zscored.loc[genes].mean(axis=0),
            "group": metadata.loc[samples, group_column].astype(object),
        }).dropna()
        score["group"] = score["group"].astype(str)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            sns.violinplot(data=score, x="group", y="score", order=[str(g) for g in group_order],
                           ax=ax, inner="box", color="lightsteelblue", cut=0)
        name = member_rows["Cluster_Name"].iloc[0] if len(member_rows) else f"Cluster {cluster}"
        ax.set_title(f"{name} (n={len(genes)})", fontsize=12, fontweight="bold")
        ax.set_xlabel(group_column)
        ax.set_ylabel("Cluster score")
        _style_axes(ax)

    for j in range(n, nrows * ncols):
        axes[j // ncols][j % ncols].set_visible(False)

    fig.tight_layout()
    if save_path:
        save_figure(fig, save_path)
    return fig


def plot_correlation_matrix(
    correlations: pd.DataFrame,
    p_values: Optional[pd.DataFrame] = None,
    p_threshold: float = 0.05,
    title: str = "Correlation Matrix",
    figsize: Tuple[int, int] = (10, 8),
    ax=None,
    save_path: Optional[str] = None,
) -> Figure:
    """
    Lower-triangle correlation heatmap; cells with p < p_threshold are
    marked with an asterisk when p-values are given.
    """
    fig, ax = _get_axes(ax, figsize)
    mask = np.triu(np.ones(correlations.shape, dtype=bool), k=1)

    annot = correlations.round(2).astype(str)
    if p_values is not None:
        stars = (p_values.reindex_like(correlations) < p_threshold)
        annot = annot.where(~stars, annot + "*")

    sns.heatmap(correlations.astype(float), mask=mask, annot=annot.to_numpy(), fmt="",
                cmap="RdBu_r", vmin=-1, vmax=1, center=0, square=True, linewidths=0.5,
                cbar_kws={"label": "Correlation", "shrink": 0.7}, ax=ax)
    ax.set_title(title, fontsize=14, fontweight="bold")

    if save_path:
        save_figure(fig, save_path)
    return fig


def plot_missingness(
    phenotypes: pd.DataFrame,
    columns: Optional[List[str]] = None,
    sort_variables: bool = True,
    figsize: Tuple[int, int] = (14, 6),
    title: str = "Missing Data Overview",
    save_path: Optional[str] = None,
) -> Figure:
    """
    Missing-data overview of a phenotype table: a sample x variable map of
    missing cells (red) next to the percentage missing per variable.

    Parameters:
    -----------
    phenotypes : pd.DataFrame
        Sample x variable table
    columns : list, optional
        Variables to show; defaults to all columns
    sort_variables : bool
        Order variables from most to least missing
    """
    data = phenotypes[columns] if columns is not None else phenotypes
    missing = data.isna()
    pct_missing = missing.mean(axis=0).mul(100)
    if sort_variables:
        order = pct_missing.sort_values(ascending=False).index
        missing = missing[order]
        pct_missing = pct_missing[order]

    fig, (ax_map, ax_bar) = plt.subplots(
        1, 2, figsize=figsize, gridspec_kw={"width_ratios": [3, 1]}
    )

    sns.heatmap(missing.astype(int), cmap=["navy", "red"], vmin=0, vmax=1, cbar=False,
                yticklabels=False, ax=ax_map)
    ax_map.set_title(f"Missing cells ({missing.to_numpy().mean():.1%} overall)",
                     fontsize=12, fontweight="bold")
    ax_map.set_xlabel("")
    ax_map.set_ylabel(f"Samples (n={len(missing)})")
    ax_map.tick_params(axis="x", labelrotation=90, labelsize=8)

    positions = np.arange(len(pct_missing))
    ax_bar.barh(positions, pct_missing.to_numpy(), color="red", alpha=0.8)
    ax_bar.set_yticks(positions)
    ax_bar.set_yticklabels(pct_missing.index, fontsize=8)
    ax_bar.invert_yaxis()
    ax_bar.set_xlabel("% missing")
    ax_bar.set_title("Missing by variable", fontsize=12, fontweight="bold")
    _style_axes(ax_bar)

    fig.suptitle(title, fontsize=14, fontweight="bold")
    fig.tight_layout()

    if save_path:
        save_figure(fig, save_path)
    return fig


def plot_imputation_check(
    before: pd.DataFrame,
    after: pd.DataFrame,
    imputed_columns: Optional[List[str]] = None,
    bins: int = 20,
    figsize: Tuple[int, int] = (12, 5),
    save_path: Optional[str] = None,
) -> Figure:
    """
    Compare a phenotype table before and after imputation: histogram of the
    numeric column means, and the mean of each imputed column.
    """
    numeric_before = before.select_dtypes(include=[np.number])
    numeric_after = after[[c for c in numeric_before.columns if c in after.columns]]
    if imputed_columns is None:
        imputed_columns = [c for c in numeric_after.columns
                           if before[c].isna().any() and after[c].notna().all()]

    fig, (ax_hist, ax_cols) = plt.subplots(1, 2, figsize=figsize)

    ax_hist.hist(numeric_before.mean(axis=0).dropna(), bins=bins, alpha=0.6,
                 color="steelblue", label="Before")
    ax_hist.hist(numeric_after.mean(axis=0).dropna(), bins=bins, alpha=0.6,
                 color="darkorange", label="After")
    ax_hist.set_xlabel("Column mean")
    ax_hist.set_ylabel("Variables")
    ax_hist.set_title("Column means", fontsize=12, fontweight="bold")
    ax_hist.legend()
    _style_axes(ax_hist)

    if imputed_columns:
        positions = np.arange(len(imputed_columns))
        width = 0.4
        ax_cols.bar(positions - width / 2, before[imputed_columns].mean(), width,
                    color="steelblue", label="Observed")
        ax_cols.bar(positions + width / 2, after[imputed_columns].mean(), width,
                    color="darkorange", label="After imputation")
        ax_cols.set_xticks(positions)
        ax_cols.set_xticklabels(imputed_columns, rotation=45, ha="right")
        ax_cols.legend()
    else:
        ax_cols.text(0.5, 0.5, "No imputed columns", ha="center", va="center",
                     transform=ax_cols.transAxes)
    ax_cols.set_title("Imputed columns", fontsize=12, fontweight="bold")
    _style_axes(ax_cols)

    fig.tight_layout()
    if save_path:
        save_figure(fig, save_path)
    return fig


def compose_figure(
    panels: Dict[str, Callable],
    layout: List[List[str]],
    figsize: Tuple[int, int] = (16, 12),
    title: Optional[str] = None,
    label_panels: bool = True,
    save_path: Optional[str] = None,
) -> Figure:
    """
    Assemble a multi-panel figure.

    Parameters:
    -----------
    panels : dict
        Panel name -> callable taking a matplotlib Axes and drawing on it,
        e.g. ``lambda ax: plot_volcano(results, ax=ax)``
    layout : list of lists
        Grid of panel names; repeating a name spans cells and '.' leaves a
        cell empty, e.g. ``[["A", "B"], ["C", "C"]]``

    Returns:
    --------
    Figure
    """
    names = {name for row in layout for name in row if name != "."}
    missing = names - set(panels)
    if missing:
        raise ValueError(f"Layout references undefined panels: {sorted(missing)}")

    fig = plt.figure(figsize=figsize)
    axes = fig.subplot_mosaic(layout, empty_sentinel=".")

    for name in sorted(names):
        ax = axes[name]
        panels[name](ax)
        if label_panels:
            ax.text(-0.1, 1.05, name, transform=ax.transAxes, fontsize=16,
                    fontweight="bold", va="bottom", ha="right")

    if title:
        fig.suptitle(title, fontsize=16, fontweight="bold")
    fig.tight_layout()

    if save_path:
        save_figure(fig, save_path)
    return fig
