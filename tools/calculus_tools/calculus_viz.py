"""
Figure builders for the extraction-protocol comparisons.
"""

import os

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from skbio.stats.ordination import pcoa
from sklearn.manifold import MDS

from .logger import log_print


def save_figure(fig, output_file, dpi=300):
    """Save a figure, creating the parent directory if needed."""
    directory = os.path.dirname(str(output_file))
    if directory:
        os.makedirs(directory, exist_ok=True)
    fig.savefig(output_file, dpi=dpi, bbox_inches='tight')
    log_print(f"Saved figure to {output_file}", level="info")


def _finish(fig, output_file, dpi):
    fig.tight_layout()
    if output_file:
        save_figure(fig, output_file, dpi=dpi)
    return fig


def _ordered_samples(metadata_df, group_var):
    return metadata_df.sort_values(group_var, kind='mergesort').index.tolist()


def plot_top_taxa_bar(top_df, metadata_df, group_var, title=None, output_file=None, dpi=300):
    """
    Stacked bar chart of the top taxa in every sample, samples grouped.

    Parameters:
    -----------
    top_df : pandas.DataFrame
        Output of ``top_n_taxa``; taxa as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    group_var : str
        Metadata variable used to order and label samples
    title : str, optional
        Figure title
    output_file : str, optional
        Where to save the figure

    Returns:
    --------
    matplotlib.figure.Figure
        Stacked bar plot figure
    """
    samples = [s for s in _ordered_samples(metadata_df, group_var) if s in top_df.columns]
    plot_df = top_df[samples].T

    n_taxa = plot_df.shape[1]
    colors = sns.color_palette('tab20', n_colors=max(n_taxa, 1))
    if 'Other' in plot_df.columns:
        colors[list(plot_df.columns).index('Other')] = (0.8, 0.8, 0.8)

    fig, ax = plt.subplots(figsize=(max(8, len(samples) * 0.4), 7))
    plot_df.plot(kind='bar', stacked=True, ax=ax, color=colors, width=0.9)

    # Separate the groups
    groups = metadata_df.loc[samples, group_var].astype(str)
    boundaries = np.flatnonzero(groups.values[1:] != groups.values[:-1]) + 0.5
    for x in boundaries:
        ax.axvline(x, color='black', linewidth=0.8)

    ax.set_xticks(range(len(samples)))
    ax.set_xticklabels([f'{s} ({g})' for s, g in zip(samples, groups)], rotation=90, fontsize=8)
    ax.set_xlabel('Sample')
    ax.set_ylabel('Relative Abundance (%)')
    ax.set_title(title or f'Most abundant taxa by {group_var}')
    ax.legend(title='Taxa', bbox_to_anchor=(1.02, 1), loc='upper left', fontsize=8)

    return _finish(fig, output_file, dpi)


def plot_group_boxplot(values, metadata_df, group_var, ylabel=None, pairwise=None, alpha=0.05,
                       title=None, palette='Set2', output_file=None, dpi=300):
    """
    Box and strip plot of one measurement by group, annotated with significant pairs.

    Parameters:
    -----------
    values : pandas.Series
        Measurement indexed by sample
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    group_var : str
        Grouping variable from metadata
    ylabel : str, optional
        Y axis label (default: the Series name)
    pairwise : pandas.DataFrame, optional
        Output of ``pairwise_wilcoxon`` for this measurement
    alpha : float
        Adjusted p-value threshold for drawing a bracket

    Returns:
    --------
    matplotlib.figure.Figure
        Boxplot figure
    """
    name = values.name or 'value'
    common_samples = [s for s in metadata_df.index if s in values.index]
    plot_data = pd.DataFrame({
        name: pd.to_numeric(values.loc[common_samples], errors='coerce'),
        group_var: metadata_df.loc[common_samples, group_var].astype(str),
    }).dropna()

    order = sorted(plot_data[group_var].unique())

    fig, ax = plt.subplots(figsize=(max(5, len(order) * 1.5), 6))
    sns.boxplot(x=group_var, y=name, data=plot_data, order=order, hue=group_var,
                palette=palette, legend=False, showfliers=False, ax=ax)
    sns.stripplot(x=group_var, y=name, data=plot_data, order=order,
                  color='black', size=4, alpha=0.6, ax=ax)

    if pairwise is not None and len(plot_data):
        significant = pairwise[pairwise['Adjusted P-value'] < alpha]
        y_max = plot_data[name].max()
        y_range = (y_max - plot_data[name].min()) or 1.0
        step = y_range * 0.08
        for i, (_, row) in enumerate(significant.iterrows()):
            if row['Group1'] not in order or row['Group2'] not in order:
                continue
            x1, x2 = order.index(row['Group1']), order.index(row['Group2'])
            y = y_max + step * (i + 1)
            ax.plot([x1, x1, x2, x2], [y, y + step * 0.3, y + step * 0.3, y], color='black', linewidth=1)
            ax.text((x1 + x2) / 2, y + step * 0.35, _format_p(row['Adjusted P-value']),
                    ha='center', va='bottom', fontsize=9)

    ax.set_title(title or f'{name} by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel(ylabel or name)

    return _finish(fig, output_file, dpi)


def _format_p(p_value):
    if p_value < 0.001:
        return 'p < 0.001'
    return f'p = {p_value:.3f}'


def plot_pca(pca_result, metadata_df, group_var, n_loadings=0, title=None, palette='Set2',
             output_file=None, dpi=300):
    """
    Scatter plot of the first two principal components.

    Parameters:
    -----------
    pca_result : dict
        Output of ``clr_pca``
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    group_var : str
        Metadata variable for coloring points
    n_loadings : int
        Number of strongest feature loadings to draw as arrows

    Returns:
    --------
    matplotlib.figure.Figure
        PCA figure
    """
    scores = pca_result['scores']
    if scores.shape[1] < 2:
        raise ValueError("PCA plot needs at least two components")

    proportion = pca_result['proportion_explained']
    plot_df = scores[['PC1', 'PC2']].copy()
    plot_df[group_var] = metadata_df.reindex(plot_df.index)[group_var].astype(str)

    fig, ax = plt.subplots(figsize=(9, 7))
    sns.scatterplot(data=plot_df, x='PC1', y='PC2', hue=group_var, palette=palette, s=80, ax=ax)

    if n_loadings:
        loadings = pca_result['loadings'][['PC1', 'PC2']]
        strongest = (loadings ** 2).sum(axis=1).nlargest(n_loadings).index
        scale = np.abs(plot_df[['PC1', 'PC2']].to_numpy()).max() / np.abs(loadings.to_numpy()).max()
        for feature in strongest:
            x, y = loadings.loc[feature] * scale * 0.8
            ax.arrow(0, 0, x, y, color='grey', alpha=0.7, head_width=0.02 * scale)
            ax.text(x * 1.05, y * 1.05, str(feature), fontsize=7, color='dimgrey')

    ax.axhline(0, color='lightgrey', linewidth=0.8, zorder=0)
    ax.axvline(0, color='lightgrey', linewidth=0.8, zorder=0)
    ax.set_xlabel(f'PC1 ({proportion["PC1"] * 100:.1f}% variance explained)')
    ax.set_ylabel(f'PC2 ({proportion["PC2"] * 100:.1f}% variance explained)')
    ax.set_title(title or f'PCA of CLR-transformed data ({group_var})')
    ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left')

    return _finish(fig, output_file, dpi)


def plot_ordination(beta_dm, metadata_df, variable, method='PCoA', title=None, output_file=None, dpi=300):
    """
    Create ordination plot from a distance matrix.

    Parameters:
    -----------
    beta_dm : skbio.DistanceMatrix
        Distance matrix between samples
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable for coloring points
    method : str
        Ordination method ('PCoA' or 'NMDS')

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    fig, ax = plt.subplots(figsize=(9, 7))

    if method.upper() == 'PCOA':
        pcoa_results = pcoa(beta_dm)
        plot_df = pcoa_results.samples[['PC1', 'PC2']].copy()
        plot_df.columns = ['Axis1', 'Axis2']
        variance_explained = pcoa_results.proportion_explained
        ax.set_xlabel(f'PC1 ({variance_explained.iloc[0] * 100:.1f}% variance explained)')
        ax.set_ylabel(f'PC2 ({variance_explained.iloc[1] * 100:.1f}% variance explained)')
    elif method.upper() == 'NMDS':
        # Non-metric MDS on the precomputed distances
        mds = MDS(n_components=2, dissimilarity='precomputed', random_state=42,
                  metric=False, n_init=10, max_iter=500)
        coords = mds.fit_transform(beta_dm.data)
        plot_df = pd.DataFrame(coords, index=list(beta_dm.ids), columns=['Axis1', 'Axis2'])
        ax.set_xlabel('NMDS1')
        ax.set_ylabel('NMDS2')
        stress = getattr(mds, 'stress_', None)
        if stress is not None:
            ax.text(0.02, 0.98, f"Stress: {stress:.3f}", transform=ax.transAxes, va='top', ha='left',
                    bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))
    else:
        plt.close(fig)
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")

    plot_df.index = plot_df.index.astype(str)
    plot_df[variable] = metadata_df.reindex(plot_df.index)[variable].astype(str)

    sns.scatterplot(data=plot_df, x='Axis1', y='Axis2', hue=variable, s=80, ax=ax)
    ax.set_title(title or f'{method} ({variable})')
    ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left')

    return _finish(fig, output_file, dpi)


def plot_fold_change(fc_df, top_n=20, title=None, output_file=None, dpi=300):
    """
    Horizontal bar chart of the largest log2 fold changes.

    Parameters:
    -----------
    fc_df : pandas.DataFrame
        Output of ``fold_change`` (feature index, 'Log2 Fold Change' column)
    top_n : int
        Number of features with the largest absolute change to show

    Returns:
    --------
    matplotlib.figure.Figure
        Fold-change figure
    """
    shown = fc_df.reindex(fc_df['Log2 Fold Change'].abs().sort_values(ascending=False).index).head(top_n)
    shown = shown.sort_values('Log2 Fold Change')

    colors = ['#b2182b' if v > 0 else '#2166ac' for v in shown['Log2 Fold Change']]

    fig, ax = plt.subplots(figsize=(8, max(4, len(shown) * 0.35)))
    ax.barh([str(i) for i in shown.index], shown['Log2 Fold Change'], color=colors)
    ax.axvline(0, color='black', linewidth=0.8)
    ax.set_xlabel('Log2 Fold Change')
    ax.set_title(title or 'Fold change between protocols')

    return _finish(fig, output_file, dpi)


def plot_metric_panels(table, metadata_df, metrics, group_var, palette='Set2', output_file=None, dpi=300):
    """
    One box/strip panel per sample-level metric (e.g. alignment QC values).

    Parameters:
    -----------
    table : pandas.DataFrame
        Metrics with samples as index
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    metrics : list of str
        Columns of ``table`` to plot
    group_var : str
        Grouping variable from metadata

    Returns:
    --------
    matplotlib.figure.Figure
        Multi-panel figure
    """
    metrics = [m for m in metrics if m in table.columns]
    if not metrics:
        raise ValueError("None of the requested metrics are present in the table")

    common_samples = [s for s in metadata_df.index if s in table.index]
    long_df = table.loc[common_samples, metrics].apply(pd.to_numeric, errors='coerce')
    long_df[group_var] = metadata_df.loc[common_samples, group_var].astype(str)
    long_df = long_df.melt(id_vars=group_var, var_name='Metric', value_name='Value').dropna()

    order = sorted(long_df[group_var].unique())
    n_cols = min(3, len(metrics))
    n_rows = int(np.ceil(len(metrics) / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4.5 * n_cols, 4 * n_rows), squeeze=False)
    for ax, metric in zip(axes.flat, metrics):
        metric_df = long_df[long_df['Metric'] == metric]
        sns.boxplot(x=group_var, y='Value', data=metric_df, order=order, hue=group_var,
                    palette=palette, legend=False, showfliers=False, ax=ax)
        sns.stripplot(x=group_var, y='Value', data=metric_df, order=order,
                      color='black', size=3, alpha=0.6, ax=ax)
        ax.set_title(metric)
        ax.set_xlabel('')
        ax.set_ylabel('')
        ax.tick_params(axis='x', rotation=45)

    for ax in list(axes.flat)[len(metrics):]:
        ax.axis('off')

    return _finish(fig, output_file, dpi)
