"""
Compositional transforms, ordination inputs and abundance ranking.

All functions take feature tables with features (taxa or proteins) as index
and samples as columns.
"""

import pandas as pd
import numpy as np
import scipy.spatial.distance as ssd
from skbio.stats.composition import clr, multi_replace
from skbio.stats.distance import DistanceMatrix

from .logger import log_print


def replace_zeros(abundance_df, delta=None):
    """
    Multiplicative zero replacement of each sample's composition.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Counts or relative abundances, features as index, samples as columns
    delta : float, optional
        Replacement value for zeros (scikit-bio default: 1 / n_features**2)

    Returns:
    --------
    pandas.DataFrame
        Strictly positive proportions; every sample sums to 1
    """
    values = abundance_df.fillna(0).T.to_numpy(dtype=float)

    empty = values.sum(axis=1) == 0
    if empty.any():
        empty_samples = list(abundance_df.columns[empty])
        raise ValueError(f"Cannot replace zeros in empty samples: {', '.join(map(str, empty_samples))}")

    replaced = multi_replace(values, delta=delta)

    return pd.DataFrame(replaced.T, index=abundance_df.index, columns=abundance_df.columns)


def clr_transform(abundance_df, delta=None):
    """
    Centered log-ratio transform after multiplicative zero replacement.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Features as index, samples as columns
    delta : float, optional
        Zero replacement value passed to ``replace_zeros``

    Returns:
    --------
    pandas.DataFrame
        CLR values, features as index, samples as columns
    """
    proportions = replace_zeros(abundance_df, delta=delta)
    transformed = clr(proportions.T.to_numpy())
    return pd.DataFrame(np.asarray(transformed).T, index=abundance_df.index, columns=abundance_df.columns)


def clr_pca(clr_df, n_components=2):
    """
    Principal component analysis of CLR-transformed data by eigendecomposition.

    Parameters:
    -----------
    clr_df : pandas.DataFrame
        CLR values, features as index, samples as columns
    n_components : int
        Number of components to keep

    Returns:
    --------
    dict
        'scores' (samples x PCs), 'loadings' (features x PCs),
        'explained_variance' and 'proportion_explained' (Series by PC)
    """
    n_samples, n_features = clr_df.shape[1], clr_df.shape[0]
    if n_samples < 2:
        raise ValueError("PCA needs at least two samples")

    data = clr_df.T.to_numpy(dtype=float)
    centered = data - data.mean(axis=0)

    covariance = np.cov(centered, rowvar=False)
    covariance = np.atleast_2d(covariance)
    eigenvalues, eigenvectors = np.linalg.eigh(covariance)

    # eigh returns ascending eigenvalues
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = np.clip(eigenvalues[order], 0, None)
    eigenvectors = eigenvectors[:, order]

    n_components = min(n_components, n_features, n_samples)
    eigenvalues_kept = eigenvalues[:n_components]
    vectors = eigenvectors[:, :n_components]

    # Fix the arbitrary sign of each eigenvector
    for i in range(n_components):
        if vectors[np.argmax(np.abs(vectors[:, i])), i] < 0:
            vectors[:, i] = -vectors[:, i]

    pcs = [f'PC{i + 1}' for i in range(n_components)]
    total_variance = eigenvalues.sum()

    scores = pd.DataFrame(centered @ vectors, index=clr_df.columns, columns=pcs)
    loadings = pd.DataFrame(vectors, index=clr_df.index, columns=pcs)
    explained = pd.Series(eigenvalues_kept, index=pcs)
    proportion = explained / total_variance if total_variance > 0 else explained * np.nan

    return {
        'scores': scores,
        'loadings': loadings,
        'explained_variance': explained,
        'proportion_explained': proportion,
    }


def aitchison_distance(abundance_df, delta=None):
    """Aitchison distance between samples (Euclidean distance on CLR values)."""
    clr_df = clr_transform(abundance_df, delta=delta)
    distances = ssd.pdist(clr_df.T.to_numpy(), metric='euclidean')
    return DistanceMatrix(ssd.squareform(distances), ids=[str(s) for s in clr_df.columns])


def bray_curtis_distance(abundance_df):
    """Bray-Curtis dissimilarity between samples."""
    values = abundance_df.fillna(0).T.to_numpy(dtype=float)
    if (values.sum(axis=1) == 0).any():
        raise ValueError("Bray-Curtis distance is undefined for empty samples")
    distances = ssd.pdist(values, metric='braycurtis')
    return DistanceMatrix(ssd.squareform(distances), ids=[str(s) for s in abundance_df.columns])


def top_n_taxa(abundance_df, n=20, other_label='Other'):
    """
    Keep the ``n`` most abundant features and pool the rest.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Relative abundances, features as index, samples as columns
    n : int
        Number of features to keep, ranked by mean abundance across samples
    other_label : str
        Label of the pooled row

    Returns:
    --------
    pandas.DataFrame
        Top features in decreasing order of mean abundance, followed by the
        pooled row when any features remain
    """
    mean_abundance = abundance_df.mean(axis=1)
    # Stable sort keeps input order among ties
    ranked = mean_abundance.sort_values(ascending=False, kind='mergesort')
    top = ranked.index[:n]

    top_df = abundance_df.loc[top].copy()
    remainder = abundance_df.drop(index=top)

    if len(remainder) > 0:
        top_df.loc[other_label] = remainder.sum(axis=0)

    return top_df


def aggregate_by_rank(abundance_df, lineage, rank, unassigned_label='Unassigned'):
    """
    Sum taxa up to a higher taxonomic rank.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Features as index, samples as columns
    lineage : pandas.DataFrame
        Taxon names as index, one column per rank
    rank : str
        Column of ``lineage`` to aggregate to, e.g. 'genus'

    Returns:
    --------
    pandas.DataFrame
        Abundances summed per rank value
    """
    if rank not in lineage.columns:
        raise ValueError(f"Rank '{rank}' not found in lineage table")

    mapping = lineage[rank].reindex(abundance_df.index)
    n_unassigned = int(mapping.isna().sum())
    if n_unassigned:
        log_print(f"{n_unassigned} taxa have no {rank} assignment", level="debug")

    mapping = mapping.fillna(unassigned_label).astype(str)
    return abundance_df.groupby(mapping.values, sort=False).sum()
