"""
Statistical tests and group summaries for extraction-protocol comparisons.
"""

import itertools
import warnings

import pandas as pd
import numpy as np
from scipy import stats
from skbio.stats.distance import permanova
from statsmodels.stats.multitest import multipletests
import statsmodels.formula.api as smf
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .logger import log_print


PAIRWISE_COLUMNS = ['Group1', 'Group2', 'N1', 'N2', 'Statistic', 'P-value',
                    'Adjusted P-value', 'Significant']


def adjust_pvalues(p_values, method='fdr_bh'):
    """
    Adjust p-values for multiple testing, leaving NaN entries untouched.

    Parameters:
    -----------
    p_values : array-like
        Raw p-values, NaN for tests that were not run
    method : str
        Any statsmodels ``multipletests`` method (default Benjamini-Hochberg)

    Returns:
    --------
    numpy.ndarray
        Adjusted p-values
    """
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full(p_values.shape, np.nan)
    tested = ~np.isnan(p_values)
    if tested.any():
        adjusted[tested] = multipletests(p_values[tested], method=method)[1]
    return adjusted


def _rank_sum(values1, values2):
    if values1.nunique() == 1 and values2.nunique() == 1 and values1.iloc[0] == values2.iloc[0]:
        # All observations tied: no evidence of a shift
        return np.nan, 1.0
    stat, p_value = stats.mannwhitneyu(values1, values2, alternative='two-sided')
    return float(stat), float(p_value)


def _signed_rank(values1, values2, subjects):
    pairs = pd.DataFrame({
        'a': values1.groupby(subjects.loc[values1.index]).mean(),
        'b': values2.groupby(subjects.loc[values2.index]).mean(),
    }).dropna()
    differences = pairs['a'] - pairs['b']
    if len(pairs) < 2:
        return np.nan, np.nan, len(pairs)
    if (differences == 0).all():
        return np.nan, 1.0, len(pairs)
    stat, p_value = stats.wilcoxon(pairs['a'], pairs['b'], alternative='two-sided')
    return float(stat), float(p_value), len(pairs)


def pairwise_wilcoxon(values, groups, p_adjust='fdr_bh', paired=False, subjects=None,
                      min_group_size=2, alpha=0.05):
    """
    Pairwise Wilcoxon tests between all groups with multiple-testing correction.

    Unpaired comparisons use the two-sided rank-sum (Mann-Whitney U) test.
    Paired comparisons use the signed-rank test on subjects measured in both
    groups, averaging repeated measurements per subject first.

    Parameters:
    -----------
    values : pandas.Series
        Measurements indexed by sample
    groups : pandas.Series
        Group label for each sample
    p_adjust : str
        Correction method passed to statsmodels ``multipletests``
    paired : bool
        Whether to run signed-rank tests matched on ``subjects``
    subjects : pandas.Series, optional
        Subject (individual) for each sample; required when ``paired``
    min_group_size : int
        Minimum observations per group for a comparison to be tested
    alpha : float
        Significance threshold on the adjusted p-value

    Returns:
    --------
    pandas.DataFrame
        One row per pair of groups
    """
    if paired and subjects is None:
        raise ValueError("Paired tests require a subjects Series")

    data = pd.DataFrame({'value': values, 'group': groups}).dropna()
    data['value'] = pd.to_numeric(data['value'], errors='coerce')
    data = data.dropna()
    unique_groups = sorted(data['group'].astype(str).unique())
    data['group'] = data['group'].astype(str)

    results = []
    for group1, group2 in itertools.combinations(unique_groups, 2):
        values1 = data.loc[data['group'] == group1, 'value']
        values2 = data.loc[data['group'] == group2, 'value']

        n1, n2 = len(values1), len(values2)
        stat, p_value = np.nan, np.nan

        if paired:
            stat, p_value, n_pairs = _signed_rank(values1, values2, subjects)
            n1 = n2 = n_pairs

        if n1 < min_group_size or n2 < min_group_size:
            stat, p_value = np.nan, np.nan
        elif not paired:
            stat, p_value = _rank_sum(values1, values2)

        results.append({
            'Group1': group1,
            'Group2': group2,
            'N1': n1,
            'N2': n2,
            'Statistic': stat,
            'P-value': p_value,
        })

    results_df = pd.DataFrame(results, columns=PAIRWISE_COLUMNS[:6])
    results_df['Adjusted P-value'] = adjust_pvalues(results_df['P-value'], method=p_adjust)
    results_df['Significant'] = results_df['Adjusted P-value'] < alpha

    return results_df


def _iter_features(table, metadata_df, sample_axis):
    if sample_axis == 'columns':
        for feature in table.index:
            yield feature, table.loc[feature, metadata_df.index]
    else:
        for feature in table.columns:
            yield feature, table.loc[metadata_df.index, feature]


def compare_groups(table, metadata_df, group_var, sample_axis='columns', p_adjust='fdr_bh',
                   paired=False, subject_var=None, min_group_size=2, alpha=0.05):
    """
    Run pairwise Wilcoxon tests for every feature in a table.

    The correction is applied across the whole family of tests, i.e. all
    features and all group pairs together.

    Parameters:
    -----------
    table : pandas.DataFrame
        Feature table; samples as columns (``sample_axis='columns'``) or as
        rows (``sample_axis='index'``, e.g. a per-sample QC table)
    metadata_df : pandas.DataFrame
        Metadata with samples as index, already aligned to ``table``
    group_var : str
        Metadata column defining the groups
    sample_axis : str
        Where the samples are in ``table``
    p_adjust : str
        Correction method for ``multipletests``
    paired : bool
        Use signed-rank tests matched on ``subject_var``
    subject_var : str, optional
        Metadata column identifying the individual
    min_group_size : int
        Minimum observations per group
    alpha : float
        Significance threshold

    Returns:
    --------
    pandas.DataFrame
        Pairwise results with a leading 'Feature' column, sorted by adjusted p-value
    """
    if group_var not in metadata_df.columns:
        raise ValueError(f"Grouping variable '{group_var}' not found in metadata")
    if paired and (subject_var is None or subject_var not in metadata_df.columns):
        raise ValueError("Paired comparisons need a subject column present in metadata")

    groups = metadata_df[group_var].astype(str)
    subjects = metadata_df[subject_var].astype(str) if paired else None

    frames = []
    for feature, values in _iter_features(table, metadata_df, sample_axis):
        pairwise = pairwise_wilcoxon(values, groups, p_adjust=p_adjust, paired=paired,
                                     subjects=subjects, min_group_size=min_group_size, alpha=alpha)
        pairwise.insert(0, 'Feature', feature)
        frames.append(pairwise)

    if not frames:
        return pd.DataFrame(columns=['Feature'] + PAIRWISE_COLUMNS)

    results_df = pd.concat(frames, ignore_index=True)
    results_df['Adjusted P-value'] = adjust_pvalues(results_df['P-value'], method=p_adjust)
    results_df['Significant'] = results_df['Adjusted P-value'] < alpha

    n_significant = int(results_df['Significant'].sum())
    log_print(f"Pairwise Wilcoxon by {group_var}: {len(results_df)} comparisons, "
              f"{n_significant} significant at adjusted p < {alpha}", level="info")

    return results_df.sort_values(['Adjusted P-value', 'Feature'], na_position='last').reset_index(drop=True)


def summarize_by_group(table, metadata_df, group_var, sample_axis='columns'):
    """
    Mean, standard deviation, median and count of each feature per group.

    Parameters:
    -----------
    table : pandas.DataFrame
        Feature table, samples on ``sample_axis``
    metadata_df : pandas.DataFrame
        Metadata with samples as index, aligned to ``table``
    group_var : str
        Metadata column defining the groups
    sample_axis : str
        'columns' or 'index'

    Returns:
    --------
    pandas.DataFrame
        Long table with columns Feature, Group, Mean, SD, Median, N
    """
    if group_var not in metadata_df.columns:
        raise ValueError(f"Grouping variable '{group_var}' not found in metadata")

    samples_as_rows = table.T if sample_axis == 'columns' else table
    samples_as_rows = samples_as_rows.loc[metadata_df.index].apply(pd.to_numeric, errors='coerce')
    groups = metadata_df[group_var].astype(str)

    records = []
    for group, rows in samples_as_rows.groupby(groups):
        for feature in rows.columns:
            values = rows[feature].dropna()
            records.append({
                'Feature': feature,
                'Group': group,
                'Mean': values.mean(),
                'SD': values.std(ddof=1),
                'Median': values.median(),
                'N': len(values),
            })

    summary = pd.DataFrame(records, columns=['Feature', 'Group', 'Mean', 'SD', 'Median', 'N'])
    return summary.sort_values(['Feature', 'Group']).reset_index(drop=True)


def fold_change(table, metadata_df, group_var, reference, comparison, pseudocount=1e-5,
                sample_axis='columns'):
    """
    Fold change of group means between two groups.

    Parameters:
    -----------
    table : pandas.DataFrame
        Feature table, samples on ``sample_axis``
    metadata_df : pandas.DataFrame
        Metadata with samples as index, aligned to ``table``
    group_var : str
        Metadata column defining the groups
    reference : str
        Denominator group
    comparison : str
        Numerator group
    pseudocount : float
        Added to both means to avoid division by zero

    Returns:
    --------
    pandas.DataFrame
        Per-feature means, fold change and log2 fold change, sorted by log2 fold change
    """
    groups = metadata_df[group_var].astype(str)
    for group in (reference, comparison):
        if group not in set(groups):
            raise ValueError(f"Group '{group}' not found in '{group_var}'")

    samples_as_cols = table if sample_axis == 'columns' else table.T
    samples_as_cols = samples_as_cols[metadata_df.index].apply(pd.to_numeric, errors='coerce')

    mean_ref = samples_as_cols.loc[:, (groups == str(reference)).values].mean(axis=1)
    mean_cmp = samples_as_cols.loc[:, (groups == str(comparison)).values].mean(axis=1)

    fc = (mean_cmp + pseudocount) / (mean_ref + pseudocount)

    results_df = pd.DataFrame({
        f'Mean in {reference}': mean_ref,
        f'Mean in {comparison}': mean_cmp,
        'Fold Change': fc,
        'Log2 Fold Change': np.log2(fc),
    })
    results_df.index.name = 'Feature'

    return results_df.sort_values('Log2 Fold Change', ascending=False)


def fit_mixed_model(data, formula, group_column, reml=True, label=None):
    """
    Fit a linear mixed-effects model with a random intercept per group.

    Parameters:
    -----------
    data : pandas.DataFrame
        Long-format data with the response, fixed effects and grouping column
    formula : str
        Patsy formula for the fixed effects, e.g. 'value ~ C(Protocol)'
    group_column : str
        Column defining the random-intercept groups (the individual)
    reml : bool
        Fit by restricted maximum likelihood
    label : str, optional
        Name used in log messages, e.g. the feature being modelled

    Returns:
    --------
    tuple of (pandas.DataFrame, dict)
        Fixed-effects table and model-level information
    """
    if group_column not in data.columns:
        raise ValueError(f"Group column '{group_column}' not found in model data")

    model = smf.mixedlm(formula, data, groups=data[group_column])

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always', ConvergenceWarning)
        result = model.fit(reml=reml)

    name = label or formula
    for warning in caught:
        if issubclass(warning.category, ConvergenceWarning):
            log_print(f"Mixed model for {name}: {warning.message}", level="warning")
        else:
            warnings.warn_explicit(warning.message, warning.category, warning.filename, warning.lineno)

    fixed_names = result.model.exog_names
    conf_int = result.conf_int().loc[fixed_names]

    fixed_effects = pd.DataFrame({
        'Term': fixed_names,
        'Estimate': result.fe_params.loc[fixed_names].values,
        'Std. Error': result.bse.loc[fixed_names].values,
        'z': result.tvalues.loc[fixed_names].values,
        'P-value': result.pvalues.loc[fixed_names].values,
        'CI lower': conf_int.iloc[:, 0].values,
        'CI upper': conf_int.iloc[:, 1].values,
    })

    info = {
        'formula': formula,
        'converged': bool(result.converged),
        'log-likelihood': float(result.llf) if np.isfinite(result.llf) else np.nan,
        'group variance': float(result.cov_re.iloc[0, 0]),
        'residual variance': float(result.scale),
        'n observations': int(result.nobs),
        'n groups': len(result.model.group_labels),
    }

    return fixed_effects, info


def mixed_model_by_feature(table, metadata_df, fixed_effect, group_column, sample_axis='index',
                           transform=None, p_adjust='fdr_bh'):
    """
    Fit ``value ~ C(fixed_effect) + (1 | group_column)`` for each feature.

    Parameters:
    -----------
    table : pandas.DataFrame
        Feature table, samples on ``sample_axis`` (default: samples as rows)
    metadata_df : pandas.DataFrame
        Metadata with samples as index, aligned to ``table``
    fixed_effect : str
        Categorical metadata column tested as fixed effect
    group_column : str
        Metadata column for the random intercept (the individual)
    sample_axis : str
        'columns' or 'index'
    transform : callable, optional
        Applied to the response before fitting, e.g. ``np.log1p``
    p_adjust : str
        Correction applied per term across features

    Returns:
    --------
    pandas.DataFrame
        Fixed-effect estimates for every feature with adjusted p-values
    """
    for col in (fixed_effect, group_column):
        if col not in metadata_df.columns:
            raise ValueError(f"Column '{col}' not found in metadata")

    frames = []
    for feature, values in _iter_features(table, metadata_df, sample_axis):
        data = pd.DataFrame({
            'value': pd.to_numeric(values, errors='coerce'),
            'effect': metadata_df[fixed_effect].astype(str),
            'subject': metadata_df[group_column].astype(str),
        }).dropna()

        if transform is not None:
            data['value'] = transform(data['value'])

        if data['effect'].nunique() < 2 or data['subject'].nunique() < 2 or data['value'].nunique() < 2:
            log_print(f"Skipping mixed model for {feature}: not enough variation", level="warning")
            continue

        try:
            fixed_effects, info = fit_mixed_model(data, 'value ~ C(effect)', 'subject', label=feature)
        except (np.linalg.LinAlgError, ValueError) as e:
            log_print(f"Mixed model failed for {feature}: {e}", level="warning")
            continue

        fixed_effects['Term'] = fixed_effects['Term'].str.replace('C(effect)', fixed_effect, regex=False)
        fixed_effects.insert(0, 'Feature', feature)
        fixed_effects['Converged'] = info['converged']
        fixed_effects['N'] = info['n observations']
        frames.append(fixed_effects)

    if not frames:
        return pd.DataFrame(columns=['Feature', 'Term', 'Estimate', 'Std. Error', 'z', 'P-value',
                                     'CI lower', 'CI upper', 'Converged', 'N', 'Adjusted P-value'])

    results_df = pd.concat(frames, ignore_index=True)
    results_df['Adjusted P-value'] = np.nan

    is_effect = results_df['Term'] != 'Intercept'
    for term, rows in results_df[is_effect].groupby('Term'):
        results_df.loc[rows.index, 'Adjusted P-value'] = adjust_pvalues(rows['P-value'], method=p_adjust)

    return results_df


def perform_permanova(distance_matrix, metadata_df, variable, permutations=999, seed=None):
    """
    Perform PERMANOVA test to see if grouping variable explains community differences.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Distance matrix between samples
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    permutations : int
        Number of permutations to use
    seed : int, optional
        Seed for the permutation generator

    Returns:
    --------
    dict
        PERMANOVA results
    """
    common_samples = [s for s in distance_matrix.ids if s in set(metadata_df.index)]

    def not_run(note, n_groups=np.nan):
        return {
            'test-statistic': np.nan,
            'p-value': np.nan,
            'R2': np.nan,
            'sample size': len(common_samples),
            'number of groups': n_groups,
            'note': note,
        }

    if variable not in metadata_df.columns:
        raise ValueError(f"Grouping variable '{variable}' not found in metadata")

    if len(common_samples) < 5:
        return not_run('Insufficient samples for PERMANOVA')

    filtered_dm = distance_matrix.filter(common_samples)
    grouping = metadata_df.loc[common_samples, variable].astype(str)

    unique_groups = grouping.unique()
    if len(unique_groups) < 2:
        return not_run(f'Only one group found in {variable}', len(unique_groups))

    if (grouping.value_counts() < 2).any():
        return not_run(f'At least one group in {variable} has fewer than 2 samples', len(unique_groups))

    results = permanova(filtered_dm, grouping.values, permutations=permutations, seed=seed)

    # R2 from the pseudo-F statistic: F = (R2 / (k - 1)) / ((1 - R2) / (n - k))
    n = int(results['sample size'])
    k = int(results['number of groups'])
    f_stat = float(results['test statistic'])
    numerator = f_stat * (k - 1)
    r_squared = numerator / (numerator + (n - k)) if n > k else np.nan

    log_print(f"PERMANOVA {variable}: F={f_stat:.3f}, R2={r_squared:.3f}, p={results['p-value']:.4f}", level="info")

    return {
        'test-statistic': f_stat,
        'p-value': float(results['p-value']),
        'R2': r_squared,
        'sample size': n,
        'number of groups': k,
        'note': 'Successful test',
    }
