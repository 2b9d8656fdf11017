"""
tests/test_stats.py

Unit tests for calculus_tools.calculus_stats.

Protocol effects are simulated with a fixed generator so that the shift
between groups is far larger than the noise.
"""

import logging
import warnings

import pytest
import numpy as np
import pandas as pd
from skbio.stats.distance import DistanceMatrix
from statsmodels.regression.mixed_linear_model import MixedLM
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from calculus_tools.calculus_stats import (
    PAIRWISE_COLUMNS,
    adjust_pvalues,
    pairwise_wilcoxon,
    compare_groups,
    summarize_by_group,
    fold_change,
    fit_mixed_model,
    mixed_model_by_feature,
    perform_permanova,
)
from calculus_tools.logger import LOGGER_NAME


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def design():
    """Eight individuals, each sampled with protocols A, B and C."""
    individuals = [f'I{i}' for i in range(1, 9)]
    rows = [(f'{ind}_{p}', ind, p) for ind in individuals for p in ['A', 'B', 'C']]
    return pd.DataFrame(rows, columns=['SampleID', 'Individual', 'Protocol']).set_index('SampleID')


@pytest.fixture(scope="module")
def qc_table(design):
    """Per-sample metrics: 'shifted' depends on protocol, 'noise' only on the individual."""
    rng = np.random.default_rng(7)
    effect = design['Protocol'].map({'A': 0.0, 'B': 5.0, 'C': 10.0})
    subject = design['Individual'].map({f'I{i}': rng.normal(0, 2) for i in range(1, 9)})
    noise = design['Individual'].map({f'I{i}': rng.normal(0, 1) for i in range(1, 9)})
    return pd.DataFrame({
        'shifted': 20 + effect + subject + rng.normal(0, 0.5, len(design)),
        'noise': noise + rng.normal(0, 0.01, len(design)),
    }, index=design.index)


@pytest.fixture
def two_groups():
    values = pd.Series([1, 2, 3, 4, 5, 6, 11, 12, 13, 14, 15, 16],
                       index=[f'S{i}' for i in range(12)], dtype=float)
    groups = pd.Series(['A'] * 6 + ['B'] * 6, index=values.index)
    return values, groups


# ---------------------------------------------------------------------------
# adjust_pvalues
# ---------------------------------------------------------------------------

class TestAdjustPvalues:

    def test_benjamini_hochberg(self):
        adjusted = adjust_pvalues([0.01, 0.04])
        np.testing.assert_allclose(adjusted, [0.02, 0.04])

    def test_nan_left_untouched(self):
        adjusted = adjust_pvalues([0.01, np.nan, 0.04])
        assert np.isnan(adjusted[1])
        np.testing.assert_allclose(adjusted[[0, 2]], [0.02, 0.04])

    def test_all_nan(self):
        assert np.isnan(adjust_pvalues([np.nan, np.nan])).all()

    def test_bounds_and_rank_order(self):
        raw = np.random.default_rng(5).uniform(0, 0.3, 40)
        adjusted = adjust_pvalues(raw)
        assert (adjusted >= raw).all()
        assert (adjusted <= 1).all()
        assert (np.diff(adjusted[np.argsort(raw)]) >= 0).all()


# ---------------------------------------------------------------------------
# pairwise_wilcoxon
# ---------------------------------------------------------------------------

class TestPairwiseWilcoxon:

    def test_columns(self, two_groups):
        values, groups = two_groups
        result = pairwise_wilcoxon(values, groups)
        assert list(result.columns) == PAIRWISE_COLUMNS

    def test_separated_groups_significant(self, two_groups):
        values, groups = two_groups
        row = pairwise_wilcoxon(values, groups).iloc[0]
        assert (row['Group1'], row['Group2']) == ('A', 'B')
        assert row['Statistic'] == 0
        assert row['P-value'] < 0.01
        assert bool(row['Significant'])

    def test_all_pairs_tested(self, design, qc_table):
        result = pairwise_wilcoxon(qc_table['shifted'], design['Protocol'])
        pairs = list(zip(result['Group1'], result['Group2']))
        assert pairs == [('A', 'B'), ('A', 'C'), ('B', 'C')]

    def test_small_group_not_tested(self, two_groups):
        values, groups = two_groups
        values = pd.concat([values, pd.Series([100.0], index=['S99'])])
        groups = pd.concat([groups, pd.Series(['D'], index=['S99'])])
        result = pairwise_wilcoxon(values, groups)
        with_d = result[(result['Group1'] == 'D') | (result['Group2'] == 'D')]
        assert with_d['P-value'].isna().all()
        assert with_d['Adjusted P-value'].isna().all()
        assert not with_d['Significant'].any()

    def test_all_tied(self):
        values = pd.Series([3.0] * 6, index=list('abcdef'))
        groups = pd.Series(['A', 'A', 'A', 'B', 'B', 'B'], index=values.index)
        row = pairwise_wilcoxon(values, groups).iloc[0]
        assert row['P-value'] == 1.0

    def test_paired_requires_subjects(self, two_groups):
        values, groups = two_groups
        with pytest.raises(ValueError, match='subjects'):
            pairwise_wilcoxon(values, groups, paired=True)

    def test_paired_signed_rank(self):
        subjects = pd.Series([f'I{i}' for i in range(6)] * 2, index=[f'S{i}' for i in range(12)])
        base = np.array([1.0, 4.0, 2.0, 8.0, 5.0, 7.0])
        values = pd.Series(np.concatenate([base, base + np.arange(3, 9)]), index=subjects.index)
        groups = pd.Series(['A'] * 6 + ['B'] * 6, index=subjects.index)
        row = pairwise_wilcoxon(values, groups, paired=True, subjects=subjects).iloc[0]
        assert row['N1'] == 6
        assert row['P-value'] < 0.05


# ---------------------------------------------------------------------------
# compare_groups / summarize_by_group
# ---------------------------------------------------------------------------

class TestCompareGroups:

    def test_feature_column_and_sorting(self, design, qc_table):
        result = compare_groups(qc_table, design, 'Protocol', sample_axis='index')
        assert list(result.columns) == ['Feature'] + PAIRWISE_COLUMNS
        assert len(result) == 6
        assert result.iloc[0]['Feature'] == 'shifted'
        assert result['Adjusted P-value'].is_monotonic_increasing

    def test_one_correction_family_across_features(self, design, qc_table):
        result = compare_groups(qc_table, design, 'Protocol', sample_axis='index')
        raw = pd.concat([pairwise_wilcoxon(qc_table[f], design['Protocol']).assign(Feature=f)
                         for f in qc_table.columns], ignore_index=True)
        raw['Expected'] = adjust_pvalues(raw['P-value'])
        merged = result.merge(raw[['Feature', 'Group1', 'Group2', 'Expected']],
                              on=['Feature', 'Group1', 'Group2'])
        assert len(merged) == 6
        np.testing.assert_allclose(merged['Adjusted P-value'], merged['Expected'])

        per_feature = raw.loc[raw['Feature'] == 'shifted'].set_index(['Group1', 'Group2'])['Adjusted P-value']
        family = merged.loc[merged['Feature'] == 'shifted'].set_index(['Group1', 'Group2'])['Adjusted P-value']
        assert (family.loc[per_feature.index] > per_feature).all()

    def test_samples_as_columns(self, design, qc_table):
        by_rows = compare_groups(qc_table, design, 'Protocol', sample_axis='index')
        by_cols = compare_groups(qc_table.T, design, 'Protocol', sample_axis='columns')
        pd.testing.assert_frame_equal(by_rows, by_cols)

    def test_missing_group_var(self, design, qc_table):
        with pytest.raises(ValueError, match='Site'):
            compare_groups(qc_table, design, 'Site', sample_axis='index')

    def test_paired_needs_subject_column(self, design, qc_table):
        with pytest.raises(ValueError):
            compare_groups(qc_table, design, 'Protocol', sample_axis='index', paired=True)

    def test_paired_by_individual(self, design, qc_table):
        result = compare_groups(qc_table[['shifted']], design, 'Protocol', sample_axis='index',
                                paired=True, subject_var='Individual')
        assert (result['N1'] == 8).all()
        assert result['Significant'].all()


class TestSummarizeByGroup:

    def test_mean_and_sd(self):
        metadata = pd.DataFrame({'Protocol': ['A', 'A', 'B', 'B']}, index=['s1', 's2', 's3', 's4'])
        table = pd.DataFrame({'reads': [10.0, 20.0, 1.0, 3.0]}, index=metadata.index)
        summary = summarize_by_group(table, metadata, 'Protocol', sample_axis='index')
        assert list(summary.columns) == ['Feature', 'Group', 'Mean', 'SD', 'Median', 'N']
        row_a = summary[summary['Group'] == 'A'].iloc[0]
        assert row_a['Mean'] == pytest.approx(15.0)
        assert row_a['SD'] == pytest.approx(np.std([10.0, 20.0], ddof=1))
        assert row_a['N'] == 2

    def test_one_row_per_feature_and_group(self, design, qc_table):
        summary = summarize_by_group(qc_table, design, 'Protocol', sample_axis='index')
        assert len(summary) == 2 * 3


# ---------------------------------------------------------------------------
# fold_change
# ---------------------------------------------------------------------------

class TestFoldChange:

    @pytest.fixture
    def intensities(self):
        metadata = pd.DataFrame({'Protocol': ['A', 'A', 'B', 'B']}, index=['s1', 's2', 's3', 's4'])
        table = pd.DataFrame({
            's1': [1.0, 4.0], 's2': [3.0, 4.0], 's3': [7.0, 1.0], 's4': [9.0, 1.0],
        }, index=['up', 'down'])
        return table, metadata

    def test_fold_change_values(self, intensities):
        table, metadata = intensities
        result = fold_change(table, metadata, 'Protocol', reference='A', comparison='B')
        assert result.index.name == 'Feature'
        assert list(result.index) == ['up', 'down']
        assert result.loc['up', 'Mean in A'] == pytest.approx(2.0)
        assert result.loc['up', 'Log2 Fold Change'] == pytest.approx(2.0, abs=1e-4)
        assert result.loc['down', 'Log2 Fold Change'] == pytest.approx(-2.0, abs=1e-4)

    def test_zero_reference_is_finite(self, intensities):
        table, metadata = intensities
        table = table.copy()
        table.loc['up', ['s1', 's2']] = 0.0
        result = fold_change(table, metadata, 'Protocol', reference='A', comparison='B')
        assert np.isfinite(result.loc['up', 'Log2 Fold Change'])

    def test_identical_groups_have_no_change(self):
        metadata = pd.DataFrame({'Protocol': ['A', 'A', 'B', 'B']}, index=['s1', 's2', 's3', 's4'])
        table = pd.DataFrame({
            's1': [1.0, 0.0, 3.0], 's2': [5.0, 0.0, 2.0], 's3': [5.0, 0.0, 2.0], 's4': [1.0, 0.0, 3.0],
        }, index=['f1', 'absent', 'f3'])
        result = fold_change(table, metadata, 'Protocol', reference='A', comparison='B')
        np.testing.assert_allclose(result['Fold Change'], 1.0)
        np.testing.assert_allclose(result['Log2 Fold Change'], 0.0, atol=1e-12)

    def test_unknown_group_raises(self, intensities):
        table, metadata = intensities
        with pytest.raises(ValueError, match="Group 'Z'"):
            fold_change(table, metadata, 'Protocol', reference='A', comparison='Z')


# ---------------------------------------------------------------------------
# Mixed models
# ---------------------------------------------------------------------------

class TestMixedModels:

    def test_fit_mixed_model_recovers_effects(self, design, qc_table):
        data = design.assign(value=qc_table['shifted'])
        fixed, info = fit_mixed_model(data, 'value ~ C(Protocol)', 'Individual')
        estimates = fixed.set_index('Term')['Estimate']
        assert estimates['C(Protocol)[T.B]'] == pytest.approx(5.0, abs=1.0)
        assert estimates['C(Protocol)[T.C]'] == pytest.approx(10.0, abs=1.0)
        assert info['n groups'] == 8
        assert info['n observations'] == 24

    def test_missing_group_column(self, design, qc_table):
        data = design.assign(value=qc_table['shifted'])
        with pytest.raises(ValueError, match='Subject'):
            fit_mixed_model(data, 'value ~ C(Protocol)', 'Subject')

    def test_by_feature_terms_and_adjustment(self, design, qc_table):
        result = mixed_model_by_feature(qc_table, design, 'Protocol', 'Individual')
        shifted = result[result['Feature'] == 'shifted'].set_index('Term')
        assert {'Intercept', 'Protocol[T.B]', 'Protocol[T.C]'} <= set(shifted.index)
        assert np.isnan(shifted.loc['Intercept', 'Adjusted P-value'])
        assert shifted.loc['Protocol[T.C]', 'Adjusted P-value'] < 0.05

    def test_constant_feature_skipped(self, design):
        table = pd.DataFrame({'flat': 1.0}, index=design.index)
        result = mixed_model_by_feature(table, design, 'Protocol', 'Individual')
        assert result.empty
        assert 'Adjusted P-value' in result.columns


class TestMixedModelWarnings:

    @pytest.fixture
    def warning_fit(self, monkeypatch):
        """Make every MixedLM fit emit a convergence warning and an unrelated warning."""
        original_fit = MixedLM.fit

        def fit_with_warnings(model, *args, **kwargs):
            warnings.warn('forced non-convergence', ConvergenceWarning)
            warnings.warn('unrelated numerical issue', RuntimeWarning)
            return original_fit(model, *args, **kwargs)

        monkeypatch.setattr(MixedLM, 'fit', fit_with_warnings)

    def test_convergence_warning_names_feature(self, warning_fit, design, qc_table, caplog):
        with caplog.at_level(logging.WARNING, logger=LOGGER_NAME), pytest.warns(RuntimeWarning):
            mixed_model_by_feature(qc_table[['shifted']], design, 'Protocol', 'Individual')
        messages = [r.getMessage() for r in caplog.records if 'forced non-convergence' in r.getMessage()]
        assert messages == ['Mixed model for shifted: forced non-convergence']

    def test_other_warnings_are_reemitted(self, warning_fit, design, qc_table):
        data = design.assign(value=qc_table['shifted'])
        with pytest.warns(RuntimeWarning, match='unrelated numerical issue'):
            fit_mixed_model(data, 'value ~ C(Protocol)', 'Individual')


# ---------------------------------------------------------------------------
# perform_permanova
# ---------------------------------------------------------------------------

class TestPermanova:

    @pytest.fixture
    def clustered(self):
        rng = np.random.default_rng(3)
        points = np.vstack([rng.normal(0, 0.1, (5, 2)), rng.normal(5, 0.1, (5, 2))])
        ids = [f's{i}' for i in range(10)]
        diff = points[:, None, :] - points[None, :, :]
        dm = DistanceMatrix(np.sqrt((diff ** 2).sum(axis=2)), ids=ids)
        metadata = pd.DataFrame({'Protocol': ['A'] * 5 + ['B'] * 5,
                                 'Batch': ['x'] * 10,
                                 'Lonely': ['y'] * 9 + ['z']}, index=ids)
        return dm, metadata

    def test_separated_clusters(self, clustered):
        dm, metadata = clustered
        result = perform_permanova(dm, metadata, 'Protocol', permutations=199, seed=42)
        assert result['note'] == 'Successful test'
        assert result['p-value'] < 0.05
        assert 0.9 < result['R2'] <= 1.0
        assert result['sample size'] == 10
        assert result['number of groups'] == 2

    def test_reproducible_with_seed(self, clustered):
        dm, metadata = clustered
        first = perform_permanova(dm, metadata, 'Protocol', permutations=99, seed=1)
        second = perform_permanova(dm, metadata, 'Protocol', permutations=99, seed=1)
        assert first['p-value'] == second['p-value']

    def test_single_group(self, clustered):
        dm, metadata = clustered
        result = perform_permanova(dm, metadata, 'Batch')
        assert np.isnan(result['p-value'])
        assert 'Only one group' in result['note']

    def test_singleton_group(self, clustered):
        dm, metadata = clustered
        result = perform_permanova(dm, metadata, 'Lonely')
        assert 'fewer than 2 samples' in result['note']

    def test_too_few_samples(self, clustered):
        dm, metadata = clustered
        result = perform_permanova(dm, metadata.iloc[:4], 'Protocol')
        assert result['note'] == 'Insufficient samples for PERMANOVA'
        assert result['sample size'] == 4

    def test_missing_variable(self, clustered):
        dm, metadata = clustered
        with pytest.raises(ValueError):
            perform_permanova(dm, metadata, 'Site')
