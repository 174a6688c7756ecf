"""Tests for the differential abundance engine."""

import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma
from scipy.stats import ttest_1samp

from silac_ratios.differential import (
    LinearModelFitter,
    adjust_pvalues,
    filter_by_presence,
    fit_fdist,
    fit_fdist_trend,
    run_differential_abundance,
    squeeze_variance,
    trigamma_inverse,
)


@pytest.fixture
def protein_data():
    """30 proteins x 4 replicates; the first 5 shifted by +3."""
    rng = np.random.default_rng(11)
    n = 30
    counts = np.repeat([1, 2, 4, 8, 16], n // 5)
    sd = 0.5 / np.sqrt(counts)
    values = rng.normal(0, 1, size=(n, 4)) * sd[:, None]
    values[:5] += 3.0
    proteins = [f'P{i:03d}' for i in range(n)]
    ratios = pd.DataFrame(values, index=pd.Index(proteins, name='protein'), columns=[1, 2, 3, 4])
    summary = pd.DataFrame({
        'min_peptide_count': counts,
        'match_status_summary': 'all_matched',
    }, index=ratios.index)
    return ratios, summary


class TestPresenceFilter:
    """Tests for the replicate presence filter."""

    def test_half_of_replicates(self):
        """Test that proteins with data in at least half the replicates pass."""
        matrix = pd.DataFrame({
            1: [1.0, 1.0, np.nan],
            2: [1.0, np.nan, np.nan],
            3: [np.nan, np.nan, np.nan],
            4: [1.0, np.nan, 1.0],
        }, index=['A', 'B', 'C'])

        kept = filter_by_presence(matrix, min_fraction=0.5)

        assert list(kept.index) == ['A']

    def test_stricter_fraction(self):
        """Test a configurable threshold."""
        matrix = pd.DataFrame({1: [1.0, 1.0], 2: [1.0, 1.0], 3: [1.0, np.nan], 4: [1.0, 1.0]},
                              index=['A', 'B'])

        assert list(filter_by_presence(matrix, min_fraction=1.0).index) == ['A']
        assert list(filter_by_presence(matrix, min_fraction=0.75).index) == ['A', 'B']

    def test_at_least_two_observations(self):
        """Test that one observation never passes, whatever the fraction."""
        matrix = pd.DataFrame({1: [1.0], 2: [np.nan]}, index=['A'])

        assert filter_by_presence(matrix, min_fraction=0.5).empty

    def test_invalid_fraction(self):
        """Test that fractions outside (0, 1] are rejected."""
        with pytest.raises(ValueError):
            filter_by_presence(pd.DataFrame({1: [1.0]}), min_fraction=0)


class TestLinearModelFitter:
    """Tests for per-protein least squares."""

    def test_intercept_only_is_mean(self):
        """Test that the coefficient is the mean and sigma2 the sample variance."""
        y = np.array([[1.0, 2.0, 3.0, 6.0]])

        fit = LinearModelFitter(y).fit()

        assert fit.coefficients[0, 0] == pytest.approx(3.0)
        assert fit.sigma2[0] == pytest.approx(np.var(y, ddof=1))
        assert fit.df_residual[0] == 3
        assert fit.stdev_unscaled[0, 0] == pytest.approx(0.5)

    def test_missing_values_masked(self):
        """Test that NaN replicates are left out of each protein's fit."""
        y = np.array([[1.0, np.nan, 3.0, np.nan], [2.0, 2.0, 2.0, 2.0]])

        fit = LinearModelFitter(y).fit()

        assert fit.coefficients[0, 0] == pytest.approx(2.0)
        assert fit.df_residual.tolist() == [1, 3]
        assert fit.sigma2[1] == 0.0

    def test_single_observation_has_no_variance(self):
        """Test that one value gives a coefficient but no residual variance."""
        fit = LinearModelFitter(np.array([[1.5, np.nan, np.nan]])).fit()

        assert fit.coefficients[0, 0] == 1.5
        assert fit.df_residual[0] == 0
        assert np.isnan(fit.sigma2[0])

    def test_design_dimension_mismatch(self):
        """Test that a design with the wrong number of rows is rejected."""
        with pytest.raises(ValueError, match='Design'):
            LinearModelFitter(np.ones((2, 4)), np.ones((3, 1)))

    def test_matches_one_sample_t_test(self):
        """Test that the unmoderated t-statistic equals a one-sample t-test."""
        y = np.array([0.3, 0.9, 0.4, 1.1])

        fit = LinearModelFitter(y[None, :]).fit()
        t = fit.coefficients[0, 0] / (fit.stdev_unscaled[0, 0] * np.sqrt(fit.sigma2[0]))

        assert t == pytest.approx(ttest_1samp(y, 0).statistic)


class TestEmpiricalBayesPrior:
    """Tests for the scaled-F prior."""

    def test_trigamma_inverse(self):
        """Test that trigamma_inverse inverts trigamma."""
        for x in [0.1, 1.0, 5.0, 50.0]:
            assert trigamma_inverse(float(polygamma(1, x))) == pytest.approx(x, rel=1e-6)

    def test_recovers_prior_from_scaled_chisq(self):
        """Test d0 and s2_prior on variances drawn from the model."""
        rng = np.random.default_rng(3)
        n, d, d0, s0 = 5000, 3, 6.0, 0.25
        sigma2 = s0 * d0 / rng.chisquare(d0, n)
        s2 = sigma2 * rng.chisquare(d, n) / d

        s2_prior, d0_hat = fit_fdist(s2, np.full(n, d))

        assert d0_hat == pytest.approx(d0, rel=0.3)
        assert s2_prior == pytest.approx(s0, rel=0.15)

    def test_equal_variances_give_infinite_d0(self):
        """Test that variances explained by sampling error alone give d0 = inf."""
        rng = np.random.default_rng(4)
        s2 = 0.5 * rng.chisquare(3, 20000) / 3

        _, d0 = fit_fdist(s2, 3)

        assert d0 > 20

    def test_too_few_variances(self):
        """Test that fewer than two usable variances fit no prior."""
        s2_prior, d0 = fit_fdist(np.array([0.1, np.nan]), np.array([3, 0]))

        assert np.isnan(s2_prior)
        assert d0 == 0.0

    def test_trend_follows_covariate(self):
        """Test that the trended prior decreases with peptide count."""
        rng = np.random.default_rng(5)
        counts = np.repeat([1, 2, 4, 8, 16, 32], 200)
        s2 = (1.0 / counts) * rng.chisquare(3, counts.size) / 3

        s2_prior, d0 = fit_fdist_trend(s2, np.full(counts.size, 3.0), np.log2(counts))

        assert s2_prior[counts == 1].mean() > 5 * s2_prior[counts == 32].mean()
        assert d0 > 0

    def test_constant_covariate_falls_back(self):
        """Test that equal peptide counts give a constant prior."""
        rng = np.random.default_rng(6)
        s2 = rng.chisquare(3, 100) / 3

        s2_prior, _ = fit_fdist_trend(s2, np.full(100, 3.0), np.zeros(100))

        assert np.allclose(s2_prior, s2_prior[0])


class TestSqueezeVariance:
    """Tests for posterior variances."""

    def test_weighted_average(self):
        """Test the d0/df weighting."""
        post = squeeze_variance(np.array([1.0, 4.0]), np.array([3.0, 3.0]), 2.0, 3.0)

        assert post.tolist() == [1.5, 3.0]

    def test_infinite_d0_gives_prior(self):
        """Test that d0 = inf replaces every variance by the prior."""
        post = squeeze_variance(np.array([1.0, 4.0]), np.array([3.0, 3.0]), np.array([2.0, 0.5]), np.inf)

        assert post.tolist() == [2.0, 0.5]

    def test_no_prior_keeps_variances(self):
        """Test that without a prior the raw variances are returned."""
        post = squeeze_variance(np.array([1.0, 4.0]), np.array([3.0, 3.0]), np.nan, 0.0)

        assert post.tolist() == [1.0, 4.0]


class TestAdjustPvalues:
    """Tests for multiple testing correction."""

    def test_benjamini_hochberg(self):
        """Test BH on a small vector."""
        adjusted = adjust_pvalues(np.array([0.01, 0.04, 0.03, 0.5]))

        assert adjusted == pytest.approx([0.04, 0.16 / 3, 0.16 / 3, 0.5])

    def test_nan_preserved(self):
        """Test that NaN p-values stay NaN and do not count as tests."""
        adjusted = adjust_pvalues(np.array([0.01, np.nan, 0.02]))

        assert np.isnan(adjusted[1])
        assert adjusted[0] == pytest.approx(0.02)
        assert adjusted[2] == pytest.approx(0.02)


class TestRunDifferentialAbundance:
    """Tests for the full engine."""

    def test_columns_and_sorting(self, protein_data):
        """Test result columns and ascending p_adj order."""
        ratios, summary = protein_data

        results, prior = run_differential_abundance(ratios, summary)

        assert list(results.columns) == [
            'log_fc', 't', 'p_raw', 'p_ebayes', 'p_shrunk', 'p_adj',
            'min_peptide_count', 'match_status_summary', 'n_replicates',
        ]
        assert results['p_adj'].is_monotonic_increasing
        assert len(results) == 30
        assert prior.n_tested == 30

    def test_shifted_proteins_detected(self, protein_data):
        """Test that the shifted proteins are significant with positive effects."""
        ratios, summary = protein_data

        results, _ = run_differential_abundance(ratios, summary)

        shifted = [f'P{i:03d}' for i in range(5)]
        assert (results.loc[shifted, 'log_fc'] > 1.0).all()
        assert (results.loc[shifted, 'p_adj'] < 0.05).all()
        assert set(results.index[:5]) == set(shifted)

    def test_sign_convention(self, protein_data):
        """Test that negative ratios give negative effect sizes."""
        ratios, summary = protein_data

        results, _ = run_differential_abundance(-ratios, summary)

        assert (results.loc[[f'P{i:03d}' for i in range(5)], 'log_fc'] < -1.0).all()

    def test_filtered_proteins_excluded(self, protein_data):
        """Test that proteins failing the presence filter are not tested."""
        ratios, summary = protein_data
        ratios = ratios.copy()
        ratios.loc['P029', [1, 2, 3]] = np.nan

        results, _ = run_differential_abundance(ratios, summary)

        assert 'P029' not in results.index
        assert results['p_adj'].notna().all()

    def test_pvalues_in_range(self, protein_data):
        """Test that every p-value lies in [0, 1]."""
        ratios, summary = protein_data

        results, _ = run_differential_abundance(ratios, summary)

        for col in ['p_raw', 'p_ebayes', 'p_shrunk', 'p_adj']:
            assert results[col].between(0, 1).all()
