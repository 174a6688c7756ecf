"""Tests for ratio and missingness calculation."""

import numpy as np
import pandas as pd
import pytest

from silac_ratios.ratios import (
    BOTH_PRESENT,
    CONTROL_ONLY,
    TREATMENT_ONLY,
    check_ratio_invariant,
    classify_missingness,
    compute_ratios,
    summarize_missingness,
)


@pytest.fixture
def condition_table():
    return pd.DataFrame({
        'sequence': ['A', 'B', 'C', 'D', 'E'],
        'replicate': [1, 1, 1, 2, 2],
        'treatment': [20.0, 18.5, np.nan, np.nan, 21.25],
        'control': [19.0, 19.5, 22.0, np.nan, np.nan],
    })


class TestClassifyMissingness:
    """Tests for missingness classes."""

    def test_all_classes(self, condition_table):
        """Test that each channel combination gets its class."""
        result = classify_missingness(condition_table['treatment'], condition_table['control'])

        assert result.tolist() == [BOTH_PRESENT, BOTH_PRESENT, CONTROL_ONLY, 'both_missing', TREATMENT_ONLY]

    def test_infinite_counts_as_missing(self):
        """Test that -inf (log of zero) is not a present value."""
        result = classify_missingness(pd.Series([-np.inf]), pd.Series([1.0]))

        assert result.tolist() == [CONTROL_ONLY]


class TestComputeRatios:
    """Tests for log2 ratio computation."""

    def test_ratio_is_exact_difference(self, condition_table):
        """Test ratio == treatment - control when both channels present."""
        result = compute_ratios(condition_table)
        both = result[result['missingness'] == BOTH_PRESENT]

        assert both['ratio'].tolist() == [1.0, -1.0]
        assert (both['ratio'] == both['treatment'] - both['control']).all()

    def test_single_channel_is_nan(self, condition_table):
        """Test that one-sided records keep a NaN ratio and name the present side."""
        result = compute_ratios(condition_table).set_index('sequence')

        assert np.isnan(result.loc['C', 'ratio'])
        assert result.loc['C', 'missingness'] == CONTROL_ONLY
        assert np.isnan(result.loc['E', 'ratio'])
        assert result.loc['E', 'missingness'] == TREATMENT_ONLY

    def test_both_missing_dropped(self, condition_table):
        """Test that records with neither channel are removed."""
        result = compute_ratios(condition_table)

        assert 'D' not in result['sequence'].tolist()
        assert len(result) == 4

    def test_input_not_modified(self, condition_table):
        """Test that a new table is returned."""
        before = condition_table.copy()
        compute_ratios(condition_table)
        pd.testing.assert_frame_equal(condition_table, before)

    def test_requires_condition_columns(self):
        """Test that missing treatment/control columns are reported."""
        with pytest.raises(ValueError, match='treatment'):
            compute_ratios(pd.DataFrame({'control': [1.0]}))

    def test_random_tables_satisfy_invariant(self):
        """Test the finite-iff-both-present invariant on random data."""
        rng = np.random.default_rng(7)
        values = rng.normal(20, 2, size=(500, 2))
        values[rng.random((500, 2)) < 0.2] = np.nan
        df = pd.DataFrame(values, columns=['treatment', 'control'])

        result = compute_ratios(df)

        finite = np.isfinite(result['ratio'])
        assert (finite == (result['missingness'] == BOTH_PRESENT)).all()


class TestRatioInvariant:
    """Tests for the checked invariant."""

    def test_violation_raises(self):
        """Test that a finite ratio on a one-sided record is rejected."""
        bad = pd.DataFrame({'ratio': [1.0], 'missingness': [TREATMENT_ONLY]})

        with pytest.raises(ValueError, match='invariant'):
            check_ratio_invariant(bad)

    def test_nan_on_both_present_raises(self):
        """Test that a NaN ratio on a both-present record is rejected."""
        bad = pd.DataFrame({'ratio': [np.nan], 'missingness': [BOTH_PRESENT]})

        with pytest.raises(ValueError):
            check_ratio_invariant(bad)


class TestSummarizeMissingness:
    """Tests for missingness tallies."""

    def test_counts_per_replicate(self, condition_table):
        """Test counts include every class, zero-filled."""
        summary = summarize_missingness(compute_ratios(condition_table))

        assert summary.loc[1, BOTH_PRESENT] == 2
        assert summary.loc[1, CONTROL_ONLY] == 1
        assert summary.loc[2, TREATMENT_ONLY] == 1
        assert summary.loc[2, BOTH_PRESENT] == 0
        assert summary.loc[2, 'both_missing'] == 0
