"""End-to-end tests of the SILAC ratio pipeline."""

import numpy as np
import pytest

from silac_ratios.data_io import ConfigurationError
from silac_ratios.pipeline import PipelineResult, run_from_tables, run_pipeline

from conftest import N_PEPTIDES, N_PROTEINS, PROTEIN_EFFECTS, REPLICATES


def _expected_effects():
    return {f'P{i + 1:05d}': effect for i, effect in enumerate(PROTEIN_EFFECTS)}


class TestRunFromTables:
    """Tests for the in-memory pipeline."""

    def test_results_table(self, silac_tables, silac_config):
        """Test one result row per protein, sorted by adjusted p-value."""
        peptide_tables, psm_tables = silac_tables

        result = run_from_tables(peptide_tables, psm_tables, config=silac_config)

        assert isinstance(result, PipelineResult)
        assert len(result.results) == N_PROTEINS
        assert result.results['p_adj'].notna().all()
        assert result.results['p_adj'].is_monotonic_increasing
        assert result.replicates == REPLICATES

    def test_effect_signs_follow_label_swap(self, silac_tables, silac_config):
        """Test that treatment/control ratios recover the simulated effects in every replicate."""
        peptide_tables, psm_tables = silac_tables

        result = run_from_tables(peptide_tables, psm_tables, config=silac_config)

        for protein, effect in _expected_effects().items():
            if abs(effect) < 0.5:
                continue
            assert np.sign(result.results.loc[protein, 'log_fc']) == np.sign(effect)
            row = result.rollup.protein_ratios.loc[protein]
            assert (np.sign(row) == np.sign(effect)).all()

    def test_large_effects_significant(self, silac_tables, silac_config):
        """Test that the strongest changes are called at 5% FDR."""
        peptide_tables, psm_tables = silac_tables

        result = run_from_tables(peptide_tables, psm_tables, config=silac_config)

        for protein in ['P00001', 'P00002', 'P00003']:
            assert result.results.loc[protein, 'p_adj'] < 0.05

    def test_ratio_records(self, silac_tables, silac_config):
        """Test that every peptide record carries missingness and match status."""
        peptide_tables, psm_tables = silac_tables

        result = run_from_tables(peptide_tables, psm_tables, config=silac_config)

        assert len(result.ratios) == N_PEPTIDES * len(REPLICATES)
        assert result.ratios['missingness'].notna().all()
        assert result.ratios['match_status'].notna().all()
        finite = np.isfinite(result.ratios['ratio'].to_numpy(dtype=float))
        assert (finite == (result.ratios['missingness'] == 'both_present').to_numpy()).all()

    def test_missingness_summary_per_replicate(self, silac_tables, silac_config):
        """Test that the missingness tally covers every record of every replicate."""
        peptide_tables, psm_tables = silac_tables

        result = run_from_tables(peptide_tables, psm_tables, config=silac_config)

        assert list(result.missingness_summary.index) == REPLICATES
        assert (result.missingness_summary.sum(axis=1) == N_PEPTIDES).all()

    def test_method_log(self, silac_tables, silac_config):
        """Test that every stage is recorded."""
        peptide_tables, psm_tables = silac_tables

        result = run_from_tables(peptide_tables, psm_tables, config=silac_config)

        log = ' '.join(result.method_log)
        for stage in ['Condition annotation', 'Ratios', 'Provenance', 'Parsimony',
                      'Protein rollup', 'Differential abundance']:
            assert stage in log

    def test_string_replicate_ids(self, silac_tables, silac_config):
        """Test that replicate ids given as strings match the integer label-swap table."""
        peptide_tables, psm_tables = silac_tables
        peptide_tables = {str(k): v for k, v in peptide_tables.items()}
        psm_tables = {str(k): v for k, v in psm_tables.items()}

        result = run_from_tables(peptide_tables, psm_tables, config=silac_config)

        assert result.replicates == REPLICATES

    def test_mixed_replicate_ids(self, silac_tables, silac_config):
        """Test integer and non-digit string replicate ids in one run."""
        peptide_tables, psm_tables = silac_tables
        peptide_tables['B4'] = peptide_tables.pop(4).assign(replicate='B4')
        psm_tables['B4'] = psm_tables.pop(4).assign(replicate='B4')
        config = dict(silac_config, conditions={'label_swap': {1: 'heavy', 2: 'heavy', 3: 'light', 'B4': 'light'}})

        result = run_from_tables(peptide_tables, psm_tables, config=config)

        assert result.replicates == [1, 2, 3, 'B4']
        assert len(result.results) == N_PROTEINS

    def test_unknown_replicate_rejected(self, silac_tables, silac_config):
        """Test that a replicate absent from the label-swap table is an error."""
        peptide_tables, psm_tables = silac_tables
        peptide_tables[5] = peptide_tables[1].assign(replicate=5)
        psm_tables[5] = psm_tables[1].assign(replicate=5)

        with pytest.raises(ConfigurationError, match='5'):
            run_from_tables(peptide_tables, psm_tables, config=silac_config)

    def test_without_psms(self, silac_tables, silac_config):
        """Test that missing PSM tables mark provenance as unknown, not as failures."""
        peptide_tables, _ = silac_tables

        result = run_from_tables(peptide_tables, {rep: None for rep in peptide_tables}, config=silac_config)

        assert (result.ratios['match_status'] == 'provenance_unknown').all()
        assert len(result.results) == N_PROTEINS
        assert any('provenance_unknown' in w for w in result.warnings)


class TestRunPipeline:
    """Tests for the file-based pipeline."""

    def test_from_files(self, silac_files, silac_config):
        """Test the full run from Proteome Discoverer style exports."""
        result = run_pipeline(silac_files, config=silac_config, max_workers=2)

        assert len(result.results) == N_PROTEINS
        assert result.results['p_adj'].notna().all()
        assert set(result.filter_summaries) == {f'{rep}/{level}' for rep in REPLICATES
                                                for level in ('peptide', 'psm')}
        assert result.method_log[0].startswith('Loaded 4 replicates')

    def test_unknown_replicate_fails_before_loading(self, silac_files, silac_config):
        """Test that the label-swap table is checked before any file is read."""
        files = dict(silac_files)
        files[5] = {'peptides': 'does_not_exist.txt', 'psms': 'does_not_exist.txt'}

        with pytest.raises(ConfigurationError):
            run_pipeline(files, config=silac_config)

    def test_no_replicates(self, silac_config):
        """Test that an empty replicate set is rejected."""
        with pytest.raises(ConfigurationError):
            run_pipeline({}, config=silac_config)
