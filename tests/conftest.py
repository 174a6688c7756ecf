"""Shared synthetic SILAC data for the test-suite."""

import numpy as np
import pandas as pd
import pytest

from silac_ratios.conditions import DEFAULT_LABEL_SWAP

N_PROTEINS = 10
N_PEPTIDES = 100
REPLICATES = [1, 2, 3, 4]

# log2 fold change per protein; two proteins unchanged
PROTEIN_EFFECTS = np.array([2.0, 1.5, -1.5, 1.0, -1.0, 0.8, -0.8, 0.5, 0.0, 0.0])

PD_COLUMNS = {
    'sequence': 'Sequence',
    'modifications': 'Modifications',
    'master_protein_accessions': 'Master Protein Accessions',
    'n_protein_groups': 'Number of Protein Groups',
    'quan_info': 'Quan Info',
    'quan_channel': 'Quan Channel',
    'abundance_light': 'Abundance Light Sample',
    'abundance_heavy': 'Abundance Heavy Sample',
}

HEAVY_TOKEN = '1xLabel:13C(6)15N(2) [K{pos}]'


def _sequence(i: int) -> str:
    letters = 'ACDEFGHILMNPQSTVWY'
    return f'AS{letters[i // len(letters)]}{letters[i % len(letters)]}LPEVK'


def make_silac_tables(seed: int = 0, missing_fraction: float = 0.05):
    """Four replicates of 100 peptides over 10 proteins, standardized column names.

    Returns:
        Tuple of (peptide tables, PSM tables), both dicts keyed by replicate
    """
    rng = np.random.default_rng(seed)

    peptide_ids = np.arange(N_PEPTIDES)
    proteins = np.array([f'P{(i % N_PROTEINS) + 1:05d}' for i in peptide_ids])
    sequences = [_sequence(i) for i in peptide_ids]
    modifications = ['1xCarbamidomethyl [C3]' if i % 5 == 0 else '' for i in peptide_ids]
    base = rng.normal(22, 1.5, N_PEPTIDES)
    effects = PROTEIN_EFFECTS[peptide_ids % N_PROTEINS]

    peptide_tables = {}
    psm_tables = {}
    for rep in REPLICATES:
        control = base + rng.normal(0, 0.2, N_PEPTIDES)
        treatment = control + effects + rng.normal(0, 0.3, N_PEPTIDES)
        treatment_heavy = DEFAULT_LABEL_SWAP[rep] == 'heavy'
        heavy = np.where(treatment_heavy, treatment, control)
        light = np.where(treatment_heavy, control, treatment)

        heavy_int = 2.0 ** heavy
        light_int = 2.0 ** light
        drop = rng.random(N_PEPTIDES) < missing_fraction
        drop_heavy = drop & (rng.random(N_PEPTIDES) < 0.5)
        heavy_int[drop_heavy] = np.nan
        light_int[drop & ~drop_heavy] = np.nan

        peptide_tables[rep] = pd.DataFrame({
            'sequence': sequences,
            'modifications': modifications,
            'master_protein_accessions': proteins,
            'n_protein_groups': 1,
            'quan_info': '',
            'abundance_light': light_int,
            'abundance_heavy': heavy_int,
            'replicate': rep,
        })

        rows = []
        for i in peptide_ids:
            for channel, p_seen in (('Heavy', 0.9), ('Light', 0.85)):
                if rng.random() < p_seen:
                    mods = [m for m in [modifications[i]] if m]
                    if channel == 'Heavy':
                        mods.append(HEAVY_TOKEN.format(pos=len(sequences[i])))
                    rows.append({
                        'sequence': sequences[i],
                        'modifications': '; '.join(mods),
                        'master_protein_accessions': proteins[i],
                        'quan_channel': channel,
                        'replicate': rep,
                    })
        psm_tables[rep] = pd.DataFrame(rows)

    return peptide_tables, psm_tables


@pytest.fixture
def silac_tables():
    """Standardized peptide and PSM tables keyed by replicate."""
    return make_silac_tables(seed=0)


@pytest.fixture
def silac_config():
    """Minimal pipeline configuration with the reference label-swap table."""
    return {
        'conditions': {'label_swap': dict(DEFAULT_LABEL_SWAP)},
        'differential': {'min_presence_fraction': 0.5, 'lowess_frac': 0.75, 'fdr_method': 'fdr_bh'},
    }


@pytest.fixture
def silac_files(tmp_path, silac_tables):
    """The synthetic tables written as Proteome Discoverer style TSV exports."""
    peptide_tables, psm_tables = silac_tables
    files = {}
    for rep in REPLICATES:
        pep_path = tmp_path / f'rep{rep}_PeptideGroups.txt'
        psm_path = tmp_path / f'rep{rep}_PSMs.txt'
        peptide_tables[rep].drop(columns='replicate').rename(columns=PD_COLUMNS).to_csv(
            pep_path, sep='\t', index=False
        )
        psm_tables[rep].drop(columns='replicate').rename(columns=PD_COLUMNS).to_csv(
            psm_path, sep='\t', index=False
        )
        files[rep] = {'peptides': str(pep_path), 'psms': str(psm_path)}
    return files
