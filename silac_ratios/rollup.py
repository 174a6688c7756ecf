"""
Peptide -> protein rollup of SILAC log2 ratios.

Steps:
1. Overwrite per-replicate protein assignments with the parsimony result
2. Keep only peptides with a finite ratio (both channels quantified)
3. Pivot to a (protein, sequence, modifications) x replicate matrix
4. Median per protein and replicate, ignoring missing peptides
5. Recompute per-protein metadata under an explicit aggregation policy

Protein-level metadata is never taken from an arbitrary first peptide.
Categorical provenance is summarized with 'any' semantics, e.g. a protein is
flagged as not directly matched in the control channel if ANY of its peptides
lacks a control PSM.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .data_io import ConfigurationError, sort_replicates
from .provenance import (
    CONTROL_MATCHED_ONLY,
    NEITHER_MATCHED,
    PROVENANCE_UNKNOWN,
    TREATMENT_MATCHED_ONLY,
)

logger = logging.getLogger(__name__)

PEPTIDE_INDEX = ['protein', 'sequence', 'modifications']

FLAG_COLUMNS = [
    'not_matched_treatment',
    'not_matched_control',
    'provenance_unknown',
]

AGGREGATORS: Dict[str, Callable[[pd.Series], object]] = {
    'any': lambda s: bool(s.fillna(False).astype(bool).any()),
    'all': lambda s: bool(s.fillna(False).astype(bool).all()),
    'median': lambda s: s.median(),
    'sum': lambda s: s.sum(),
    'count': lambda s: int(s.notna().sum()),
    'first': lambda s: s.iloc[0] if len(s) else np.nan,
}

DEFAULT_POLICY = {
    'not_matched_treatment': 'any',
    'not_matched_control': 'any',
    'provenance_unknown': 'any',
    'ratio': 'count',
}


@dataclass
class AggregationPolicy:
    """
    Explicit per-field aggregation used when summarizing peptides to proteins.

    Keys are peptide-level columns, values are names from AGGREGATORS or a
    callable taking a Series. Fields absent from the policy are not carried
    to protein level.
    """
    fields: Dict[str, Union[str, Callable]] = field(default_factory=lambda: dict(DEFAULT_POLICY))

    def __post_init__(self):
        for col, how in self.fields.items():
            if isinstance(how, str) and how not in AGGREGATORS:
                raise ConfigurationError(
                    f"Aggregation policy for {col!r}: unknown aggregator {how!r} "
                    f"(use one of {sorted(AGGREGATORS)})"
                )
            if not isinstance(how, str) and not callable(how):
                raise ConfigurationError(f"Aggregation policy for {col!r} must be a name or a callable")

    @classmethod
    def from_config(cls, config: Optional[dict]) -> 'AggregationPolicy':
        rollup_cfg = (config or {}).get('rollup', {}) or {}
        fields = dict(DEFAULT_POLICY)
        fields.update(rollup_cfg.get('aggregation_policy', {}) or {})
        return cls(fields=fields)

    def validate_columns(self, columns: Sequence[str]) -> None:
        missing = [c for c in self.fields if c not in columns]
        if missing:
            raise ConfigurationError(f"Aggregation policy refers to unknown columns: {missing}")

    def aggregator(self, col: str) -> Callable:
        how = self.fields[col]
        return AGGREGATORS[how] if isinstance(how, str) else how


@dataclass
class ProteinRollupResult:
    """Protein-level ratios and metadata."""
    protein_ratios: pd.DataFrame          # protein x replicate median log2 ratios
    peptide_counts: pd.DataFrame          # protein x replicate peptides contributing
    replicate_metadata: pd.DataFrame      # (protein, replicate) rows, policy-aggregated fields
    protein_summary: pd.DataFrame         # one row per protein
    peptide_matrix: pd.DataFrame          # (protein, sequence, modifications) x replicate
    n_unassigned: int = 0


def reassign_proteins(
    ratios: pd.DataFrame,
    assignment: Dict[str, str],
    sequence_col: str = 'sequence',
) -> pd.DataFrame:
    """
    Replace per-replicate protein accessions with the global assignment.

    Records whose sequence has no assignment are dropped.
    """
    out = ratios.copy()
    out['protein'] = out[sequence_col].map(assignment)
    unassigned = out['protein'].isna()
    if unassigned.any():
        logger.warning(f"Dropping {int(unassigned.sum())} records with no resolved protein")
    out = out.loc[~unassigned]
    if 'master_protein_accessions' in out.columns:
        n_changed = int((out['master_protein_accessions'].astype(str) != out['protein']).sum())
        logger.info(f"Protein assignment changed for {n_changed} of {len(out)} records")
    return out.reset_index(drop=True)


def filter_quantified(ratios: pd.DataFrame) -> pd.DataFrame:
    """Keep records with a finite ratio."""
    finite = np.isfinite(ratios['ratio'].to_numpy(dtype=float))
    logger.info(f"Keeping {int(finite.sum())} of {len(ratios)} records with both channels quantified")
    return ratios.loc[finite].reset_index(drop=True)


def add_provenance_flags(ratios: pd.DataFrame) -> pd.DataFrame:
    """Derive per-peptide boolean provenance flags from 'match_status'."""
    out = ratios.copy()
    status = out['match_status'].astype(str)
    out['not_matched_treatment'] = status.isin([CONTROL_MATCHED_ONLY, NEITHER_MATCHED])
    out['not_matched_control'] = status.isin([TREATMENT_MATCHED_ONLY, NEITHER_MATCHED])
    out['provenance_unknown'] = status == PROVENANCE_UNKNOWN
    return out


def pivot_peptide_ratios(
    ratios: pd.DataFrame,
    replicates: Optional[Sequence[Hashable]] = None,
) -> pd.DataFrame:
    """
    Pivot long ratio records into a peptide x replicate matrix.

    Every replicate becomes a column; peptides absent from a replicate hold
    NaN rather than being omitted.
    """
    if replicates is None:
        replicates = sort_replicates(ratios['replicate'].unique())

    duplicated = ratios.duplicated(PEPTIDE_INDEX + ['replicate'])
    if duplicated.any():
        logger.warning(
            f"{int(duplicated.sum())} duplicate peptide records within a replicate; using their median"
        )

    matrix = ratios.pivot_table(
        index=PEPTIDE_INDEX,
        columns='replicate',
        values='ratio',
        aggfunc='median',
    )
    matrix = matrix.reindex(columns=list(replicates))
    matrix = matrix.dropna(how='all')
    matrix.columns.name = 'replicate'
    return matrix


def rollup_median(peptide_matrix: pd.DataFrame) -> pd.DataFrame:
    """
    Median of peptide ratios per protein and replicate.

    Missing entries are ignored; a protein/replicate cell without any
    contributing peptide stays NaN.
    """
    return peptide_matrix.groupby(level='protein', sort=True).median()


def count_peptides(peptide_matrix: pd.DataFrame) -> pd.DataFrame:
    """Number of peptides contributing to each protein/replicate cell."""
    return peptide_matrix.notna().groupby(level='protein', sort=True).sum().astype(int)


def summarize_protein_metadata(
    ratios: pd.DataFrame,
    policy: Optional[AggregationPolicy] = None,
) -> pd.DataFrame:
    """
    Aggregate peptide-level fields to (protein, replicate) under an explicit policy.

    Args:
        ratios: Quantified ratio records with provenance flags
        policy: Per-field aggregation policy (defaults to DEFAULT_POLICY)

    Returns:
        DataFrame indexed by (protein, replicate), one column per policy field
    """
    policy = policy or AggregationPolicy()
    policy.validate_columns(list(ratios.columns))

    grouped = ratios.groupby(['protein', 'replicate'], sort=True)
    summary = pd.DataFrame({
        col: grouped[col].agg(policy.aggregator(col))
        for col in policy.fields
    })
    if 'ratio' in summary.columns and policy.fields.get('ratio') == 'count':
        summary = summary.rename(columns={'ratio': 'n_peptides'})
    return summary


def _match_status_summary(row: pd.Series) -> str:
    flags = []
    if row.get('any_not_matched_treatment', False):
        flags.append('treatment_not_matched')
    if row.get('any_not_matched_control', False):
        flags.append('control_not_matched')
    if row.get('any_provenance_unknown', False):
        flags.append('provenance_unknown')
    return ';'.join(flags) if flags else 'all_matched'


def summarize_proteins(
    replicate_metadata: pd.DataFrame,
    peptide_counts: pd.DataFrame,
) -> pd.DataFrame:
    """Collapse (protein, replicate) metadata to one row per protein."""
    counts = peptide_counts.where(peptide_counts > 0)
    summary = pd.DataFrame(index=peptide_counts.index)
    summary['min_peptide_count'] = counts.min(axis=1).fillna(0).astype(int)
    summary['n_replicates'] = (peptide_counts > 0).sum(axis=1).astype(int)

    for col in FLAG_COLUMNS:
        if col in replicate_metadata.columns:
            summary[f'any_{col}'] = (
                replicate_metadata[col].astype(bool).groupby(level='protein').any()
                .reindex(summary.index, fill_value=False)
            )

    summary['match_status_summary'] = [_match_status_summary(row) for _, row in summary.iterrows()]
    return summary


def rollup_to_proteins(
    ratios: pd.DataFrame,
    assignment: Dict[str, str],
    replicates: Optional[Sequence[Hashable]] = None,
    policy: Optional[AggregationPolicy] = None,
) -> ProteinRollupResult:
    """
    Aggregate peptide log2 ratios to protein level.

    Args:
        ratios: Ratio records with 'match_status' (output of merge_provenance)
        assignment: sequence -> protein accession from parsimony
        replicates: Replicate order for matrix columns
        policy: Aggregation policy for peptide metadata

    Returns:
        ProteinRollupResult
    """
    n_before = len(ratios)
    assigned = reassign_proteins(ratios, assignment)
    n_unassigned = n_before - len(assigned)

    quantified = add_provenance_flags(filter_quantified(assigned))

    peptide_matrix = pivot_peptide_ratios(quantified, replicates)
    protein_ratios = rollup_median(peptide_matrix)
    peptide_counts = count_peptides(peptide_matrix)

    # recomputed from the pivot input, never carried from the peptide rows
    replicate_metadata = summarize_protein_metadata(quantified, policy)
    protein_summary = summarize_proteins(replicate_metadata, peptide_counts)

    logger.info(
        f"Rolled up {len(peptide_matrix)} peptides to {len(protein_ratios)} proteins "
        f"across {protein_ratios.shape[1]} replicates"
    )

    return ProteinRollupResult(
        protein_ratios=protein_ratios,
        peptide_counts=peptide_counts,
        replicate_metadata=replicate_metadata,
        protein_summary=protein_summary,
        peptide_matrix=peptide_matrix,
        n_unassigned=n_unassigned,
    )
