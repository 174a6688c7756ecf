"""Heavy-label incorporation check for a fully labelled QC sample."""

import logging
from dataclasses import dataclass, field
from typing import List

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_MIN_INCORPORATION = 0.95


@dataclass
class IncorporationResult:
    """Per-peptide and per-protein heavy label incorporation."""
    peptide_incorporation: pd.DataFrame
    protein_incorporation: pd.Series
    median_incorporation: float
    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.warnings


def estimate_incorporation(
    peptides: pd.DataFrame,
    protein_col: str = 'master_protein_accessions',
    min_incorporation: float = DEFAULT_MIN_INCORPORATION,
) -> IncorporationResult:
    """
    Estimate heavy incorporation as heavy / (heavy + light) per peptide.

    Only peptides with a positive abundance in both channels are used. In a
    sample grown entirely on heavy medium, incorporation should be close to 1;
    a median below ``min_incorporation`` is reported as a warning.

    Args:
        peptides: Standardized peptide table with 'abundance_light' and 'abundance_heavy'
        protein_col: Column used to group peptides into proteins
        min_incorporation: Warning threshold for the median incorporation

    Returns:
        IncorporationResult
    """
    light = pd.to_numeric(peptides['abundance_light'], errors='coerce')
    heavy = pd.to_numeric(peptides['abundance_heavy'], errors='coerce')
    both = (light > 0) & (heavy > 0)

    per_peptide = peptides.loc[both, ['sequence', 'modifications', protein_col]].copy()
    per_peptide['incorporation'] = (heavy[both] / (heavy[both] + light[both])).to_numpy()
    per_peptide = per_peptide.reset_index(drop=True)

    per_protein = per_peptide.groupby(protein_col, sort=True)['incorporation'].median()
    median = float(np.median(per_peptide['incorporation'])) if len(per_peptide) else np.nan

    warnings = []
    if not np.isfinite(median):
        warnings.append("No peptides with both channels quantified; incorporation not estimated")
    elif median < min_incorporation:
        warnings.append(
            f"Median heavy incorporation {median:.3f} is below {min_incorporation:.2f}; "
            "labelling may be incomplete"
        )
    for w in warnings:
        logger.warning(w)

    logger.info(
        f"Incorporation from {len(per_peptide)} of {len(peptides)} peptides "
        f"({len(per_protein)} proteins): median {median:.3f}"
    )
    return IncorporationResult(
        peptide_incorporation=per_peptide,
        protein_incorporation=per_protein,
        median_incorporation=median,
        warnings=warnings,
    )
