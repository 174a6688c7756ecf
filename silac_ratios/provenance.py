"""
Spectrum-match provenance for SILAC peptide ratios.

A SILAC pair can be quantified even when only one isotope channel was
identified by a PSM; the partner is then located by its expected mass shift.
This module joins the PSM-level table onto the ratio table and records, per
peptide and replicate, which condition channels were directly matched.

Join keys are normalized on both sides: sequences are upper-cased and
label-specific modification tokens (e.g. ``1xLabel:13C(6)15N(2) [K8]``) are
removed, since the heavy and light PSMs of one peptide differ only in those.
"""

import logging
import re
from typing import Dict, Hashable, Iterable, Optional

import numpy as np
import pandas as pd

from .conditions import LabelSwap

logger = logging.getLogger(__name__)

BOTH_MATCHED = 'both_matched'
TREATMENT_MATCHED_ONLY = 'treatment_matched_only'
CONTROL_MATCHED_ONLY = 'control_matched_only'
NEITHER_MATCHED = 'neither_matched'
PROVENANCE_UNKNOWN = 'provenance_unknown'

MATCH_STATUSES = [
    BOTH_MATCHED,
    TREATMENT_MATCHED_ONLY,
    CONTROL_MATCHED_ONLY,
    NEITHER_MATCHED,
    PROVENANCE_UNKNOWN,
]

DEFAULT_LABEL_PATTERNS = ['Label:']

KEY_COLUMNS = ['sequence_key', 'modifications_key', 'replicate']

# ';' not inside a [...] site list
TOKEN_SEPARATOR = re.compile(r';(?![^\[]*\])')


def normalize_sequence(sequences: pd.Series) -> pd.Series:
    """Upper-case and strip peptide sequences."""
    return sequences.fillna('').astype(str).str.strip().str.upper()


def strip_label_modifications(
    modifications: Optional[str],
    patterns: Optional[Iterable[str]] = None,
) -> str:
    """
    Remove label-specific tokens from a modification string.

    Tokens are separated by ';' outside brackets, so a multi-site token
    such as '2xLabel:13C(6)15N(2) [K3; K6]' stays whole. Remaining tokens
    are whitespace-trimmed, sorted and re-joined with '; ' so that
    equivalent strings compare equal.
    """
    if modifications is None or (isinstance(modifications, float) and np.isnan(modifications)):
        return ''
    regexes = [re.compile(p) for p in (patterns or DEFAULT_LABEL_PATTERNS)]

    tokens = [t.strip() for t in TOKEN_SEPARATOR.split(str(modifications))]
    kept = [t for t in tokens if t and not any(r.search(t) for r in regexes)]
    return '; '.join(sorted(kept))


def add_join_keys(
    df: pd.DataFrame,
    patterns: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """Return a copy with normalized 'sequence_key' and 'modifications_key'."""
    patterns = list(patterns or DEFAULT_LABEL_PATTERNS)
    out = df.copy()
    out['sequence_key'] = normalize_sequence(out['sequence'])
    out['modifications_key'] = out['modifications'].map(
        lambda m: strip_label_modifications(m, patterns)
    )
    return out


def psm_match_flags(
    psms: pd.DataFrame,
    replicate: Hashable,
    label_swap: LabelSwap,
    patterns: Optional[Iterable[str]] = None,
    channel_col: str = 'quan_channel',
) -> pd.DataFrame:
    """
    Per normalized peptide key, record whether a PSM was seen in each condition channel.

    Args:
        psms: PSM-level table for one replicate
        replicate: Replicate identifier (must be mapped in label_swap)
        label_swap: Replicate -> treatment channel table
        patterns: Regexes identifying label-specific modification tokens
        channel_col: Column naming the isotope channel of each PSM

    Returns:
        DataFrame keyed by KEY_COLUMNS with boolean 'matched_treatment'
        and 'matched_control' columns
    """
    treatment_channel = label_swap.treatment_for(replicate)
    control_channel = label_swap.control_for(replicate)

    keyed = add_join_keys(psms, patterns)
    channel = keyed[channel_col].fillna('').astype(str).str.strip().str.lower()

    known = channel.isin([treatment_channel, control_channel])
    if (~known).any():
        logger.debug(
            f"Replicate {replicate!r}: ignoring {int((~known).sum())} PSMs without a light/heavy channel"
        )
    keyed = keyed.loc[known].assign(
        matched_treatment=(channel[known] == treatment_channel).to_numpy(),
        matched_control=(channel[known] == control_channel).to_numpy(),
    )

    flags = (
        keyed.groupby(['sequence_key', 'modifications_key'], sort=True)[['matched_treatment', 'matched_control']]
        .any()
        .reset_index()
    )
    flags['replicate'] = replicate
    return flags[KEY_COLUMNS + ['matched_treatment', 'matched_control']]


def build_match_flags(
    psm_tables: Dict[Hashable, pd.DataFrame],
    label_swap: LabelSwap,
    patterns: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """Concatenate match flags for every replicate, in replicate order."""
    frames = [
        psm_match_flags(table, rep, label_swap, patterns)
        for rep, table in psm_tables.items()
        if table is not None
    ]
    if not frames:
        return pd.DataFrame(columns=KEY_COLUMNS + ['matched_treatment', 'matched_control'])
    return pd.concat(frames, ignore_index=True)


def _status_from_flags(matched_treatment: np.ndarray, matched_control: np.ndarray, found: np.ndarray) -> np.ndarray:
    return np.select(
        [
            ~found,
            matched_treatment & matched_control,
            matched_treatment & ~matched_control,
            ~matched_treatment & matched_control,
        ],
        [PROVENANCE_UNKNOWN, BOTH_MATCHED, TREATMENT_MATCHED_ONLY, CONTROL_MATCHED_ONLY],
        default=NEITHER_MATCHED,
    )


def merge_provenance(
    ratios: pd.DataFrame,
    match_flags: pd.DataFrame,
    patterns: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """
    Attach a categorical 'match_status' to every ratio record.

    Records without a PSM-level counterpart get PROVENANCE_UNKNOWN rather than
    being dropped or assigned one of the matched categories. Keys whose PSMs
    match neither channel get NEITHER_MATCHED and are reported as a
    data-quality warning.

    Args:
        ratios: Output of compute_ratios
        match_flags: Output of build_match_flags
        patterns: Regexes identifying label-specific modification tokens

    Returns:
        New DataFrame with 'matched_treatment', 'matched_control' and
        'match_status' columns
    """
    keyed = add_join_keys(ratios, patterns)

    if match_flags.empty:
        merged = keyed.assign(matched_treatment=pd.NA, matched_control=pd.NA)
        found = np.zeros(len(merged), dtype=bool)
    else:
        flags = match_flags.copy()
        if flags.duplicated(KEY_COLUMNS).any():
            flags = (
                flags.groupby(KEY_COLUMNS, sort=False)[['matched_treatment', 'matched_control']]
                .any()
                .reset_index()
            )
        merged = keyed.merge(
            flags,
            on=KEY_COLUMNS,
            how='left',
            validate='many_to_one',
            indicator='_provenance_join',
        )
        found = (merged['_provenance_join'] == 'both').to_numpy()
        merged = merged.drop(columns='_provenance_join')

    merged['matched_treatment'] = merged['matched_treatment'].astype('boolean')
    merged['matched_control'] = merged['matched_control'].astype('boolean')
    matched_treatment = merged['matched_treatment'].fillna(False).to_numpy(dtype=bool)
    matched_control = merged['matched_control'].fillna(False).to_numpy(dtype=bool)

    status = _status_from_flags(matched_treatment, matched_control, found)
    merged['match_status'] = pd.Categorical(status, categories=MATCH_STATUSES)

    n_unknown = int((~found).sum())
    n_neither = int((status == NEITHER_MATCHED).sum())
    if n_unknown:
        logger.warning(f"{n_unknown} ratio records have no PSM-level match (provenance unknown)")
    if n_neither:
        logger.warning(f"{n_neither} ratio records have PSMs in neither condition channel")

    logger.info(f"Merged provenance for {len(merged)} ratio records")
    return merged


def summarize_match_status(merged: pd.DataFrame, replicate_col: str = 'replicate') -> pd.DataFrame:
    """Count ratio records per replicate and match status."""
    counts = (
        merged.groupby([replicate_col, 'match_status'], observed=False)
        .size()
        .unstack('match_status', fill_value=0)
    )
    return counts.reindex(columns=MATCH_STATUSES, fill_value=0)
