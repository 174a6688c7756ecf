"""Log2 ratio and missingness calculation per peptide and replicate."""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

BOTH_PRESENT = 'both_present'
TREATMENT_ONLY = 'treatment_only'
CONTROL_ONLY = 'control_only'
BOTH_MISSING = 'both_missing'

MISSINGNESS_CLASSES = [BOTH_PRESENT, TREATMENT_ONLY, CONTROL_ONLY, BOTH_MISSING]


def classify_missingness(treatment: pd.Series, control: pd.Series) -> pd.Series:
    """Label each record by which condition channels carry a finite value."""
    t_ok = np.isfinite(treatment.to_numpy(dtype=float))
    c_ok = np.isfinite(control.to_numpy(dtype=float))

    labels = np.select(
        [t_ok & c_ok, t_ok & ~c_ok, ~t_ok & c_ok],
        [BOTH_PRESENT, TREATMENT_ONLY, CONTROL_ONLY],
        default=BOTH_MISSING,
    )
    return pd.Series(
        pd.Categorical(labels, categories=MISSINGNESS_CLASSES),
        index=treatment.index,
        name='missingness',
    )


def check_ratio_invariant(ratios: pd.DataFrame) -> None:
    """Raise if any ratio is finite without both channels, or vice versa."""
    finite = np.isfinite(ratios['ratio'].to_numpy(dtype=float))
    present = (ratios['missingness'] == BOTH_PRESENT).to_numpy()
    bad = finite != present
    if bad.any():
        raise ValueError(
            f"{int(bad.sum())} records violate the ratio invariant "
            "(ratio must be finite exactly when both channels are present)"
        )


def compute_ratios(df: pd.DataFrame) -> pd.DataFrame:
    """
    Compute log2(treatment / control) per feature.

    Intensities must already be log2 transformed, so the ratio is the
    difference of the two columns. Records with neither channel quantified
    are dropped; records with one channel keep a NaN ratio and a missingness
    class naming the side that is present.

    Args:
        df: Table with 'treatment' and 'control' log2 intensity columns

    Returns:
        New DataFrame with 'ratio' and 'missingness' columns
    """
    for col in ('treatment', 'control'):
        if col not in df.columns:
            raise ValueError(f"Column {col!r} not found; annotate conditions first")

    missingness = classify_missingness(df['treatment'], df['control'])
    keep = (missingness != BOTH_MISSING).to_numpy()

    out = df.loc[keep].copy()
    out['missingness'] = missingness[keep].values

    both = (out['missingness'] == BOTH_PRESENT).to_numpy()
    treatment = out['treatment'].to_numpy(dtype=float)
    control = out['control'].to_numpy(dtype=float)
    with np.errstate(over='ignore', invalid='ignore'):
        out['ratio'] = np.where(both, treatment - control, np.nan)

    check_ratio_invariant(out)

    logger.info(
        f"Computed ratios for {len(out)} features "
        f"({int(both.sum())} with both channels, {int((~keep).sum())} dropped with neither)"
    )
    return out.reset_index(drop=True)


def summarize_missingness(
    ratios: pd.DataFrame,
    replicate_col: str = 'replicate',
) -> pd.DataFrame:
    """Count features per replicate and missingness class."""
    counts = (
        ratios.groupby([replicate_col, 'missingness'], observed=False)
        .size()
        .unstack('missingness', fill_value=0)
    )
    return counts.reindex(columns=MISSINGNESS_CLASSES, fill_value=0)
