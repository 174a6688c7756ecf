"""
Condition annotation for SILAC label-swap designs.

In a label-swap experiment the isotope channel carrying the treatment
condition alternates between replicates. The mapping is supplied explicitly
as a LabelSwap table; the pipeline never infers it from replicate numbers.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .data_io import ConfigurationError

logger = logging.getLogger(__name__)

CHANNELS = ('light', 'heavy')

CHANNEL_COLUMNS = {
    'light': 'abundance_light',
    'heavy': 'abundance_heavy',
}

# Reference run: replicates 1-2 heavy = treatment, 3-4 light = treatment
DEFAULT_LABEL_SWAP = {1: 'heavy', 2: 'heavy', 3: 'light', 4: 'light'}


def _other_channel(channel: str) -> str:
    return 'light' if channel == 'heavy' else 'heavy'


def normalize_replicate_id(replicate: Hashable) -> Hashable:
    """Replicate ids given as digit strings (command line) compare equal to YAML integers."""
    if isinstance(replicate, str) and replicate.strip().isdigit():
        return int(replicate.strip())
    return replicate


@dataclass
class LabelSwap:
    """
    Replicate -> treatment channel mapping.

    A replicate missing from the table raises ConfigurationError.
    """
    treatment_channel: Dict[Hashable, str]
    treatment_name: str = 'treatment'
    control_name: str = 'control'

    def __post_init__(self):
        normalized = {}
        for replicate, channel in self.treatment_channel.items():
            channel_norm = str(channel).strip().lower()
            if channel_norm not in CHANNELS:
                raise ConfigurationError(
                    f"Replicate {replicate!r}: treatment channel must be one of {CHANNELS}, got {channel!r}"
                )
            normalized[normalize_replicate_id(replicate)] = channel_norm
        self.treatment_channel = normalized

    @classmethod
    def from_config(cls, config: Optional[dict]) -> 'LabelSwap':
        """Build from the ``conditions`` section of the pipeline config."""
        cond_cfg = (config or {}).get('conditions', {}) or {}
        swap = cond_cfg.get('label_swap')
        if not swap:
            raise ConfigurationError("conditions.label_swap must map every replicate to a treatment channel")
        return cls(
            treatment_channel=dict(swap),
            treatment_name=cond_cfg.get('treatment', 'treatment'),
            control_name=cond_cfg.get('control', 'control'),
        )

    @property
    def replicates(self) -> List[Hashable]:
        return list(self.treatment_channel)

    def treatment_for(self, replicate: Hashable) -> str:
        """Isotope channel carrying the treatment condition in this replicate."""
        key = normalize_replicate_id(replicate)
        if key not in self.treatment_channel:
            raise ConfigurationError(
                f"Replicate {replicate!r} is not mapped in the label-swap table "
                f"(mapped replicates: {self.replicates})"
            )
        return self.treatment_channel[key]

    def control_for(self, replicate: Hashable) -> str:
        return _other_channel(self.treatment_for(replicate))

    def channel_for(self, replicate: Hashable, condition: str) -> str:
        if condition == 'treatment':
            return self.treatment_for(replicate)
        if condition == 'control':
            return self.control_for(replicate)
        raise ValueError(f"Unknown condition {condition!r}; use 'treatment' or 'control'")

    def condition_for_channel(self, replicate: Hashable, channel: str) -> str:
        """Inverse lookup: which condition an isotope channel carries in a replicate."""
        channel = str(channel).strip().lower()
        if channel not in CHANNELS:
            raise ValueError(f"Unknown isotope channel {channel!r}")
        return 'treatment' if channel == self.treatment_for(replicate) else 'control'

    def validate(self, replicates: Iterable[Hashable]) -> None:
        """Fail fast if any replicate lacks a mapping."""
        unmapped = [r for r in replicates if normalize_replicate_id(r) not in self.treatment_channel]
        if unmapped:
            raise ConfigurationError(
                f"Replicates {unmapped} are not mapped in the label-swap table "
                f"(mapped replicates: {self.replicates})"
            )


def log2_transform(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """Return a copy with the given intensity columns on log2 scale.

    Zero, negative and missing intensities become NaN.
    """
    out = df.copy()
    for col in columns:
        values = pd.to_numeric(out[col], errors='coerce').astype(float)
        values = values.where(values > 0)
        out[col] = np.log2(values)
    return out


def annotate_conditions(
    df: pd.DataFrame,
    replicate: Hashable,
    label_swap: LabelSwap,
) -> pd.DataFrame:
    """
    Materialize treatment/control intensity columns for one replicate.

    Args:
        df: Peptide table with 'abundance_light' and 'abundance_heavy'
        replicate: Replicate identifier (must be mapped in label_swap)
        label_swap: Replicate -> treatment channel table

    Returns:
        New DataFrame with 'treatment', 'control', 'treatment_channel'
        and 'replicate' columns added
    """
    treatment_channel = label_swap.treatment_for(replicate)
    control_channel = _other_channel(treatment_channel)

    for channel in (treatment_channel, control_channel):
        if CHANNEL_COLUMNS[channel] not in df.columns:
            raise ConfigurationError(
                f"Replicate {replicate!r}: column {CHANNEL_COLUMNS[channel]!r} not found"
            )

    out = df.copy()
    out['treatment'] = out[CHANNEL_COLUMNS[treatment_channel]]
    out['control'] = out[CHANNEL_COLUMNS[control_channel]]
    out['treatment_channel'] = treatment_channel
    out['replicate'] = replicate

    logger.debug(f"Replicate {replicate!r}: treatment={treatment_channel}, control={control_channel}")
    return out


@dataclass
class SwapDirectionCheck:
    """Per-replicate median ratios and any disagreement warnings."""
    median_ratios: pd.Series
    majority_sign: int
    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.warnings


def check_swap_direction(
    ratios: pd.DataFrame,
    expected_direction: Optional[str] = None,
    ratio_col: str = 'ratio',
    replicate_col: str = 'replicate',
) -> SwapDirectionCheck:
    """
    Compare each replicate's median log-ratio sign with the other replicates.

    A replicate whose median ratio points the other way usually means the
    label-swap table is wrong for it. Disagreements are logged for review;
    they never stop the pipeline.
    """
    medians = ratios.groupby(replicate_col, sort=True)[ratio_col].median()
    signs = np.sign(medians.dropna())

    if expected_direction is not None:
        if expected_direction not in ('positive', 'negative'):
            raise ConfigurationError(
                f"expected_direction must be 'positive' or 'negative', got {expected_direction!r}"
            )
        majority = 1 if expected_direction == 'positive' else -1
    else:
        total = int(signs.sum())
        majority = int(np.sign(total))

    warnings = []
    if majority != 0:
        for replicate, sign in signs.items():
            if sign != 0 and sign != majority:
                msg = (
                    f"Replicate {replicate!r}: median ratio {medians[replicate]:.3f} disagrees with "
                    f"{'expected' if expected_direction else 'majority'} direction; check the label-swap table"
                )
                logger.warning(msg)
                warnings.append(msg)

    return SwapDirectionCheck(median_ratios=medians, majority_sign=majority, warnings=warnings)


def annotate_replicates(
    peptide_tables: Dict[Hashable, pd.DataFrame],
    label_swap: LabelSwap,
) -> Tuple[pd.DataFrame, List[Hashable]]:
    """Annotate and concatenate every replicate's peptide table in replicate order."""
    replicates = list(peptide_tables)
    label_swap.validate(replicates)

    frames = [annotate_conditions(peptide_tables[rep], rep, label_swap) for rep in replicates]
    combined = pd.concat(frames, ignore_index=True)
    logger.info(f"Annotated conditions for {len(replicates)} replicates ({len(combined)} features)")
    return combined, replicates
