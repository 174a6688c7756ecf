"""Data I/O module for loading and filtering SILAC feature tables."""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised for fatal configuration problems (unmapped replicates, missing columns)."""


# Standard column name mapping from Proteome Discoverer exports
FEATURE_COLUMN_MAP = {
    'Sequence': 'sequence',
    'Annotated Sequence': 'annotated_sequence',
    'Modifications': 'modifications',
    'Master Protein Accessions': 'master_protein_accessions',
    'Protein Accessions': 'protein_accessions',
    'Number of Protein Groups': 'n_protein_groups',
    'Number of Proteins': 'n_proteins',
    'Quan Info': 'quan_info',
    'Quan Channel': 'quan_channel',
    'Abundance Light Sample': 'abundance_light',
    'Abundance Heavy Sample': 'abundance_heavy',

    # R-style names (read.delim replaces spaces with dots)
    'Annotated.Sequence': 'annotated_sequence',
    'Master.Protein.Accessions': 'master_protein_accessions',
    'Protein.Accessions': 'protein_accessions',
    'Number.of.Protein.Groups': 'n_protein_groups',
    'Number.of.Proteins': 'n_proteins',
    'Quan.Info': 'quan_info',
    'Quan.Channel': 'quan_channel',
    'Abundance.Light.Sample': 'abundance_light',
    'Abundance.Heavy.Sample': 'abundance_heavy',
}

REQUIRED_COLUMNS = {
    'peptide': [
        'sequence',
        'modifications',
        'master_protein_accessions',
        'abundance_light',
        'abundance_heavy',
    ],
    'psm': [
        'sequence',
        'modifications',
        'master_protein_accessions',
        'quan_channel',
    ],
}

VALID_LEVELS = set(REQUIRED_COLUMNS)

PROTEIN_SEPARATOR = '; '


@dataclass
class ValidationResult:
    """Result of validating a feature table."""

    is_valid: bool
    source: str
    level: str
    missing_required: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_rows: int = 0

    def __str__(self) -> str:
        if self.is_valid:
            return f"Valid: {self.source} ({self.level}, {self.n_rows} rows)"
        return f"Invalid: {self.source} ({self.level}) - missing columns: {self.missing_required}"


@dataclass
class FilterSummary:
    """Tally of features remaining after each filtering step."""

    level: str
    steps: list[tuple[str, int]] = field(default_factory=list)

    def add(self, step: str, n_remaining: int) -> None:
        self.steps.append((step, n_remaining))

    @property
    def n_input(self) -> int:
        return self.steps[0][1] if self.steps else 0

    @property
    def n_output(self) -> int:
        return self.steps[-1][1] if self.steps else 0

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.steps, columns=['step', 'n_features'])


def _column_map_from_config(config: Optional[dict]) -> dict[str, str]:
    """Extend the default map with user-configured source column names."""
    column_map = dict(FEATURE_COLUMN_MAP)
    data_cfg = (config or {}).get('data', {}) or {}

    configured = {
        'light_column': 'abundance_light',
        'heavy_column': 'abundance_heavy',
        'sequence_column': 'sequence',
        'modifications_column': 'modifications',
        'protein_column': 'master_protein_accessions',
        'n_protein_groups_column': 'n_protein_groups',
        'quan_info_column': 'quan_info',
        'quan_channel_column': 'quan_channel',
    }
    for key, standard in configured.items():
        original = data_cfg.get(key)
        if original:
            column_map[original] = standard
    return column_map


def standardize_columns(df: pd.DataFrame, column_map: Optional[dict] = None) -> pd.DataFrame:
    """Rename columns to standard names using the mapping."""
    column_map = column_map or FEATURE_COLUMN_MAP
    rename_map = {}
    for orig, standard in column_map.items():
        if orig in df.columns and orig != standard and standard not in rename_map.values():
            rename_map[orig] = standard

    return df.rename(columns=rename_map)


def _detect_separator(filepath: Path) -> str:
    suffix = filepath.suffix.lower()
    return ',' if suffix == '.csv' else '\t'


def validate_feature_table(
    source: Union[Path, str, pd.DataFrame],
    level: str = 'peptide',
    config: Optional[dict] = None,
) -> ValidationResult:
    """Validate that a feature table has the columns the pipeline needs.

    Args:
        source: Path to a TSV/CSV export, or an already loaded DataFrame
        level: 'peptide' or 'psm'
        config: Pipeline configuration (for custom column names)

    Returns:
        ValidationResult with validation details

    """
    if level not in VALID_LEVELS:
        raise ConfigurationError(f"Unknown feature level {level!r}; use one of {sorted(VALID_LEVELS)}")

    column_map = _column_map_from_config(config)

    if isinstance(source, pd.DataFrame):
        df = standardize_columns(source, column_map)
        name = '<dataframe>'
    else:
        filepath = Path(source)
        name = filepath.name
        df = pd.read_csv(filepath, sep=_detect_separator(filepath))
        df = standardize_columns(df, column_map)

    result = ValidationResult(is_valid=True, source=name, level=level, n_rows=len(df))

    for col in REQUIRED_COLUMNS[level]:
        if col not in df.columns:
            result.missing_required.append(col)
            result.is_valid = False

    if 'n_protein_groups' not in df.columns:
        result.warnings.append("No 'Number of Protein Groups' column - uniqueness filter skipped")
    if level == 'peptide' and 'quan_info' not in df.columns:
        result.warnings.append("No 'Quan Info' column - quantification filter skipped")

    return result


def load_feature_table(
    filepath: Path,
    level: str = 'peptide',
    config: Optional[dict] = None,
) -> pd.DataFrame:
    """Load a peptide- or PSM-level export with standardized column names.

    Raises:
        ConfigurationError: If required columns are absent

    """
    filepath = Path(filepath)
    column_map = _column_map_from_config(config)

    df = pd.read_csv(filepath, sep=_detect_separator(filepath))
    df = standardize_columns(df, column_map)

    validation = validate_feature_table(df, level=level, config=config)
    if not validation.is_valid:
        raise ConfigurationError(
            f"{filepath.name}: missing required {level}-level columns {validation.missing_required}"
        )
    for w in validation.warnings:
        logger.debug(f"{filepath.name}: {w}")

    df['modifications'] = df['modifications'].fillna('').astype(str)
    logger.info(f"Loaded {len(df)} {level}-level features from {filepath}")
    return df


def load_contaminant_accessions(filepath: Path) -> set[str]:
    """Read contaminant accessions from a FASTA file or a plain accession list.

    FASTA headers of the UniProt form ``>sp|P02769|ALBU_BOVIN`` yield the
    accession between the pipes; other headers yield their first token.
    """
    filepath = Path(filepath)
    accessions = set()
    is_fasta = False

    with open(filepath) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            if line.startswith('>'):
                is_fasta = True
                header = line[1:].split()[0]
                parts = header.split('|')
                accessions.add(parts[1] if len(parts) >= 3 else header)
            elif not is_fasta:
                accessions.add(line.split()[0])

    logger.info(f"Loaded {len(accessions)} contaminant accessions from {filepath}")
    return accessions


def sort_replicates(replicates) -> list:
    """Replicate ids in order: integers numerically, then strings.

    Raises:
        ConfigurationError: If the ids cannot be ordered against each other

    """
    replicates = list(replicates)
    try:
        return sorted(replicates, key=lambda r: (isinstance(r, str), r))
    except TypeError as e:
        raise ConfigurationError(f"Replicate ids {replicates} cannot be ordered: {e}") from e


def _split_accessions(value, separator: str = PROTEIN_SEPARATOR) -> list[str]:
    if pd.isna(value):
        return []
    return [a.strip() for a in re.split(re.escape(separator.strip()), str(value)) if a.strip()]


def parse_features(
    df: pd.DataFrame,
    is_silac: bool = True,
    level: str = 'peptide',
    contaminant_ids: Optional[set[str]] = None,
    protein_separator: str = PROTEIN_SEPARATOR,
) -> tuple[pd.DataFrame, FilterSummary]:
    """Filter a feature table down to unique, non-contaminant features.

    Filtering steps, applied in order:
    1. Drop features without a master protein accession
    2. Drop features assigned to a contaminant protein
    3. Drop features matching more than one protein group
    4. (SILAC peptide level) drop features without quantification values

    Args:
        df: Standardized feature table
        is_silac: Whether the experiment is SILAC-labelled
        level: 'peptide' or 'psm'
        contaminant_ids: Accessions to treat as contaminants
        protein_separator: Separator between accessions in one cell

    Returns:
        Tuple of (filtered copy of df, FilterSummary)

    """
    if level not in VALID_LEVELS:
        raise ConfigurationError(f"Unknown feature level {level!r}; use one of {sorted(VALID_LEVELS)}")

    summary = FilterSummary(level=level)
    out = df.copy()
    summary.add('input', len(out))

    has_master = out['master_protein_accessions'].notna() & (
        out['master_protein_accessions'].astype(str).str.strip() != ''
    )
    out = out.loc[has_master]
    summary.add('master_protein_assigned', len(out))

    if contaminant_ids:
        is_contaminant = out['master_protein_accessions'].map(
            lambda v: any(a in contaminant_ids for a in _split_accessions(v, protein_separator))
        )
        if 'protein_accessions' in out.columns:
            is_contaminant |= out['protein_accessions'].map(
                lambda v: any(a in contaminant_ids for a in _split_accessions(v, protein_separator))
            )
        out = out.loc[~is_contaminant.astype(bool)]
    summary.add('not_contaminant', len(out))

    if 'n_protein_groups' in out.columns:
        out = out.loc[pd.to_numeric(out['n_protein_groups'], errors='coerce') == 1]
        summary.add('unique_protein_group', len(out))

    if is_silac and level == 'peptide' and 'quan_info' in out.columns:
        out = out.loc[out['quan_info'].fillna('').astype(str) != 'NoQuanValues']
        summary.add('quantified', len(out))

    for (step, n), (_, prev) in zip(summary.steps[1:], summary.steps[:-1]):
        logger.debug(f"  {level} filter {step}: removed {prev - n}, {n} remaining")
    logger.info(f"Filtered {level}-level features: {summary.n_input} -> {summary.n_output}")

    return out.reset_index(drop=True), summary


def _load_replicate(
    replicate,
    files: dict,
    config: Optional[dict],
    contaminant_ids: Optional[set[str]],
) -> dict:
    separator = ((config or {}).get('data', {}) or {}).get('protein_separator', PROTEIN_SEPARATOR)
    loaded = {}
    for level, key in (('peptide', 'peptides'), ('psm', 'psms')):
        path = files.get(key)
        if path is None:
            if level == 'peptide':
                raise ConfigurationError(f"Replicate {replicate!r}: no peptide-level file given")
            loaded[level] = None
            continue
        table = load_feature_table(Path(path), level=level, config=config)
        table, summary = parse_features(
            table,
            is_silac=True,
            level=level,
            contaminant_ids=contaminant_ids,
            protein_separator=separator,
        )
        table['replicate'] = replicate
        loaded[level] = table
        loaded[f'{level}_summary'] = summary
    return loaded


def load_replicates(
    replicate_files: dict,
    config: Optional[dict] = None,
    contaminant_ids: Optional[set[str]] = None,
    max_workers: Optional[int] = None,
) -> dict:
    """Load and filter the peptide and PSM tables of every replicate.

    Replicates are loaded concurrently but returned keyed and ordered by
    replicate identifier, never by completion order.

    Args:
        replicate_files: replicate -> {'peptides': path, 'psms': path}
        config: Pipeline configuration
        contaminant_ids: Accessions to remove as contaminants
        max_workers: Thread pool size (defaults to number of replicates)

    Returns:
        Ordered dict replicate -> {'peptide', 'psm', 'peptide_summary', 'psm_summary'}

    """
    replicates = sort_replicates(replicate_files)
    if not replicates:
        raise ConfigurationError("No replicate files given")

    with ThreadPoolExecutor(max_workers=max_workers or len(replicates)) as pool:
        futures = {
            rep: pool.submit(_load_replicate, rep, replicate_files[rep], config, contaminant_ids)
            for rep in replicates
        }
        # .result() re-raises the first loader failure; no partial results
        return {rep: futures[rep].result() for rep in replicates}
