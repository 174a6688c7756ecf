"""
End-to-end SILAC ratio pipeline.

Stages run strictly in order, each returning a new table:
load -> annotate conditions -> ratios -> provenance -> protein rollup -> differential abundance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Hashable

import pandas as pd

from .conditions import (
    CHANNEL_COLUMNS,
    LabelSwap,
    SwapDirectionCheck,
    annotate_replicates,
    check_swap_direction,
    log2_transform,
    normalize_replicate_id,
)
from .data_io import ConfigurationError, FilterSummary, load_replicates, sort_replicates
from .differential import PriorSummary, run_differential_abundance
from .parsimony import ProteinGroup, resolve_protein_assignment
from .provenance import (
    DEFAULT_LABEL_PATTERNS,
    NEITHER_MATCHED,
    PROVENANCE_UNKNOWN,
    build_match_flags,
    merge_provenance,
    summarize_match_status,
)
from .ratios import compute_ratios, summarize_missingness
from .rollup import AggregationPolicy, ProteinRollupResult, rollup_to_proteins

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Every intermediate table of one run plus the final results."""

    ratios: pd.DataFrame
    missingness_summary: pd.DataFrame
    match_status_summary: pd.DataFrame
    swap_check: SwapDirectionCheck
    assignment: dict[str, str]
    protein_groups: list[ProteinGroup]
    rollup: ProteinRollupResult
    results: pd.DataFrame
    prior: PriorSummary
    replicates: list[Hashable]
    filter_summaries: dict[str, FilterSummary] = field(default_factory=dict)
    method_log: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _differential_settings(config: dict) -> dict:
    diff_cfg = config.get('differential', {}) or {}
    return {
        'min_fraction': float(diff_cfg.get('min_presence_fraction', 0.5)),
        'lowess_frac': float(diff_cfg.get('lowess_frac', 0.75)),
        'fdr_method': diff_cfg.get('fdr_method', 'fdr_bh'),
    }


def run_from_tables(
    peptide_tables: dict[Hashable, pd.DataFrame],
    psm_tables: dict[Hashable, pd.DataFrame | None],
    config: dict | None = None,
    method_log: list[str] | None = None,
) -> PipelineResult:
    """Run stages 2-6 on already loaded and filtered replicate tables.

    Args:
        peptide_tables: replicate -> standardized peptide-level table
        psm_tables: replicate -> standardized PSM-level table (or None)
        config: Pipeline configuration
        method_log: Steps already performed (e.g. by the loader)

    Returns:
        PipelineResult

    """
    config = config or {}
    method_log = list(method_log or [])
    warnings: list[str] = []

    label_swap = LabelSwap.from_config(config)
    peptide_tables = {normalize_replicate_id(k): v for k, v in peptide_tables.items()}
    psm_tables = {normalize_replicate_id(k): v for k, v in psm_tables.items()}
    label_swap.validate(list(peptide_tables))

    # Stage 2: condition annotation on log2 intensities
    logged = {
        rep: log2_transform(peptide_tables[rep], CHANNEL_COLUMNS.values())
        for rep in sort_replicates(peptide_tables)
    }
    annotated, replicates = annotate_replicates(logged, label_swap)
    swap_desc = ', '.join(f"{rep}: {label_swap.treatment_for(rep)}" for rep in replicates)
    method_log.append(f"Condition annotation: treatment channel per replicate ({swap_desc})")

    # Stage 3: ratios
    ratios = compute_ratios(annotated)
    missingness = summarize_missingness(ratios)
    method_log.append(f"Ratios: {len(ratios)} peptide records (log2 treatment - control)")

    expected = (config.get('conditions', {}) or {}).get('expected_direction')
    swap_check = check_swap_direction(ratios, expected_direction=expected)
    warnings.extend(swap_check.warnings)

    # Stage 4: provenance
    patterns = (config.get('provenance', {}) or {}).get('label_modification_patterns') or DEFAULT_LABEL_PATTERNS
    flags = build_match_flags(
        {rep: psm_tables.get(rep) for rep in replicates},
        label_swap,
        patterns,
    )
    merged = merge_provenance(ratios, flags, patterns)
    match_summary = summarize_match_status(merged)
    for status in (PROVENANCE_UNKNOWN, NEITHER_MATCHED):
        n = int(match_summary[status].sum())
        if n:
            warnings.append(f"{n} peptide records with match status '{status}'")
    method_log.append(f"Provenance: PSM match flags joined on normalized keys (label patterns {list(patterns)})")

    # Stage 5: parsimony + rollup
    assignment, groups = resolve_protein_assignment(
        [peptide_tables[rep] for rep in replicates],
        separator=';',
    )
    method_log.append(f"Parsimony: {len(assignment)} sequences assigned to {len(groups)} protein groups")

    policy = AggregationPolicy.from_config(config)
    rollup = rollup_to_proteins(merged, assignment, replicates=replicates, policy=policy)
    method_log.append(
        f"Protein rollup: median of peptide log2 ratios, {len(rollup.protein_ratios)} proteins; "
        f"metadata policy {policy.fields}"
    )

    # Stage 6: differential abundance
    settings = _differential_settings(config)
    results, prior = run_differential_abundance(
        rollup.protein_ratios,
        rollup.protein_summary,
        **settings,
    )
    method_log.append(
        f"Differential abundance: intercept-only model, peptide-count moderated variance "
        f"(lowess frac {settings['lowess_frac']}), {settings['fdr_method']} adjustment, "
        f"{prior.n_tested} proteins tested"
    )

    return PipelineResult(
        ratios=merged,
        missingness_summary=missingness,
        match_status_summary=match_summary,
        swap_check=swap_check,
        assignment=assignment,
        protein_groups=groups,
        rollup=rollup,
        results=results,
        prior=prior,
        replicates=replicates,
        method_log=method_log,
        warnings=warnings,
    )


def run_pipeline(
    replicate_files: dict,
    config: dict | None = None,
    contaminant_ids: set[str] | None = None,
    max_workers: int | None = None,
) -> PipelineResult:
    """Load every replicate's files and run the full pipeline.

    Args:
        replicate_files: replicate -> {'peptides': path, 'psms': path}
        config: Pipeline configuration
        contaminant_ids: Accessions to remove as contaminants
        max_workers: Thread pool size for loading

    Returns:
        PipelineResult

    Raises:
        ConfigurationError: If a replicate is not in the label-swap table or
            a file lacks required columns

    """
    config = config or {}
    replicate_files = {normalize_replicate_id(k): v for k, v in replicate_files.items()}
    if not replicate_files:
        raise ConfigurationError("No replicates configured")

    # fail before any file is read
    LabelSwap.from_config(config).validate(list(replicate_files))

    loaded = load_replicates(
        replicate_files,
        config=config,
        contaminant_ids=contaminant_ids,
        max_workers=max_workers,
    )
    method_log = [
        f"Loaded {len(loaded)} replicates; removed unassigned, contaminant "
        f"({len(contaminant_ids or ())} accessions) and non-unique features"
    ]

    result = run_from_tables(
        {rep: d['peptide'] for rep, d in loaded.items()},
        {rep: d.get('psm') for rep, d in loaded.items()},
        config=config,
        method_log=method_log,
    )
    for rep, d in loaded.items():
        for level in ('peptide', 'psm'):
            summary = d.get(f'{level}_summary')
            if summary is not None:
                result.filter_summaries[f'{rep}/{level}'] = summary
    return result
