"""
SILAC-ratios: label-swap aware SILAC ratio analysis

Turns per-replicate peptide- and PSM-level SILAC exports (Proteome Discoverer
style) into a protein-level differential abundance table, tracking channel
missingness and spectrum-match provenance along the way.
"""

__version__ = "0.1.0"

from .data_io import (
    ConfigurationError,
    load_feature_table,
    load_contaminant_accessions,
    load_replicates,
    parse_features,
    validate_feature_table,
)
from .conditions import (
    LabelSwap,
    annotate_conditions,
    check_swap_direction,
    log2_transform,
)
from .ratios import (
    compute_ratios,
    summarize_missingness,
)
from .provenance import (
    build_match_flags,
    merge_provenance,
)
from .parsimony import (
    build_peptide_protein_map,
    compute_protein_groups,
    resolve_protein_assignment,
    ProteinGroup,
)
from .rollup import (
    AggregationPolicy,
    ProteinRollupResult,
    rollup_to_proteins,
)
from .differential import (
    LinearModelFitter,
    fit_fdist,
    fit_fdist_trend,
    run_differential_abundance,
)
from .incorporation import (
    estimate_incorporation,
    IncorporationResult,
)
from .pipeline import (
    run_pipeline,
    run_from_tables,
    PipelineResult,
)
