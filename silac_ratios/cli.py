"""Command-line interface for SILAC-ratios.

Label-swap aware SILAC ratio analysis from peptide- and PSM-level exports.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import yaml

from .conditions import DEFAULT_LABEL_SWAP
from .data_io import (
    ConfigurationError,
    load_contaminant_accessions,
    load_feature_table,
    parse_features,
    validate_feature_table,
)
from .incorporation import DEFAULT_MIN_INCORPORATION, estimate_incorporation
from .parsimony import export_protein_groups
from .pipeline import PipelineResult, run_pipeline
from .plots import plot_missingness, plot_ratio_distributions, plot_volcano

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ('tsv', 'csv', 'parquet')

CONFIG_SECTIONS = (
    'data',
    'conditions',
    'provenance',
    'rollup',
    'differential',
    'incorporation',
    'output',
    'replicates',
)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'light_column': 'Abundance Light Sample',
            'heavy_column': 'Abundance Heavy Sample',
            'sequence_column': 'Sequence',
            'modifications_column': 'Modifications',
            'protein_column': 'Master Protein Accessions',
            'n_protein_groups_column': 'Number of Protein Groups',
            'quan_info_column': 'Quan Info',
            'quan_channel_column': 'Quan Channel',
            'protein_separator': '; ',
        },
        'conditions': {
            'treatment': 'treatment',
            'control': 'control',
            'label_swap': dict(DEFAULT_LABEL_SWAP),
            'expected_direction': None,
        },
        'provenance': {
            'label_modification_patterns': ['Label:'],
        },
        'rollup': {
            'aggregation_policy': {
                'not_matched_treatment': 'any',
                'not_matched_control': 'any',
                'provenance_unknown': 'any',
                'ratio': 'count',
            },
        },
        'differential': {
            'min_presence_fraction': 0.5,
            'lowess_frac': 0.75,
            'fdr_method': 'fdr_bh',
        },
        'incorporation': {
            'min_incorporation': DEFAULT_MIN_INCORPORATION,
        },
        'output': {
            'format': 'tsv',
            'plots': True,
        },
        'replicates': {},
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)
        # a user label-swap table replaces the default one entirely
        if 'label_swap' in (user_config.get('conditions') or {}):
            defaults['conditions']['label_swap'] = user_config['conditions']['label_swap']

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config_from_provenance(provenance_path: Path) -> tuple[dict, dict]:
    """Load configuration from a previous run's metadata.json.

    Returns:
        Tuple of (config, full provenance dict)

    Raises:
        ValueError: If the file has no 'processing_parameters' section

    """
    with open(provenance_path) as f:
        provenance = json.load(f)

    params = provenance.get('processing_parameters')
    if params is None:
        raise ValueError(f"{provenance_path} has no 'processing_parameters' section")

    config = _deep_merge(load_config(None), params)
    label_swap = (params.get('conditions') or {}).get('label_swap')
    if label_swap:
        config['conditions']['label_swap'] = label_swap
    return config, provenance


def _replicate_files(args: argparse.Namespace, config: dict) -> dict:
    """Replicate -> files from --replicate options, falling back to the config."""
    if args.replicate:
        return {rep: {'peptides': pep, 'psms': psm} for rep, pep, psm in args.replicate}
    return dict(config.get('replicates') or {})


def _write_table(df: pd.DataFrame, path: Path, output_format: str, index: bool = True) -> Path:
    if output_format == 'parquet':
        # parquet needs string column names; replicate ids are often ints
        df.rename(columns=str).to_parquet(path, index=index)
    else:
        df.to_csv(path, sep='\t' if output_format == 'tsv' else ',', index=index)
    logger.info(f"Saved {path}")
    return path


def generate_pipeline_metadata(
    config: dict,
    result: PipelineResult,
    input_files: list[str],
) -> dict:
    """Generate pipeline metadata JSON for reproducibility and provenance.

    Args:
        config: Pipeline configuration dictionary
        result: Completed pipeline run
        input_files: List of input file paths

    Returns:
        Dictionary with complete pipeline metadata

    """
    try:
        from importlib.metadata import PackageNotFoundError, version
        pipeline_version = version('silac-ratios')
    except PackageNotFoundError:
        pipeline_version = 'development'

    return {
        'pipeline_version': pipeline_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'replicates': [str(r) for r in result.replicates],
        'label_swap': {str(k): v for k, v in config['conditions']['label_swap'].items()},
        'filtering': {
            name: dict(summary.steps) for name, summary in result.filter_summaries.items()
        },
        'missingness': {
            str(rep): {str(k): int(v) for k, v in row.items()}
            for rep, row in result.missingness_summary.iterrows()
        },
        'match_status': {
            str(rep): {str(k): int(v) for k, v in row.items()}
            for rep, row in result.match_status_summary.iterrows()
        },
        'swap_direction': {
            'median_ratios': {str(k): float(v) for k, v in result.swap_check.median_ratios.items()},
            'passed': result.swap_check.passed,
        },
        'protein_groups': {
            'n_groups': len(result.protein_groups),
            'n_proteins': sum(len(g.proteins) for g in result.protein_groups),
        },
        'empirical_bayes': {
            'd0_constant': result.prior.d0_constant,
            's2_prior_constant': result.prior.s2_prior_constant,
            'd0_trend': result.prior.d0_trend,
            'n_tested': result.prior.n_tested,
        },
        'processing_parameters': {
            section: config.get(section, {})
            for section in CONFIG_SECTIONS
        },
        'method_log': result.method_log,
        'warnings': result.warnings,
    }


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full SILAC ratio pipeline."""
    if args.from_provenance:
        config, _ = load_config_from_provenance(Path(args.from_provenance))
        logger.info(f"Re-using processing parameters from {args.from_provenance}")
    else:
        config = load_config(Path(args.config) if args.config else None)
    output_format = config['output'].get('format', 'tsv')
    if output_format not in OUTPUT_FORMATS:
        logger.error(f"Unknown output format {output_format!r}; use one of {OUTPUT_FORMATS}")
        return 1

    replicate_files = _replicate_files(args, config)
    if not replicate_files:
        logger.error("No replicates given (use --replicate or a 'replicates' config section)")
        return 1

    contaminant_ids = None
    if args.contaminants:
        contaminant_ids = load_contaminant_accessions(Path(args.contaminants))

    try:
        result = run_pipeline(
            replicate_files,
            config=config,
            contaminant_ids=contaminant_ids,
            max_workers=args.workers,
        )
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    _write_table(result.results, output_dir / f"differential_abundance.{output_format}", output_format)
    _write_table(result.rollup.protein_ratios, output_dir / f"protein_ratios.{output_format}", output_format)
    peptide_out = result.ratios.drop(columns=['sequence_key', 'modifications_key'], errors='ignore')
    peptide_out = peptide_out.assign(
        missingness=peptide_out['missingness'].astype(str),
        match_status=peptide_out['match_status'].astype(str),
    )
    _write_table(peptide_out, output_dir / f"peptide_ratios.{output_format}", output_format, index=False)
    export_protein_groups(result.protein_groups, output_dir / "protein_groups.tsv")

    if config['output'].get('plots', True):
        plot_ratio_distributions(result.ratios, output_dir / "ratio_distributions.png")
        plot_missingness(result.missingness_summary, output_dir / "missingness.png")
        plot_volcano(result.results, output_dir / "volcano.png")
        result.method_log.append("Plots: ratio distributions, missingness, volcano")

    input_files = []
    for files in replicate_files.values():
        input_files.extend(str(p) for p in (files.get('peptides'), files.get('psms')) if p)
    if args.contaminants:
        input_files.append(str(args.contaminants))

    metadata = generate_pipeline_metadata(
        {**config, 'replicates': {str(k): v for k, v in replicate_files.items()}},
        result,
        input_files,
    )
    metadata_output = output_dir / "metadata.json"
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")

    logger.info("=" * 60)
    logger.info("SILAC-ratios Pipeline Complete")
    logger.info("=" * 60)
    for step in result.method_log:
        logger.info(f"  {step}")
    for warning in result.warnings:
        logger.warning(f"  {warning}")
    logger.info(f"Output directory: {output_dir}")

    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check that an export has the columns the pipeline needs."""
    config = load_config(Path(args.config) if args.config else None)
    result = validate_feature_table(Path(args.file), level=args.level, config=config)

    print(result)
    for warning in result.warnings:
        print(f"  Warning: {warning}")

    return 0 if result.is_valid else 1


def cmd_incorporation(args: argparse.Namespace) -> int:
    """Estimate heavy label incorporation for a fully labelled sample."""
    config = load_config(Path(args.config) if args.config else None)
    try:
        peptides = load_feature_table(Path(args.file), level='peptide', config=config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    contaminant_ids = None
    if args.contaminants:
        contaminant_ids = load_contaminant_accessions(Path(args.contaminants))
    peptides, _ = parse_features(
        peptides,
        is_silac=True,
        level='peptide',
        contaminant_ids=contaminant_ids,
        protein_separator=config['data'].get('protein_separator', '; '),
    )

    result = estimate_incorporation(
        peptides,
        min_incorporation=float(config['incorporation'].get('min_incorporation', DEFAULT_MIN_INCORPORATION)),
    )
    print(f"Median heavy incorporation: {result.median_incorporation:.4f} "
          f"({len(result.peptide_incorporation)} peptides)")

    if args.output:
        result.peptide_incorporation.to_csv(args.output, sep='\t', index=False)
        logger.info(f"Saved peptide incorporation to {args.output}")

    return 0 if result.passed else 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='silac-ratios',
        description='SILAC-ratios: label-swap aware SILAC ratio analysis\n\n'
                    'Computes peptide log2(treatment/control) ratios from heavy/light\n'
                    'exports, tracks spectrum-match provenance, rolls up to proteins\n'
                    'and tests them with peptide-count moderated empirical Bayes.\n\n'
                    'Primary usage:\n'
                    '  silac-ratios run -c config.yaml -o output_dir/\n',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version='%(prog)s 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run the full pipeline (recommended)',
        description='Load every replicate, compute ratios and provenance, roll up to '
                    'proteins and test for differential abundance.'
    )
    run_parser.add_argument('-o', '--output-dir', required=True,
                           help='Output directory for results')
    config_group = run_parser.add_mutually_exclusive_group()
    config_group.add_argument('-c', '--config', help='Configuration YAML file')
    config_group.add_argument('--from-provenance',
                              help='metadata.json of a previous run whose parameters to re-use')
    run_parser.add_argument('--contaminants', help='Contaminant FASTA or accession list')
    run_parser.add_argument('--replicate', nargs=3, action='append',
                           metavar=('ID', 'PEPTIDES', 'PSMS'),
                           help='Replicate id with its peptide and PSM exports (repeatable)')
    run_parser.add_argument('--workers', type=int, default=None,
                           help='Threads for loading replicates')

    val_parser = subparsers.add_parser('validate', help='Check an export for required columns')
    val_parser.add_argument('file', help='Peptide- or PSM-level export')
    val_parser.add_argument('--level', choices=['peptide', 'psm'], default='peptide')
    val_parser.add_argument('-c', '--config', help='Configuration YAML (custom column names)')

    inc_parser = subparsers.add_parser('incorporation', help='Heavy label incorporation QC')
    inc_parser.add_argument('file', help='Peptide-level export of a fully heavy-labelled sample')
    inc_parser.add_argument('-c', '--config', help='Configuration YAML')
    inc_parser.add_argument('--contaminants', help='Contaminant FASTA or accession list')
    inc_parser.add_argument('-o', '--output', help='Per-peptide incorporation TSV')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'run':
        return cmd_run(args)
    elif args.command == 'validate':
        return cmd_validate(args)
    elif args.command == 'incorporation':
        return cmd_incorporation(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
