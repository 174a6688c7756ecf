"""Diagnostic figures for SILAC ratio runs."""

import logging
from pathlib import Path

import matplotlib

matplotlib.use('Agg')
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402

from .data_io import sort_replicates  # noqa: E402
from .ratios import MISSINGNESS_CLASSES  # noqa: E402

logger = logging.getLogger(__name__)


def plot_ratio_distributions(
    ratios: pd.DataFrame,
    output_path,
    replicate_col: str = 'replicate',
) -> Path:
    """Histogram of peptide log2 ratios per replicate, with the median marked."""
    output_path = Path(output_path)
    replicates = sort_replicates(ratios[replicate_col].unique())

    fig, axes = plt.subplots(1, len(replicates), figsize=(4 * len(replicates), 3.5), sharey=True, squeeze=False)
    for ax, rep in zip(axes[0], replicates):
        values = ratios.loc[ratios[replicate_col] == rep, 'ratio'].to_numpy(dtype=float)
        values = values[np.isfinite(values)]
        ax.hist(values, bins=50, color='steelblue', alpha=0.8)
        if values.size:
            ax.axvline(np.median(values), color='firebrick', linestyle='--', linewidth=1)
        ax.axvline(0, color='grey', linewidth=0.5)
        ax.set_title(f"Replicate {rep}")
        ax.set_xlabel('log2(treatment / control)')
    axes[0][0].set_ylabel('Peptides')

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Saved ratio distributions to {output_path}")
    return output_path


def plot_missingness(summary: pd.DataFrame, output_path) -> Path:
    """Stacked bar chart of missingness classes per replicate."""
    output_path = Path(output_path)
    counts = summary.reindex(columns=MISSINGNESS_CLASSES, fill_value=0)

    fig, ax = plt.subplots(figsize=(6, 4))
    bottom = np.zeros(len(counts))
    for cls in MISSINGNESS_CLASSES:
        ax.bar([str(i) for i in counts.index], counts[cls], bottom=bottom, label=cls)
        bottom += counts[cls].to_numpy()
    ax.set_xlabel('Replicate')
    ax.set_ylabel('Peptides')
    ax.legend(frameon=False, fontsize='small')

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Saved missingness summary to {output_path}")
    return output_path


def plot_volcano(results: pd.DataFrame, output_path, alpha: float = 0.05) -> Path:
    """log2 fold change against -log10 shrunk p-value, significant proteins highlighted."""
    output_path = Path(output_path)
    neglog = -np.log10(results['p_shrunk'].astype(float).clip(lower=1e-300))
    significant = (results['p_adj'] < alpha).to_numpy()

    fig, ax = plt.subplots(figsize=(6, 5))
    ax.scatter(results['log_fc'][~significant], neglog[~significant], s=10, color='grey', alpha=0.6)
    ax.scatter(results['log_fc'][significant], neglog[significant], s=12, color='firebrick',
               label=f'p_adj < {alpha}')
    ax.axvline(0, color='black', linewidth=0.5)
    ax.set_xlabel('log2 fold change (treatment / control)')
    ax.set_ylabel('-log10 p (peptide-count moderated)')
    if significant.any():
        ax.legend(frameon=False)

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Saved volcano plot to {output_path}")
    return output_path
