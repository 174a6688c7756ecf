"""
Differential abundance of protein log2 ratios with peptide-count weighted empirical Bayes.

Each protein's replicate ratios are fitted with an intercept-only linear model,
so the coefficient is the mean log2(treatment/control) and the test is whether
it differs from zero. Residual variances are then moderated with limma's
scaled-F prior. Two priors are fitted:

- a constant prior (classic limma eBayes), reported as ``p_ebayes``
- a prior whose location follows a lowess trend of log-variance against
  log2(peptide count), reported as ``p_shrunk``

The second is the DEqMS idea: proteins quantified from few peptides have
noisier variance estimates, so peptide count (not intensity) is the
shrinkage covariate.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.special import digamma, polygamma
from scipy.stats import t as t_dist
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    'log_fc',
    't',
    'p_raw',
    'p_ebayes',
    'p_shrunk',
    'p_adj',
    'min_peptide_count',
    'match_status_summary',
    'n_replicates',
]


# ============================================================================
# Pre-filter
# ============================================================================


def filter_by_presence(
    matrix: pd.DataFrame,
    min_fraction: float = 0.5,
    min_observations: int = 2,
) -> pd.DataFrame:
    """
    Keep proteins observed in at least ``min_fraction`` of replicates.

    A protein also needs ``min_observations`` values so that its residual
    variance has at least one degree of freedom.
    """
    if not 0 < min_fraction <= 1:
        raise ValueError(f"min_fraction must be in (0, 1], got {min_fraction}")

    n_cols = matrix.shape[1]
    required = max(int(np.ceil(min_fraction * n_cols)), min_observations)
    n_present = matrix.notna().sum(axis=1)
    keep = n_present >= required

    logger.info(
        f"Presence filter (>= {required} of {n_cols} replicates): "
        f"kept {int(keep.sum())} of {len(matrix)} proteins"
    )
    return matrix.loc[keep]


# ============================================================================
# Linear model
# ============================================================================


class LinearModelFitter:
    """Per-protein ordinary least squares tolerant of missing replicates."""

    def __init__(self, expression: np.ndarray, design_matrix: Optional[np.ndarray] = None):
        """
        Parameters:
        - expression: (n_proteins x n_samples) matrix, NaN for missing values
        - design_matrix: (n_samples x n_covariates); intercept only if None
        """
        self.Y = np.asarray(expression, dtype=float)
        n_samples = self.Y.shape[1]
        self.X = np.ones((n_samples, 1)) if design_matrix is None else np.asarray(design_matrix, dtype=float)
        if self.X.shape[0] != n_samples:
            raise ValueError(
                f"Design has {self.X.shape[0]} rows but expression has {n_samples} samples"
            )
        self.coefficients = None
        self.sigma2 = None
        self.df_residual = None
        self.stdev_unscaled = None

    def fit(self) -> 'LinearModelFitter':
        """Fit every protein on its observed samples only."""
        n_proteins = self.Y.shape[0]
        n_coef = self.X.shape[1]

        self.coefficients = np.full((n_proteins, n_coef), np.nan)
        self.stdev_unscaled = np.full((n_proteins, n_coef), np.nan)
        self.sigma2 = np.full(n_proteins, np.nan)
        self.df_residual = np.zeros(n_proteins)

        for i in range(n_proteins):
            observed = np.isfinite(self.Y[i])
            X = self.X[observed]
            y = self.Y[i, observed]
            rank = np.linalg.matrix_rank(X) if len(y) else 0
            if rank < n_coef:
                continue

            xtx_inv = np.linalg.inv(X.T @ X)
            beta = xtx_inv @ X.T @ y
            resid = y - X @ beta
            df = len(y) - rank

            self.coefficients[i] = beta
            self.stdev_unscaled[i] = np.sqrt(np.diag(xtx_inv))
            self.df_residual[i] = df
            if df > 0:
                self.sigma2[i] = float(resid @ resid) / df

        n_fitted = int(np.isfinite(self.sigma2).sum())
        logger.debug(f"Fitted {n_fitted} of {n_proteins} proteins with residual df > 0")
        return self


# ============================================================================
# Empirical Bayes prior
# ============================================================================


def trigamma_inverse(y: float, tol: float = 1e-8) -> float:
    """Solve trigamma(x) = y.

    Newton iteration on 1/trigamma(x), which is nearly linear in x, so the
    iteration converges monotonically from the starting value.
    """
    if y > 1e7:
        return float(1.0 / np.sqrt(y))
    if y < 1e-6:
        return float(1.0 / y)

    x = 0.5 + 1.0 / y
    for _ in range(50):
        tri = polygamma(1, x)
        dif = tri * (1 - tri / y) / polygamma(2, x)
        x = x + dif
        if -dif / x < tol:
            break
    return float(x)


def _log_variance_terms(
    s2: np.ndarray,
    df: np.ndarray,
    mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Usable variances and the limma 'e' transform of their logs."""
    ok = np.isfinite(s2) & np.isfinite(df) & (df > 0) & (s2 >= 0)
    if mask is not None:
        ok &= mask
    x = s2[ok]
    if x.size:
        # zeros would give log(0)
        x = np.maximum(x, 1e-5 * max(np.median(x), 1e-12))
    d = df[ok]
    e = np.log(x) - digamma(d / 2.0) + np.log(d / 2.0)
    return ok, e


def _prior_from_moments(location: np.ndarray, evar: float) -> Tuple[np.ndarray, float]:
    if evar > 0:
        d0 = 2 * trigamma_inverse(evar)
        s2_prior = np.exp(location + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    else:
        d0 = np.inf
        s2_prior = np.exp(location)
    return s2_prior, d0


def fit_fdist(s2: np.ndarray, df: np.ndarray) -> Tuple[float, float]:
    """
    Moment estimate of the scaled-F prior (limma fitFDist).

    Returns:
        Tuple of (s2_prior, d0). d0 is inf when the observed spread of
        log-variances is fully explained by sampling error.
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)

    ok, e = _log_variance_terms(s2, df)
    if e.size < 2:
        logger.warning(f"Only {e.size} usable variances; no empirical Bayes prior fitted")
        return np.nan, 0.0

    emean = np.mean(e)
    evar = np.var(e, ddof=1) - np.mean(polygamma(1, df[ok] / 2.0))
    s2_prior, d0 = _prior_from_moments(np.asarray(emean), evar)
    return float(s2_prior), d0


def fit_fdist_trend(
    s2: np.ndarray,
    df: np.ndarray,
    covariate: np.ndarray,
    frac: float = 0.75,
) -> Tuple[np.ndarray, float]:
    """
    Scaled-F prior whose location follows a lowess trend in ``covariate``.

    Args:
        s2: Residual variances
        df: Residual degrees of freedom
        covariate: Per-protein covariate, here log2(peptide count)
        frac: Lowess span

    Returns:
        Tuple of (per-protein s2_prior, d0). Proteins without a usable
        variance get the prior of the trend at their covariate value.
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    covariate = np.asarray(covariate, dtype=float)

    ok, e = _log_variance_terms(s2, df, mask=np.isfinite(covariate))
    if e.size < 2:
        logger.warning(f"Only {e.size} usable variances; no empirical Bayes prior fitted")
        return np.full(s2.shape, np.nan), 0.0

    x = covariate[ok]
    if np.ptp(x) == 0 or e.size < 3:
        logger.info("Peptide counts do not vary; variance trend is constant")
        trend = np.full(e.shape, e.mean())
    else:
        trend = lowess(e, x, frac=frac, return_sorted=False)
        trend = np.where(np.isfinite(trend), trend, e.mean())

    resid = e - trend
    evar = np.sum(resid ** 2) / (e.size - 1) - np.mean(polygamma(1, df[ok] / 2.0))

    # extend the trend to every protein by interpolation on the covariate
    order = np.argsort(x, kind='mergesort')
    location = np.interp(
        np.where(np.isfinite(covariate), covariate, np.median(x)),
        x[order],
        trend[order],
    )
    s2_prior, d0 = _prior_from_moments(location, evar)
    logger.debug(f"Count-trended prior: d0={d0:.3g}, median s2_prior={np.median(s2_prior):.3g}")
    return s2_prior, d0


def squeeze_variance(
    s2: np.ndarray,
    df: np.ndarray,
    s2_prior,
    d0: float,
) -> np.ndarray:
    """Posterior variances, weighted between prior and observation by d0 and df."""
    s2 = np.asarray(s2, dtype=float)
    df = np.asarray(df, dtype=float)
    s2_prior = np.broadcast_to(np.asarray(s2_prior, dtype=float), s2.shape)

    if d0 == 0 or not np.all(np.isfinite(s2_prior)):
        return s2.copy()
    if np.isinf(d0):
        return s2_prior.copy()
    return (d0 * s2_prior + df * s2) / (d0 + df)


def adjust_pvalues(p: np.ndarray, method: str = 'fdr_bh') -> np.ndarray:
    """Multiple-testing correction over the finite p-values; NaN stays NaN."""
    p = np.asarray(p, dtype=float)
    adjusted = np.full(p.shape, np.nan)
    finite = np.isfinite(p)
    if finite.any():
        adjusted[finite] = multipletests(p[finite], method=method)[1]
    return adjusted


def _moderated_test(coef, stdev_unscaled, s2_post, df_total):
    with np.errstate(divide='ignore', invalid='ignore'):
        t_stat = coef / (stdev_unscaled * np.sqrt(s2_post))
    return t_stat, 2 * t_dist.sf(np.abs(t_stat), df=df_total)


# ============================================================================
# Pipeline stage
# ============================================================================


@dataclass
class PriorSummary:
    """Fitted prior parameters for the method log."""
    d0_constant: float
    s2_prior_constant: float
    d0_trend: float
    n_tested: int


def run_differential_abundance(
    protein_ratios: pd.DataFrame,
    protein_summary: pd.DataFrame,
    min_fraction: float = 0.5,
    lowess_frac: float = 0.75,
    fdr_method: str = 'fdr_bh',
) -> Tuple[pd.DataFrame, PriorSummary]:
    """
    Test each protein's mean log2 ratio against zero.

    Args:
        protein_ratios: protein x replicate log2(treatment/control) medians
        protein_summary: per-protein 'min_peptide_count' and 'match_status_summary'
        min_fraction: Minimum fraction of replicates with data
        lowess_frac: Span of the peptide-count variance trend
        fdr_method: statsmodels multipletests method

    Returns:
        Tuple of (results sorted ascending by p_adj with NaN last, PriorSummary).
        Positive log_fc means higher in treatment.
    """
    matrix = filter_by_presence(protein_ratios, min_fraction=min_fraction)
    summary = protein_summary.reindex(matrix.index)

    fitter = LinearModelFitter(matrix.to_numpy(dtype=float)).fit()
    coef = fitter.coefficients[:, 0]
    stdev_unscaled = fitter.stdev_unscaled[:, 0]
    s2 = fitter.sigma2
    df = fitter.df_residual
    df_pooled = np.nansum(df)

    # raw: ordinary one-sample t-test
    t_raw, p_raw = _moderated_test(coef, stdev_unscaled, s2, df)

    # classic eBayes with a constant prior
    s2_prior, d0 = fit_fdist(s2, df)
    s2_post = squeeze_variance(s2, df, s2_prior, d0)
    _, p_ebayes = _moderated_test(coef, stdev_unscaled, s2_post, np.minimum(df + d0, df_pooled))

    # peptide-count trended prior
    counts = summary['min_peptide_count'].to_numpy(dtype=float)
    covariate = np.log2(np.where(counts > 0, counts, np.nan))
    s2_prior_trend, d0_trend = fit_fdist_trend(s2, df, covariate, frac=lowess_frac)
    s2_shrunk = squeeze_variance(s2, df, s2_prior_trend, d0_trend)
    t_shrunk, p_shrunk = _moderated_test(
        coef, stdev_unscaled, s2_shrunk, np.minimum(df + d0_trend, df_pooled)
    )

    results = pd.DataFrame(
        {
            'log_fc': coef,
            't': t_shrunk,
            'p_raw': p_raw,
            'p_ebayes': p_ebayes,
            'p_shrunk': p_shrunk,
            'p_adj': adjust_pvalues(p_shrunk, method=fdr_method),
            'min_peptide_count': summary['min_peptide_count'].to_numpy(),
            'match_status_summary': summary['match_status_summary'].to_numpy(),
            'n_replicates': matrix.notna().sum(axis=1).to_numpy(),
        },
        index=matrix.index,
    )
    results.index.name = 'protein'
    results = results.sort_values('p_adj', ascending=True, na_position='last', kind='mergesort')

    n_sig = int((results['p_adj'] < 0.05).sum())
    logger.info(
        f"Differential abundance: {len(results)} proteins tested, {n_sig} with p_adj < 0.05 "
        f"(d0={d0:.3g}, trended d0={d0_trend:.3g})"
    )
    return results[RESULT_COLUMNS], PriorSummary(
        d0_constant=float(d0),
        s2_prior_constant=float(s2_prior),
        d0_trend=float(d0_trend),
        n_tested=len(results),
    )
