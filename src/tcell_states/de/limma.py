"""
Linear models with empirical-Bayes moderated t statistics for microarrays.

Fits one ordinary least squares model per gene against a shared design
matrix, then shrinks the per-gene residual variances toward a common prior
(scaled inverse chi-square, fitted by moments of the log variances) before
computing moderated t statistics. Small-sample two-group comparisons gain
power because each gene borrows strength from all the others.

Typical use:

    design = design_matrix(samples, "treatment", "unstim", "stim")
    fit = e_bayes(lm_fit(expression[design.index], design))
    table = top_table(fit)
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

INTERCEPT = "intercept"
MIN_SAMPLES_PER_LEVEL = 2

TOP_TABLE_COLUMNS = [
    "log2_fold_change",
    "average_expression",
    "t_statistic",
    "pvalue",
    "pvalue_adjusted",
]


def coefficient_name(column: str, test: str, reference: str) -> str:
    return f"{column}: {test} vs {reference}"


def design_matrix(
    samples: pd.DataFrame,
    column: str,
    reference: str,
    test: str,
) -> pd.DataFrame:
    """
    Build a two-group treatment-contrast design.

    Samples whose ``column`` value is neither level are left out.

    Args:
        samples: Sample table indexed by sample accession
        column: Metadata column holding the group labels
        reference: Level used as baseline (intercept)
        test: Level whose difference from ``reference`` is estimated

    Returns:
        DataFrame indexed by sample with an intercept and one indicator column

    Raises:
        ValueError: If the column is missing, the levels coincide, or a level
            has fewer than two samples
    """
    if column not in samples.columns:
        raise ValueError(
            f"No column {column!r} in sample table; columns are {list(samples.columns)}"
        )
    reference, test = str(reference), str(test)
    if reference == test:
        raise ValueError("Reference and test levels must differ")

    labels = samples[column].map(lambda v: None if pd.isna(v) else str(v))
    counts = {level: int((labels == level).sum()) for level in (reference, test)}
    short = {level: n for level, n in counts.items() if n < MIN_SAMPLES_PER_LEVEL}
    if short:
        available = sorted(labels.dropna().unique())
        raise ValueError(
            f"Need at least {MIN_SAMPLES_PER_LEVEL} samples per level of {column!r}; "
            f"got {short} (levels present: {available})"
        )

    kept = labels[labels.isin([reference, test])]
    dropped = len(labels) - len(kept)
    if dropped:
        logger.info("Design leaves out %d samples outside %s/%s", dropped, reference, test)

    design = pd.DataFrame(
        {
            INTERCEPT: 1.0,
            coefficient_name(column, test, reference): (kept == test).astype(float),
        },
        index=kept.index,
    )
    return design


@dataclass(frozen=True)
class LinearModelFit:
    """Per-gene least squares fit, optionally with moderated statistics.

    Attributes:
        coefficients: genes x coefficients estimates
        stdev_unscaled: genes x coefficients unscaled standard errors
        sigma: Residual standard deviation of each gene
        df_residual: Residual degrees of freedom of each gene
        average_expression: Mean log expression of each gene
        design: Design matrix the fit was made against
        df_prior, s2_prior: Fitted prior, set by ``e_bayes``
        s2_post: Posterior (shrunken) variances
        t, p_value: Moderated t statistics and two-sided p-values
        df_total: Degrees of freedom of the moderated t
    """

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    average_expression: pd.Series
    design: pd.DataFrame
    df_prior: Optional[float] = None
    s2_prior: Optional[float] = None
    s2_post: Optional[pd.Series] = None
    t: Optional[pd.DataFrame] = None
    p_value: Optional[pd.DataFrame] = None
    df_total: Optional[pd.Series] = None

    @property
    def genes(self) -> pd.Index:
        return self.coefficients.index

    @property
    def is_moderated(self) -> bool:
        return self.t is not None


def lm_fit(expression: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Fit a linear model to every row of ``expression``.

    Args:
        expression: genes x samples log expression; columns are matched to
            ``design.index`` by name
        design: samples x coefficients design matrix

    Raises:
        ValueError: On missing samples, missing values, a rank-deficient
            design or no residual degrees of freedom
    """
    missing = [s for s in design.index if s not in expression.columns]
    if missing:
        raise ValueError(f"Design samples missing from expression table: {missing}")

    y = expression[list(design.index)].to_numpy(dtype=float)
    if np.isnan(y).any():
        raise ValueError("Expression table contains missing values")
    x = design.to_numpy(dtype=float)
    n_samples, n_coef = x.shape

    rank = np.linalg.matrix_rank(x)
    if rank < n_coef:
        raise ValueError(f"Design matrix is rank deficient ({rank} < {n_coef})")
    df = n_samples - n_coef
    if df < 1:
        raise ValueError("No residual degrees of freedom: need more samples than coefficients")

    xtx_inv = np.linalg.inv(x.T @ x)
    beta = y @ x @ xtx_inv
    residuals = y - beta @ x.T
    sigma = np.sqrt(np.sum(residuals ** 2, axis=1) / df)
    stdev = np.tile(np.sqrt(np.diag(xtx_inv)), (y.shape[0], 1))

    genes = expression.index
    logger.info("Fitted %d genes on %d samples (%d residual df)", len(genes), n_samples, df)
    return LinearModelFit(
        coefficients=pd.DataFrame(beta, index=genes, columns=design.columns),
        stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=design.columns),
        sigma=pd.Series(sigma, index=genes, name="sigma"),
        df_residual=pd.Series(float(df), index=genes, name="df_residual"),
        average_expression=pd.Series(y.mean(axis=1), index=genes, name="average_expression"),
        design=design,
    )


def trigamma_inverse(y: Union[float, np.ndarray]) -> np.ndarray:
    """Solve trigamma(x) = y for x > 0 by Newton iteration."""
    y = np.atleast_1d(np.asarray(y, dtype=float))
    x = np.empty_like(y)

    large = y > 1e7
    small = y < 1e-6
    x[large] = 1.0 / np.sqrt(y[large])
    x[small] = 1.0 / y[small]

    mid = ~(large | small)
    if mid.any():
        ym = y[mid]
        xm = 0.5 + 1.0 / ym
        for _ in range(50):
            tri = special.polygamma(1, xm)
            step = tri * (1 - tri / ym) / special.polygamma(2, xm)
            xm = xm + step
            if np.max(-step / xm) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse did not converge")
        x[mid] = xm
    return x


def fit_f_dist(variances: np.ndarray, df1: np.ndarray):
    """
    Fit a scaled F distribution to residual variances by moments of logs.

    Returns:
        (scale s2_prior, df_prior); df_prior is ``inf`` when the observed
        spread of the log variances is no larger than sampling alone explains
    """
    variances = np.asarray(variances, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), variances.shape)

    ok = np.isfinite(variances) & np.isfinite(df1) & (variances > -1e-15) & (df1 > 1e-15)
    x = np.maximum(variances[ok], 0)
    d = df1[ok]
    if len(x) < 2:
        raise ValueError("Need at least two genes to estimate a variance prior")

    m = np.median(x)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    e = np.log(x) - special.digamma(d / 2) + np.log(d / 2)
    e_mean = e.mean()
    e_var = np.sum((e - e_mean) ** 2) / (len(e) - 1) - np.mean(special.polygamma(1, d / 2))

    if e_var > 0:
        df2 = 2 * float(trigamma_inverse(e_var)[0])
        s20 = float(np.exp(e_mean + special.digamma(df2 / 2) - np.log(df2 / 2)))
    else:
        df2 = np.inf
        s20 = float(np.mean(x))
    return s20, df2


def squeeze_var(variances: np.ndarray, df: np.ndarray):
    """
    Shrink per-gene variances toward the fitted prior.

    Returns:
        (posterior variances, s2_prior, df_prior)
    """
    variances = np.asarray(variances, dtype=float)
    df = np.asarray(df, dtype=float)
    s20, df_prior = fit_f_dist(variances, df)
    if np.isinf(df_prior):
        posterior = np.full_like(variances, s20)
    else:
        posterior = (df_prior * s20 + df * variances) / (df_prior + df)
    return posterior, s20, df_prior


def e_bayes(fit: LinearModelFit) -> LinearModelFit:
    """
    Moderate the t statistics of a fit.

    The total degrees of freedom of each gene are its residual df plus the
    prior df, capped at the residual df pooled over all genes.

    Returns:
        Copy of ``fit`` with prior, posterior variance, t and p-value fields set
    """
    s2 = fit.sigma.to_numpy() ** 2
    df_res = fit.df_residual.to_numpy()
    s2_post, s20, df_prior = squeeze_var(s2, df_res)

    df_total = np.minimum(df_res + df_prior, df_res.sum())
    t = fit.coefficients.to_numpy() / fit.stdev_unscaled.to_numpy() / np.sqrt(s2_post)[:, None]
    p = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    logger.info("Variance prior: s2=%.4g, df=%.4g", s20, df_prior)
    genes = fit.genes
    columns = fit.coefficients.columns
    return replace(
        fit,
        df_prior=float(df_prior),
        s2_prior=s20,
        s2_post=pd.Series(s2_post, index=genes, name="s2_post"),
        t=pd.DataFrame(t, index=genes, columns=columns),
        p_value=pd.DataFrame(p, index=genes, columns=columns),
        df_total=pd.Series(df_total, index=genes, name="df_total"),
    )


def top_table(fit: LinearModelFit, coef: Optional[str] = None) -> pd.DataFrame:
    """
    Tabulate one coefficient for every gene, most significant first.

    Args:
        fit: Moderated fit from ``e_bayes``
        coef: Coefficient name, defaults to the last design column

    Returns:
        DataFrame indexed by gene with ``log2_fold_change``,
        ``average_expression``, ``t_statistic``, ``pvalue`` and
        ``pvalue_adjusted`` (Benjamini-Hochberg)
    """
    if not fit.is_moderated:
        raise ValueError("Fit has no moderated statistics; run e_bayes first")
    coef = coef or fit.coefficients.columns[-1]
    if coef not in fit.coefficients.columns:
        raise ValueError(f"Unknown coefficient {coef!r}; have {list(fit.coefficients.columns)}")

    pvalues = fit.p_value[coef].to_numpy()
    _, adjusted, _, _ = multipletests(pvalues, method="fdr_bh")

    table = pd.DataFrame(
        {
            "log2_fold_change": fit.coefficients[coef].to_numpy(),
            "average_expression": fit.average_expression.to_numpy(),
            "t_statistic": fit.t[coef].to_numpy(),
            "pvalue": pvalues,
            "pvalue_adjusted": adjusted,
        },
        index=fit.genes,
    )
    table["_abs_t"] = table["t_statistic"].abs()
    table = table.sort_values(["pvalue", "_abs_t"], ascending=[True, False], kind="mergesort")
    return table.drop(columns="_abs_t")
