"""Convergence diagnostics and model comparison.

The potential scale reduction factor follows Gelman and Rubin (1992) with
the degrees of freedom correction of Brooks and Gelman (1998); the
multivariate version uses the largest eigenvalue of W^-1 B / n. Effective
sample sizes come from ArviZ. Models are compared with the deviance
information criterion.

Typical usage example:

    report = diagnose(samples, model)
    report.summary.loc['phi', 'rhat']
    compare_models({'null': dic(null_samples), 'dynamic': dic(dyn_samples)})
"""
from dataclasses import dataclass
from typing import Optional

import logging

import arviz as az
import numpy as np
import pandas as pd
from scipy import stats

def _check_chains(x: np.ndarray, ndim: int) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    if x.ndim != ndim:
        raise ValueError(f'expected a {ndim}-d (chain, draw, ...) array, '
                         f'got shape {x.shape}')
    if x.shape[0] < 2:
        raise ValueError('at least two chains are needed')
    if x.shape[1] < 2:
        raise ValueError('at least two draws per chain are needed')
    return x

def gelman_rubin(x, confidence: float = 0.95):
    """Potential scale reduction factor for one scalar quantity.

    Args:
        x: draws of shape (chain, draw)
        confidence: level of the upper confidence bound
    Returns:
        tuple of the point estimate and upper confidence limit; both inf if
          the chains are stuck at different values, both NaN if the quantity
          never varies at all
    """
    x = _check_chains(x, 2)
    chain_count, draw_count = x.shape

    # NaN (undefined) draws make the diagnostic undefined too
    if np.isnan(x).any():
        return np.nan, np.nan

    xbar = x.mean(axis=1)
    s2 = x.var(axis=1, ddof=1)

    w = s2.mean()
    b = draw_count * xbar.var(ddof=1)
    # chains stuck at different values have not converged at all
    if w <= 0:
        if b > 0:
            return np.inf, np.inf
        return np.nan, np.nan

    muhat = xbar.mean()
    var_w = s2.var(ddof=1) / chain_count
    var_b = 2 * b ** 2 / (chain_count - 1)
    cov_wb = (draw_count / chain_count) * (
        np.cov(s2, xbar ** 2)[0, 1] - 2 * muhat * np.cov(s2, xbar)[0, 1]
    )

    n = draw_count
    m = chain_count
    V = (n - 1) * w / n + (1 + 1 / m) * b / n
    var_V = ((n - 1) ** 2 * var_w + (1 + 1 / m) ** 2 * var_b
             + 2 * (n - 1) * (1 + 1 / m) * cov_wb) / n ** 2

    with np.errstate(divide='ignore', invalid='ignore'):
        df_V = 2 * V ** 2 / var_V
        df_adj = (df_V + 3) / (df_V + 1)
        if not np.isfinite(df_adj):
            df_adj = 1.
        W_df = 2 * w ** 2 / var_w

    R2_fixed = (n - 1) / n
    R2_random = (1 + 1 / m) * (1 / n) * (b / w)
    R2_estimate = R2_fixed + R2_random
    quantile = stats.f.ppf((1 + confidence) / 2, m - 1, W_df) \
        if np.isfinite(W_df) else stats.chi2.ppf((1 + confidence) / 2,
                                                  m - 1) / (m - 1)
    R2_upper = R2_fixed + quantile * R2_random

    return float(np.sqrt(df_adj * R2_estimate)), \
        float(np.sqrt(df_adj * R2_upper))

def multivariate_gelman_rubin(x) -> float:
    """Multivariate potential scale reduction factor.

    Args:
        x: draws of shape (chain, draw, k)
    Returns:
        scalar summary over all k quantities, inf if any quantity is stuck
          at different values in different chains; columns that never vary
          or contain NaN are left out
    """
    x = _check_chains(x, 3)
    chain_count, draw_count, _ = x.shape

    keep = ~np.isnan(x).any(axis=(0, 1))
    within = np.array([x[c].var(axis=0, ddof=1) for c in range(chain_count)])
    between = x.mean(axis=1).var(axis=0, ddof=1)
    frozen = within.mean(axis=0) == 0
    if (keep & frozen & (between > 0)).any():
        return np.inf
    keep &= ~frozen
    x = x[:, :, keep]
    if x.shape[2] == 0:
        return np.nan

    W = np.mean([np.atleast_2d(np.cov(x[c], rowvar=False))
                 for c in range(chain_count)], axis=0)
    xbar = x.mean(axis=1)
    B = draw_count * np.atleast_2d(np.cov(xbar, rowvar=False))

    # largest eigenvalue of W^-1 B / n
    eigenvalues = np.linalg.eigvals(np.linalg.solve(W, B)) / draw_count
    lambda1 = np.max(eigenvalues.real)

    n = draw_count
    m = chain_count
    return float(np.sqrt((n - 1) / n + (m + 1) / m * lambda1))

def effective_sample_size(x) -> float:
    """Number of independent draws the autocorrelated draws are worth.

    Args:
        x: draws of shape (chain, draw), or (draw,) for a single chain
    """
    x = np.atleast_2d(np.asarray(x, dtype=float))
    if np.isnan(x).any() or x.shape[1] < 2:
        return np.nan
    return float(az.ess(x))

def dic(samples, model=None, method: str = 'variance') -> dict:
    """Deviance information criterion.

    Args:
        samples: PosteriorSamples of one model
        model: the sampled model, needed for the plug-in method
        method: 'variance' for pD = var(D) / 2, or 'plugin' for
          pD = mean(D) - D(posterior mean) on the marginal deviance
    Returns:
        dict of DIC, pD and mean deviance
    """
    if method == 'variance':
        deviance = np.array([d.deviance for d in samples.draws])
        d_bar = deviance.mean()
        p_d = deviance.var(ddof=1) / 2

    elif method == 'plugin':
        if model is None:
            raise ValueError('the plugin method needs the model')
        param_draws = samples.param_draws()
        deviance = np.array([model.marginal_deviance(p) for p in param_draws])
        d_bar = deviance.mean()
        d_hat = model.marginal_deviance(model.mean_params(param_draws))
        p_d = d_bar - d_hat

    else:
        raise ValueError(f'method must be "variance" or "plugin", got {method}')

    return {'DIC': float(d_bar + p_d), 'pD': float(p_d),
            'Dbar': float(d_bar)}

def compare_models(results: dict) -> pd.DataFrame:
    """Rank models by DIC.

    Args:
        results: mapping of model name to the output of ``dic``
    Returns:
        pd.DataFrame indexed by model, sorted by DIC, with dDIC relative to
          the best model
    """
    table = pd.DataFrame(results).T[['DIC', 'pD', 'Dbar']].astype(float)
    table = table.sort_values('DIC')
    table['dDIC'] = table['DIC'] - table['DIC'].min()
    table.index.name = 'model'
    return table

@dataclass
class DiagnosticsReport:
    '''Convergence and fit summary for one model's posterior samples.'''
    summary: pd.DataFrame
    mpsrf: float
    dic: Optional[dict]

    @property
    def max_rhat(self) -> float:
        return float(self.summary['rhat'].max())

def summarize(samples, names=None, confidence: float = 0.95) -> pd.DataFrame:
    """Posterior mean, sd, interval, R-hat and ESS per scalar quantity.

    NaN draws of a derived quantity make its summaries NaN.
    """
    tail = (1 - confidence) / 2
    multichain = (len(samples.chain_ids) > 1
                  and samples.check_aligned() > 1)

    rows = []
    for name, x in samples.scalars(names).items():
        flat = x.ravel()
        if np.isnan(flat).any():
            lower = upper = np.nan
        else:
            lower, upper = np.quantile(flat, [tail, 1 - tail])

        rhat, rhat_upper = gelman_rubin(x) if multichain else (np.nan, np.nan)
        rows.append({
            'parameter': name,
            'mean': flat.mean(),
            'sd': flat.std(ddof=1),
            'lower': lower,
            'upper': upper,
            'rhat': rhat,
            'rhat_upper': rhat_upper,
            'ess': effective_sample_size(x)
        })

    return pd.DataFrame(rows).set_index('parameter')

def diagnose(samples, model=None, method: str = 'variance') -> DiagnosticsReport:
    """Summaries, R-hats, multivariate R-hat and DIC for one model."""
    samples.check_aligned()
    summary = summarize(samples)

    # the multivariate factor covers the sampled parameters only
    mpsrf = np.nan
    if len(samples.chain_ids) > 1 and samples.check_aligned() > 1:
        params = samples.scalars(list(samples.draws[0].params))
        mpsrf = multivariate_gelman_rubin(
            np.stack(list(params.values()), axis=-1)
        )

    if method == 'plugin' and model is None:
        fit = None
    else:
        fit = dic(samples, model, method)

    report = DiagnosticsReport(summary=summary, mpsrf=mpsrf, dic=fit)
    logging.info(f'max R-hat {report.max_rhat:.3f}, multivariate {mpsrf:.3f}')
    return report
