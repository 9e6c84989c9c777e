"""
Residual diagnostics for the LDH optic-nerve pipeline.

Simulation-based checks of the model family: responses are re-drawn from
the fitted model, each observation is located within its simulated
distribution (scaled residual in [0, 1]) and the results are tested for
dispersion and uniformity. The outcome is reported, never acted on.
"""

import copy

import numpy as np
import pandas as pd
from scipy import stats

from .models import fit_model
from .utils import _header, _save_table

COUNT_FAMILIES = ('negative_binomial', 'poisson')


def _simulate_responses(model, rng, n_sim):
    mu = model.fitted()
    n = len(mu)

    if model.family == 'gaussian':
        sd = np.sqrt(model.result.scale)
        return mu[:, None] + rng.normal(0.0, sd, size=(n, n_sim))

    mu = np.clip(mu, 1e-10, None)
    if model.family == 'poisson':
        return rng.poisson(mu[:, None], size=(n, n_sim)).astype(float)

    size = 1.0 / model.alpha
    prob = size / (size + mu)
    return rng.negative_binomial(size, prob[:, None], size=(n, n_sim)).astype(float)


def simulate_residuals(model, n_sim=250, seed=None):
    """
    Parametric-bootstrap residuals from a fitted model.

    Responses are simulated around the fitted values (conditional on the
    estimated random intercepts for mixed models). Count responses are
    jittered by U(-0.5, 0.5) before ranking so ties do not bias the
    scaled residuals.

    Parameters
    ----------
    model : FittedModel
    n_sim : int
        Number of simulated data sets.
    seed : int, optional
        Seed for numpy's default generator.

    Returns
    -------
    dict
        'observed', 'fitted', 'simulated' (n x n_sim), 'scaled' and 'family'.
    """
    rng = np.random.default_rng(seed)
    observed = model.endog
    fitted = model.fitted()
    simulated = _simulate_responses(model, rng, n_sim)

    if model.family in COUNT_FAMILIES:
        jitter_sim = simulated + rng.uniform(-0.5, 0.5, size=simulated.shape)
        jitter_obs = observed + rng.uniform(-0.5, 0.5, size=observed.shape)
        scaled = (jitter_sim < jitter_obs[:, None]).mean(axis=1)
    else:
        scaled = (simulated < observed[:, None]).mean(axis=1)

    return {
        'family': model.family,
        'observed': observed,
        'fitted': fitted,
        'simulated': simulated,
        'scaled': scaled,
    }


def test_dispersion(sim, alpha=0.05):
    """
    Compare the spread of observed and simulated residuals.

    The statistic is var(y - fitted) divided by the mean of the same
    quantity over the simulations; > 1 means over-dispersion. The p-value
    is two-sided from the simulated distribution.
    """
    fitted = sim['fitted']
    observed_spread = np.var(sim['observed'] - fitted)
    simulated_spread = np.var(sim['simulated'] - fitted[:, None], axis=0)

    ratio = observed_spread / simulated_spread.mean()
    p_value = min(1.0, 2 * min(
        (simulated_spread >= observed_spread).mean(),
        (simulated_spread <= observed_spread).mean(),
    ))
    return {
        'test': 'dispersion',
        'statistic': ratio,
        'p_value': p_value,
        'flagged': p_value < alpha,
        'direction': 'over' if ratio > 1 else 'under',
    }


def test_uniformity(sim, alpha=0.05):
    """Kolmogorov-Smirnov test of the scaled residuals against U(0, 1)."""
    result = stats.kstest(sim['scaled'], 'uniform')
    return {
        'test': 'uniformity',
        'statistic': float(result.statistic),
        'p_value': float(result.pvalue),
        'flagged': bool(result.pvalue < alpha),
    }


def _run_checks(model, n_sim, seed, alpha):
    sim = simulate_residuals(model, n_sim=n_sim, seed=seed)
    rows = []
    for check in (test_dispersion(sim, alpha), test_uniformity(sim, alpha)):
        row = {'family': model.family}
        row.update(check)
        rows.append(row)
    return sim, rows


def diag_on(data):
    """
    Run simulated-residual diagnostics for the analysis model.

    For count analyses with 'compare_families' set, the same formula is
    also fitted as a Poisson model so the dispersion of both families can
    be compared.

    Parameters
    ----------
    data : dict
        Output from stat_on().

    Returns
    -------
    dict
        Updated data dictionary with 'simulation' (residuals of the
        analysis model) and 'diagnostics' (one row per family and test).
    """
    analysis = data['analysis']
    options = data['config']['options']
    model = data['model']
    n_sim = options['n_simulations']
    seed = options['seed']
    alpha = options['alpha']

    _header(f"RESIDUAL DIAGNOSTICS: {analysis['name']}")
    print(f"\nSimulations: {n_sim} (seed {seed})")

    print(f"\n[1/2] Simulating residuals for the {model.family} model...")
    sim, rows = _run_checks(model, n_sim, seed, alpha)

    if analysis.get('compare_families') and model.family == 'negative_binomial':
        print(f"\n[2/2] Refitting as poisson for comparison...")
        poisson = fit_model(model.formula, data['long_df'], family='poisson', random=[model.group])
        _, poisson_rows = _run_checks(poisson, n_sim, seed, alpha)
        rows.extend(poisson_rows)
    else:
        print(f"\n[2/2] No family comparison requested")

    diagnostics = pd.DataFrame(rows)
    print()
    print(diagnostics.to_string(index=False))

    for row in rows:
        if row['flagged']:
            detail = f" ({row['direction']}-dispersion)" if row['test'] == 'dispersion' else ''
            print(f"  Warning: {row['family']} model fails the {row['test']} test{detail}")

    _save_table(diagnostics, data['output_dirs'], f"{analysis['name']}_diagnostics.csv")

    data_updated = copy.copy(data)
    data_updated['simulation'] = sim
    data_updated['diagnostics'] = diagnostics
    return data_updated
