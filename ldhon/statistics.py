"""
Statistical inference functions for the LDH optic-nerve pipeline.

Fits the analysis model, then reports fixed effects, Wald ANOVA,
estimated marginal means and pairwise genotype contrasts.
"""

import copy
import itertools

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .models import anova_table, coef_table, fit_model, reference_grid
from .utils import _header, _save_table


def _focal_rows(model, factor, by):
    """Averaged design row for each (by, factor) cell, in level order."""
    grid, levels = reference_grid(model)
    for col in [factor] + ([by] if by else []):
        if col not in levels or not isinstance(levels[col][0], str):
            raise ValueError(f"'{col}' is not a categorical predictor of '{model.formula}'")

    X = model.design(grid)
    by_levels = levels[by] if by else [None]

    cells = []
    for by_level in by_levels:
        for level in levels[factor]:
            mask = grid[factor] == level
            if by:
                mask &= grid[by] == by_level
            cells.append((by_level, level, X[mask.to_numpy()].mean(axis=0).to_numpy()))
    return cells


def marginal_means(model, factor, by=None, level=0.95):
    """
    Estimated marginal means of ``factor`` (optionally within ``by``).

    Means are averaged equally over the other categorical predictors.
    Log-link models are back-transformed to the response scale (delta
    method SE, transformed confidence limits).

    Returns
    -------
    pd.DataFrame
        Columns [by], factor, 'emmean', 'SE', 'lower_CL', 'upper_CL'.
    """
    beta = model.params.to_numpy()
    cov = model.cov.to_numpy()
    crit = stats.norm.ppf(0.5 + level / 2)

    rows = []
    for by_level, factor_level, x in _focal_rows(model, factor, by):
        eta = float(x @ beta)
        se = float(np.sqrt(x @ cov @ x))
        lower, upper = eta - crit * se, eta + crit * se
        if model.link == 'log':
            eta, se = np.exp(eta), np.exp(eta) * se
            lower, upper = np.exp(lower), np.exp(upper)

        row = {by: by_level} if by else {}
        row.update({factor: factor_level, 'emmean': eta, 'SE': se,
                    'lower_CL': lower, 'upper_CL': upper})
        rows.append(row)
    return pd.DataFrame(rows)


def pairwise_contrasts(model, factor, by=None, correction='holm'):
    """
    All pairwise differences between levels of ``factor`` on the link scale.

    Contrasts are 'a - b' for a listed before b (e.g. 'ctr - mut'). P-values
    come from asymptotic z tests and are adjusted within each ``by`` group.
    Log-link models also report the ratio exp(estimate).

    Returns
    -------
    pd.DataFrame
        Columns [by], 'contrast', 'estimate', 'SE', 'z_ratio', 'p_value',
        'p_adjusted' (and 'ratio' for log-link models).
    """
    beta = model.params.to_numpy()
    cov = model.cov.to_numpy()

    cells = _focal_rows(model, factor, by)
    groups = {}
    for by_level, factor_level, x in cells:
        groups.setdefault(by_level, []).append((factor_level, x))

    frames = []
    for by_level, members in groups.items():
        rows = []
        for (level_a, x_a), (level_b, x_b) in itertools.combinations(members, 2):
            L = x_a - x_b
            estimate = float(L @ beta)
            se = float(np.sqrt(L @ cov @ L))
            z = estimate / se if se > 0 else np.nan
            row = {by: by_level} if by else {}
            row.update({
                'contrast': f"{level_a} - {level_b}",
                'estimate': estimate,
                'SE': se,
                'z_ratio': z,
                'p_value': 2 * stats.norm.sf(abs(z)) if np.isfinite(z) else np.nan,
            })
            if model.link == 'log':
                row['ratio'] = np.exp(estimate)
            rows.append(row)

        frame = pd.DataFrame(rows)
        pvalues = frame['p_value'].to_numpy(dtype=float)
        adjusted = pvalues.copy()
        valid = ~np.isnan(pvalues)
        if correction not in (None, 'none') and valid.any():
            _, adj, _, _ = multipletests(pvalues[valid], method=correction)
            adjusted[valid] = adj
        frame['p_adjusted'] = adjusted
        frames.append(frame)

    return pd.concat(frames, ignore_index=True)


def stat_on(data):
    """
    Fit the analysis model and compute inference tables.

    Parameters
    ----------
    data : dict
        Output from agg_on().

    Returns
    -------
    dict
        Updated data dictionary with:
        - 'model': FittedModel
        - 'coefficients': fixed-effect table
        - 'anova': Wald chi-square table per term
        - 'emmeans': estimated marginal means of the focal factor
        - 'contrasts': pairwise contrasts of the focal factor

    Example
    -------
    >>> data = stat_on(agg_on(shape_on(prep_on(config, analysis))))
    >>> data['contrasts']
    """
    analysis = data['analysis']
    config = data['config']
    output_dirs = data['output_dirs']
    name = analysis['name']

    formula = analysis['formula']
    family = analysis['family']
    random = analysis['random']
    factor = analysis['factor']
    by = analysis.get('by')
    correction = config['options']['correction']

    _header(f"STATISTICAL ANALYSIS: {name}")
    print(f"\nModel:   {formula}")
    print(f"Family:  {family}")
    print(f"Random:  {' + '.join(f'(1|{term})' for term in random)}")

    print(f"\n[1/4] Fitting model on {len(data['long_df'])} rows...")
    model = fit_model(formula, data['long_df'], family=family, random=random)
    print(f"  > Converged")
    if model.alpha is not None:
        print(f"  Negative-binomial dispersion (alpha): {model.alpha:.4f}")
    for message in model.warnings:
        print(f"  Warning: {message}")

    print(f"\n[2/4] Fixed effects")
    coefficients = coef_table(model)
    print(coefficients.to_string(index=False))

    print(f"\n[3/4] Wald chi-square tests (sum-to-zero contrasts)")
    anova = anova_table(model)
    print(anova.to_string(index=False))

    print(f"\n[4/4] Estimated marginal means of {factor}" + (f" by {by}" if by else ""))
    emmeans = marginal_means(model, factor, by=by)
    print(emmeans.to_string(index=False))

    print(f"\n  Pairwise contrasts ({correction} adjustment)")
    contrasts = pairwise_contrasts(model, factor, by=by, correction=correction)
    print(contrasts.to_string(index=False))

    print(f"\nSaving results...")
    _save_table(coefficients, output_dirs, f"{name}_coefficients.csv")
    _save_table(anova, output_dirs, f"{name}_anova.csv")
    _save_table(emmeans, output_dirs, f"{name}_emmeans.csv")
    _save_table(contrasts, output_dirs, f"{name}_contrasts.csv")

    data_updated = copy.copy(data)
    data_updated['model'] = model
    data_updated['coefficients'] = coefficients
    data_updated['anova'] = anova
    data_updated['emmeans'] = emmeans
    data_updated['contrasts'] = contrasts
    return data_updated
