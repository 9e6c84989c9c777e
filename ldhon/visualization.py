"""
Visualization functions for the LDH optic-nerve pipeline.

Raw-data scatter plots with fitted-model overlays, and simulated-residual
diagnostic plots.
"""

import os

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .models import predict
from .utils import _header

# Consistent color palette for an arbitrary number of factor levels
_PALETTE = [
    '#1f77b4', '#d62728', '#2ca02c', '#ff7f0e', '#9467bd',
    '#8c564b', '#e377c2', '#7f7f7f', '#bcbd22', '#17becf',
]


def _level_color_map(levels):
    """Build a color map for an arbitrary number of factor levels."""
    return {level: _PALETTE[i % len(_PALETTE)] for i, level in enumerate(levels)}


def prediction_grid(df, covariate, factors, group='Animal', n=100):
    """
    Regular grid over a continuous covariate for every observed group.

    Each observed combination of ``group`` and ``factors`` (so each animal
    with its own genotype) gets ``n`` evenly spaced covariate values
    spanning the covariate's observed range.

    Returns
    -------
    pd.DataFrame
        Columns [group] + factors + [covariate].
    """
    keys = ([group] if group else []) + list(factors)
    values = np.linspace(df[covariate].min(), df[covariate].max(), n)
    combos = df[keys].drop_duplicates().sort_values(keys).reset_index(drop=True)

    grid = combos.loc[combos.index.repeat(n)].reset_index(drop=True)
    grid[covariate] = np.tile(values, len(combos))
    return grid


def _plot_curves(ax, data, model, covariate, colors):
    columns = data['config']['columns']
    animal_col = columns['animal']
    genotype_col = columns['genotype']
    long_df = data['long_df']
    factors = [genotype_col] + list(data.get('by') or [])

    sns.scatterplot(data=long_df, x=covariate, y=model.response, hue=genotype_col,
                    palette=colors, hue_order=list(colors), s=18, alpha=0.4,
                    edgecolor='none', ax=ax)

    animal_grid = prediction_grid(long_df, covariate, factors, group=animal_col)
    animal_grid['prediction'] = predict(model, animal_grid, include_random=True)
    for _, curve in animal_grid.groupby([animal_col] + factors, sort=False):
        ax.plot(curve[covariate], curve['prediction'],
                color=colors[curve[genotype_col].iloc[0]], linewidth=0.8, alpha=0.5)

    population_grid = prediction_grid(long_df, covariate, factors, group=None)
    population_grid['prediction'] = predict(model, population_grid, include_random=False)
    for _, curve in population_grid.groupby(factors, sort=False):
        ax.plot(curve[covariate], curve['prediction'],
                color=colors[curve[genotype_col].iloc[0]], linewidth=2.5)

    ax.set_xlabel(covariate, fontsize=12, fontweight='bold')


def _plot_emmeans(ax, data, model, colors):
    genotype_col = data['config']['columns']['genotype']
    factor = data['analysis']['factor']
    by = data['analysis'].get('by')
    long_df = data['long_df']
    emmeans = data['emmeans']

    factor_levels = list(emmeans[factor].unique())

    if by:
        x_levels = list(emmeans[by].unique())
        sns.stripplot(data=long_df, x=by, y=model.response, hue=factor,
                      order=x_levels, hue_order=factor_levels,
                      palette=colors if factor == genotype_col else None,
                      dodge=True, alpha=0.4, size=4, jitter=0.15, ax=ax)
        width = 0.8 / len(factor_levels)
        offsets = {lvl: (j - (len(factor_levels) - 1) / 2) * width for j, lvl in enumerate(factor_levels)}
        positions = [x_levels.index(row[by]) + offsets[row[factor]] for _, row in emmeans.iterrows()]
        ax.set_xlabel(by, fontsize=12, fontweight='bold')
    else:
        sns.stripplot(data=long_df, x=factor, y=model.response, hue=factor,
                      order=factor_levels, hue_order=factor_levels,
                      palette=colors if factor == genotype_col else None,
                      alpha=0.4, size=4, jitter=0.15, legend=False, ax=ax)
        positions = [factor_levels.index(lvl) for lvl in emmeans[factor]]
        ax.set_xlabel(factor, fontsize=12, fontweight='bold')

    ax.errorbar(
        positions, emmeans['emmean'],
        yerr=[emmeans['emmean'] - emmeans['lower_CL'], emmeans['upper_CL'] - emmeans['emmean']],
        fmt='D', color='black', markersize=7, capsize=5, linewidth=1.5, label='EMM (95% CI)',
    )


def _plot_residuals(sim, title, path):
    scaled = np.sort(sim['scaled'])
    expected = (np.arange(1, len(scaled) + 1) - 0.5) / len(scaled)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    axes[0].scatter(expected, scaled, s=12, alpha=0.6, color='#1f77b4', edgecolors='none')
    axes[0].plot([0, 1], [0, 1], color='#d62728', linestyle='--', linewidth=1)
    axes[0].set_xlabel('Expected (uniform)', fontsize=11)
    axes[0].set_ylabel('Observed scaled residual', fontsize=11)
    axes[0].set_title('QQ plot of scaled residuals', fontsize=12, fontweight='bold')
    axes[0].grid(alpha=0.3)

    rank = pd.Series(sim['fitted']).rank(pct=True)
    axes[1].scatter(rank, sim['scaled'], s=12, alpha=0.6, color='#1f77b4', edgecolors='none')
    for q in (0.25, 0.5, 0.75):
        axes[1].axhline(q, color='black', linestyle='--', linewidth=1, alpha=0.5)
    axes[1].set_xlabel('Model prediction (rank transformed)', fontsize=11)
    axes[1].set_ylabel('Scaled residual', fontsize=11)
    axes[1].set_ylim(0, 1)
    axes[1].set_title('Residuals vs predicted', fontsize=12, fontweight='bold')
    axes[1].grid(alpha=0.3)

    fig.suptitle(title, fontsize=13, fontweight='bold')
    plt.tight_layout()
    plt.savefig(path, dpi=300, bbox_inches='tight')
    plt.close()


def viz_on(data):
    """
    Create result and diagnostic plots for one analysis.

    Creates:
    - Raw data coloured by genotype with fitted curves per animal (thin)
      and per genotype (thick) when the analysis has a continuous covariate,
      otherwise a strip plot with estimated marginal means and 95% CIs
    - QQ and residual-vs-predicted plots of the simulated residuals

    Parameters
    ----------
    data : dict
        Output from diag_on() (or stat_on(); the residual plot is skipped).

    Returns
    -------
    list of str
        Paths of the saved figures.

    Example
    -------
    >>> data = diag_on(stat_on(data))
    >>> viz_on(data)
    """
    analysis = data['analysis']
    name = analysis['name']
    model = data['model']
    genotype_col = data['config']['columns']['genotype']
    viz_dir = data['output_dirs']['viz']

    _header(f"CREATING VISUALIZATIONS: {name}")
    print(f"\nOutput directory: {viz_dir}")

    colors = _level_color_map(sorted(data['long_df'][genotype_col].unique()))
    saved = []

    print(f"\n[1/2] Plotting data and model fit...")
    fig, ax = plt.subplots(figsize=(9, 7))

    covariate = analysis.get('covariate')
    if covariate:
        _plot_curves(ax, data, model, covariate, colors)
        suffix = 'fit'
    else:
        _plot_emmeans(ax, data, model, colors)
        suffix = 'emmeans'

    ax.set_ylabel(model.response, fontsize=12, fontweight='bold')
    ax.set_title(f"{name}: {model.formula}", fontsize=13, fontweight='bold')
    ax.legend(fontsize=10)
    ax.grid(alpha=0.3)

    fit_path = os.path.join(viz_dir, f"{name}_{suffix}.pdf")
    plt.tight_layout()
    plt.savefig(fit_path, dpi=300, bbox_inches='tight')
    plt.close()
    saved.append(fit_path)
    print(f"  > Saved: {os.path.basename(fit_path)}")

    print(f"\n[2/2] Plotting residual diagnostics...")
    if 'simulation' in data:
        resid_path = os.path.join(viz_dir, f"{name}_residuals.pdf")
        _plot_residuals(data['simulation'], f"{name}: simulated residuals ({model.family})", resid_path)
        saved.append(resid_path)
        print(f"  > Saved: {os.path.basename(resid_path)}")
    else:
        print(f"  No simulated residuals available, skipping")

    return saved
