"""
Hierarchical averaging for the LDH optic-nerve pipeline.

Measurements are averaged per image, image means per animal and animal
means per genotype. Animal and genotype levels also carry the standard
deviation and standard error of the mean (StDev / sqrt(n)).
"""

import copy
import os

import numpy as np
import pandas as pd

from .utils import _header

STAT_PREFIXES = ('mean_', 'StDev_', 'SEM_')


def collapse_prefix(name):
    """
    Reduce nested statistic prefixes to a single one.

    >>> collapse_prefix('mean_mean_Area')
    'mean_Area'
    >>> collapse_prefix('SEM_mean_Density')
    'SEM_Density'
    """
    for prefix in STAT_PREFIXES:
        if name.startswith(prefix):
            rest = name[len(prefix):]
            while rest.startswith('mean_'):
                rest = rest[len('mean_'):]
            return prefix + rest
    return name


def _source_column(df, metric):
    mean_col = f"mean_{metric}"
    return mean_col if mean_col in df.columns else metric


def _describe(grouped, df, metrics):
    """Mean, StDev and SEM of each metric within each group."""
    out = {}
    for metric in metrics:
        col = _source_column(df, metric)
        stats = grouped[col].agg(['mean', 'std', 'count'])
        out[collapse_prefix(f"mean_{col}")] = stats['mean']
        out[collapse_prefix(f"StDev_{col}")] = stats['std']
        out[collapse_prefix(f"SEM_{col}")] = stats['std'] / np.sqrt(stats['count'])
    return pd.DataFrame(out)


def image_means(df, metrics, by=(), animal_col='Animal', genotype_col='Genotype', image_col='Image'):
    """
    Average measurements per image.

    Parameters
    ----------
    df : pd.DataFrame
        Long measurement table.
    metrics : list of str
        Metric columns to average.
    by : sequence of str
        Extra grouping keys (e.g. ['Type']).

    Returns
    -------
    pd.DataFrame
        One row per (Animal, Genotype, Image, *by*) with 'mean_<metric>'
        columns and 'n_measurements'.
    """
    keys = [animal_col, genotype_col, image_col] + list(by)
    grouped = df.groupby(keys, sort=True)

    out = grouped[list(metrics)].mean()
    out.columns = [collapse_prefix(f"mean_{m}") for m in metrics]
    out['n_measurements'] = grouped.size()
    return out.reset_index()


def animal_stats(image_df, metrics, by=(), animal_col='Animal', genotype_col='Genotype'):
    """
    Mean, StDev and SEM of per-image means for every animal.

    Returns
    -------
    pd.DataFrame
        One row per (Animal, Genotype, *by*) with 'mean_', 'StDev_' and
        'SEM_' columns for each metric and 'n_images'.
    """
    keys = [animal_col, genotype_col] + list(by)
    grouped = image_df.groupby(keys, sort=True)

    out = _describe(grouped, image_df, metrics)
    out['n_images'] = grouped.size()
    return out.reset_index()


def genotype_stats(animal_df, metrics, by=(), genotype_col='Genotype'):
    """
    Mean, StDev and SEM of per-animal means for every genotype.

    Returns
    -------
    pd.DataFrame
        One row per (Genotype, *by*) with statistic columns, 'n_animals'
        and the total 'n_images' of those animals.
    """
    keys = [genotype_col] + list(by)
    grouped = animal_df.groupby(keys, sort=True)

    out = _describe(grouped, animal_df, metrics)
    out['n_animals'] = grouped.size()
    if 'n_images' in animal_df.columns:
        out['n_images'] = grouped['n_images'].sum()
    return out.reset_index()


def agg_on(data):
    """
    Aggregate the shaped table: measurement -> image -> animal -> genotype.

    Parameters
    ----------
    data : dict
        Output from shape_on().

    Returns
    -------
    dict
        Updated data dictionary with 'image_df', 'animal_df' and
        'genotype_df'.

    Example
    -------
    >>> data = shape_on(prep_on(config, analysis))
    >>> data = agg_on(data)
    >>> data['genotype_df'][['Genotype', 'mean_Density', 'SEM_Density']]
    """
    analysis = data['analysis']
    columns = data['config']['columns']
    animal_col = columns['animal']
    genotype_col = columns['genotype']
    image_col = columns['image']

    _header(f"AGGREGATING: {analysis['name']}")

    long_df = data['long_df']
    metrics = data['metrics']
    by = data.get('by', [])

    print(f"\n[1/3] Averaging {len(long_df)} rows per image...")
    image_df = image_means(long_df, metrics, by, animal_col, genotype_col, image_col)
    print(f"  > {len(image_df)} image rows")

    print(f"\n[2/3] Summarizing images per animal...")
    animal_df = animal_stats(image_df, metrics, by, animal_col, genotype_col)
    print(f"  > {len(animal_df)} animal rows")

    print(f"\n[3/3] Summarizing animals per genotype...")
    genotype_df = genotype_stats(animal_df, metrics, by, genotype_col)

    shown = [genotype_col] + list(by) + ['n_animals', 'n_images']
    for metric in metrics:
        shown += [f"mean_{metric}", f"SEM_{metric}"]
    print()
    print(genotype_df[shown].to_string(index=False))

    if data['config']['options']['export_intermediate']:
        tables_dir = data['output_dirs']['tables']
        for level, table in (('image', image_df), ('animal', animal_df), ('genotype', genotype_df)):
            filename = f"{analysis['name']}_{level}_summary.csv"
            table.to_csv(os.path.join(tables_dir, filename), index=False)
            print(f"  > Saved: {filename}")

    data_updated = copy.copy(data)
    data_updated['image_df'] = image_df
    data_updated['animal_df'] = animal_df
    data_updated['genotype_df'] = genotype_df
    return data_updated
