"""
Analysis driver for the LDH optic-nerve pipeline.

Each configured analysis runs the same stage sequence on its own data:

prep_on -> shape_on -> agg_on -> stat_on -> diag_on -> viz_on

Stages receive only the previous stage's output, so nothing leaks from
one analysis into the next.
"""

import copy
import os
import re

from .aggregation import agg_on
from .diagnostics import diag_on
from .errors import LoadError, ModelFitError, ShapeError
from .prep import prep_on
from .shaping import COLUMN_MAP, shape_on
from .statistics import stat_on
from .utils import _header, _load_config, save_data
from .visualization import viz_on

# Defaults per analysis kind. Templates are filled with the configured
# column names ({animal}, {genotype}) and the count column ({count}).
ANALYSES = {
    'staining': {
        'formula': 'Density ~ Type * {genotype}',
        'random': ['{animal}', '{animal}:Type'],
        'family': 'gaussian',
        'factor': '{genotype}',
        'by': 'Type',
        'required_columns': [],
        'numeric_columns': list(COLUMN_MAP),
    },
    'axon_staining': {
        'formula': 'Density ~ AxonDiameter * {genotype}',
        'random': ['{animal}'],
        'family': 'gaussian',
        'factor': '{genotype}',
        'covariate': 'AxonDiameter',
        'types': ['Axon'],
        'required_columns': ['AxonArea', 'AxonGold'],
        'numeric_columns': list(COLUMN_MAP) + ['FiberArea'],
    },
    'gratio': {
        'formula': 'gRatio ~ AxonDiameter * {genotype}',
        'random': ['{animal}'],
        'family': 'gaussian',
        'factor': '{genotype}',
        'covariate': 'AxonDiameter',
        'required_columns': ['AxonArea', 'FiberArea'],
        'numeric_columns': ['AxonArea', 'FiberArea', 'MyelinArea'],
    },
    'rnascope': {
        'formula': '{count} ~ {genotype}',
        'random': ['{animal}'],
        'family': 'negative_binomial',
        'factor': '{genotype}',
        'count_column': 'Dots',
        'compare_families': True,
        'required_columns': ['{count}'],
        'numeric_columns': ['{count}'],
    },
}


def _fill(value, fields):
    if isinstance(value, str):
        return value.format(**fields)
    if isinstance(value, list):
        return [_fill(v, fields) for v in value]
    return value


def resolve_analysis(entry, columns):
    """
    Merge a configured analysis entry with the defaults of its kind.

    Parameters
    ----------
    entry : dict
        Entry from the 'analyses' list of the config. Needs 'kind',
        'workbook' and 'sheet'; any default key may be overridden.
    columns : dict
        Configured column names ('animal', 'image', 'genotype').

    Returns
    -------
    dict
        Fully specified analysis.
    """
    kind = entry.get('kind')
    if kind not in ANALYSES:
        raise LoadError(f"Unknown analysis kind '{kind}' (options: {', '.join(ANALYSES)})")
    for key in ('workbook', 'sheet'):
        if key not in entry:
            raise LoadError(f"Analysis entry is missing '{key}': {entry}")

    analysis = copy.deepcopy(ANALYSES[kind])
    analysis.update(copy.deepcopy(entry))
    analysis.setdefault('name', re.sub(r'\W+', '_', f"{entry['sheet']}").strip('_'))

    fields = {
        'animal': columns['animal'],
        'genotype': columns['genotype'],
        'count': analysis.get('count_column', ''),
    }
    for key in ('formula', 'random', 'factor', 'required_columns', 'numeric_columns'):
        analysis[key] = _fill(analysis[key], fields)
    if isinstance(analysis['random'], str):
        analysis['random'] = [analysis['random']]
    analysis['user_formula'] = 'formula' in entry
    return analysis


def _collapse_single_type(data):
    """Drop the Type terms when a staining sheet quantifies one structure only."""
    analysis = data['analysis']
    if analysis['kind'] != 'staining' or analysis['user_formula']:
        return data
    if data['long_df']['Type'].nunique() > 1:
        return data

    genotype_col = data['config']['columns']['genotype']
    animal_col = data['config']['columns']['animal']
    only = data['long_df']['Type'].iloc[0]
    print(f"\n  Only '{only}' quantified: modelling Density ~ {genotype_col}")

    analysis = dict(analysis)
    analysis['formula'] = f"Density ~ {genotype_col}"
    analysis['random'] = [animal_col]
    analysis['by'] = None

    data_updated = copy.copy(data)
    data_updated['analysis'] = analysis
    return data_updated


def run_analysis(config, entry):
    """
    Run every stage for one configured analysis.

    Parameters
    ----------
    config : dict
        Loaded configuration.
    entry : dict
        One entry of config['analyses'].

    Returns
    -------
    dict
        Final stage dictionary (tables, model, diagnostics, figure paths).
    """
    analysis = resolve_analysis(entry, config['columns'])

    data = prep_on(config, analysis)
    data = shape_on(data)
    data = _collapse_single_type(data)
    data = agg_on(data)
    data = stat_on(data)
    data = diag_on(data)
    figures = viz_on(data)

    data = copy.copy(data)
    data['figures'] = figures

    # patsy design objects cannot be pickled; keep the model summary instead
    checkpoint = {key: value for key, value in data.items() if key != 'model'}
    checkpoint['model_summary'] = str(data['model'].summary())
    output_path = os.path.join(config['data_paths']['output_dir'], f"data_after_{analysis['name']}.pkl")
    save_data(checkpoint, output_path)
    return data


def run_on(config_path):
    """
    Run all configured analyses in order.

    A LoadError, ShapeError or ModelFitError stops only the analysis that
    raised it; the error is printed and the next analysis runs.

    Parameters
    ----------
    config_path : str or dict
        Path to the YAML configuration (or an already loaded config).

    Returns
    -------
    dict
        - 'results': {analysis name: final stage dictionary}
        - 'failures': {analysis name: error message}

    Example
    -------
    >>> from ldhon import run_on
    >>> out = run_on('config/experiment.yaml')
    >>> out['results']['OL_LDHA']['contrasts']
    """
    config = _load_config(config_path) if isinstance(config_path, str) else config_path

    _header(f"LDH OPTIC-NERVE ANALYSIS: {config.get('experiment', {}).get('name', 'unnamed')}")
    print(f"\nAnalyses: {len(config['analyses'])}")
    print(f"Output directory: {config['data_paths']['output_dir']}")

    results = {}
    failures = {}

    for entry in config['analyses']:
        name = entry.get('name') or entry.get('sheet', '?')
        try:
            data = run_analysis(config, entry)
        except (LoadError, ShapeError, ModelFitError) as e:
            print(f"\n  Error in analysis '{name}' ({type(e).__name__}): {e}")
            print(f"  Skipping '{name}'")
            failures[name] = f"{type(e).__name__}: {e}"
            continue
        results[data['analysis']['name']] = data

    _header("ANALYSIS COMPLETE")
    for name, data in results.items():
        contrasts = data['contrasts']
        print(f"\n{name}:")
        for _, row in contrasts.iterrows():
            by = data['analysis'].get('by')
            label = f"{row[by]}: " if by else ''
            print(f"  {label}{row['contrast']}  estimate = {row['estimate']:.4g}, "
                  f"p = {row['p_adjusted']:.4g}")
    if failures:
        print(f"\nFailed analyses:")
        for name, message in failures.items():
            print(f"  {name}: {message}")
    print("\n" + "="*80 + "\n")

    return {'results': results, 'failures': failures}
